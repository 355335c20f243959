"""Instance space enumeration.

The instance space is described by two kinds of decisions:

  - a count decision per signature whose atom count varies (how many atoms
    the signature owns, from 0 up to what its bound and its ancestors'
    bounds still allow), and
  - a field decision per field (which tuple set the field holds, given the
    populations of its endpoints).

Options of each decision are produced in a fixed order (smaller counts and
smaller tuple sets first), so identical inputs always yield identical
sequences. The search engine decides the order in which decisions are taken;
`plan_decisions` computes that order deterministically from the constraints.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Iterable, Iterator, Mapping, Optional, Sequence

from rarcheck.errors import EngineFault, ScopeExceeded, UnknownType
from rarcheck.schema import Schema
from rarcheck.state import INT, Atom, Field, Instance, Multiplicity

__all__ = [
    "DEFAULT_SCOPE",
    "DEFAULT_INT_SCOPE",
    "Scope",
    "Decision",
    "resolve_scope",
    "count_options",
    "field_options",
    "check_multiplicity",
    "plan_decisions",
]

DEFAULT_SCOPE = 3
DEFAULT_INT_SCOPE = 4


@dataclass(frozen=True)
class Scope:
    """Effective bounds of one search.

    Attributes:
        limits: Maximum population (own atoms plus descendants) per signature.
            Every variable signature has an entry; abstract signatures only
            when a bound was given for them.
        int_scope: Number of `Int` atoms (the integers 0 .. int_scope-1).
    """

    limits: Mapping[str, int]
    int_scope: int

    def as_dict(self) -> dict[str, int]:
        out = dict(self.limits)
        out[INT] = self.int_scope
        return out


def _check_bound(name: str, value) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ScopeExceeded(f"bound for '{name}' must be an integer, got {value!r}", where=name)
    if value < 0:
        raise ScopeExceeded(f"bound for '{name}' is negative ({value})", where=name)
    return value


def resolve_scope(
    schema: Schema,
    bounds: Optional[Mapping[str, int]] = None,
    *,
    default_scope: int = DEFAULT_SCOPE,
    int_scope: int = DEFAULT_INT_SCOPE,
) -> Scope:
    """Combine caller bounds with defaults into an effective `Scope`.

    A signature without an explicit bound inherits the nearest ancestor's
    explicit bound, else `default_scope`.

    Raises:
        ScopeExceeded: a bound is negative (or not an integer), or cannot
            hold the `one` signatures it covers.
        UnknownType: a bound names an unregistered signature.
    """
    bounds = dict(bounds or {})
    _check_bound("default scope", default_scope)
    int_scope = _check_bound(INT, bounds.pop(INT, int_scope))
    explicit: dict[str, int] = {}
    for name, value in bounds.items():
        if not schema.has_sig(name):
            raise UnknownType(f"bound given for unknown type '{name}'", where=name)
        explicit[name] = _check_bound(name, value)

    limits = dict(explicit)
    for name in schema.variable_sigs:
        if name in limits:
            continue
        inherited = next((explicit[a] for a in schema.ancestors(name) if a in explicit), None)
        limits[name] = default_scope if inherited is None else inherited

    fixed = schema.fixed_counts(int_scope)
    for name, limit in limits.items():
        needed = sum(fixed.get(s, 0) for s in schema.type_closure(name) if s != INT)
        if needed > limit:
            raise ScopeExceeded(
                f"bound {limit} for '{name}' is below its {needed} singleton atom(s)",
                where=name,
            )
    return Scope(limits=limits, int_scope=int_scope)


@dataclass(frozen=True, order=True)
class Decision:
    """One choice point: `kind` is "count" (of a signature) or "field"."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"#{self.name}" if self.kind == "count" else self.name


# ---------- options ----------


def count_options(
    schema: Schema, scope: Scope, sig: str, counts: Mapping[str, int]
) -> list[int]:
    """Admissible atom counts for `sig`, ascending.

    Each limited signature among `sig` and its ancestors caps the count by
    what its population can still absorb given the counts decided so far.
    """
    cap: Optional[int] = None
    for owner in (sig,) + schema.ancestors(sig):
        limit = scope.limits.get(owner)
        if limit is None:
            continue
        used = sum(counts.get(s, 0) for s in schema.type_closure(owner) if s != sig)
        room = limit - used
        cap = room if cap is None else min(cap, room)
    if cap is None or cap < 0:
        return []
    return list(range(cap + 1))


def _subsets(items: Sequence[Atom], min_size: int = 0) -> list[tuple[Atom, ...]]:
    return [
        combo
        for k in range(min_size, len(items) + 1)
        for combo in itertools.combinations(items, k)
    ]


def _choices(multiplicity: Multiplicity, targets: Sequence[Atom]) -> list[tuple[Atom, ...]]:
    if multiplicity is Multiplicity.ONE:
        return [(t,) for t in targets]
    if multiplicity is Multiplicity.LONE:
        return [()] + [(t,) for t in targets]
    if multiplicity is Multiplicity.SOME:
        return _subsets(targets, 1)
    return _subsets(targets)


def field_options(field: Field, instance: Instance) -> Iterator[frozenset]:
    """Every tuple set `field` may hold in `instance`, in a fixed order.

    The populations of both endpoints (and, for `subsetOf` fields, the base
    field) must already be decided. Per-source choices are computed up
    front; the combinations are produced lazily.
    """
    sources = instance.population(field.source)
    targets = instance.population(field.target)
    if sources is None or targets is None:
        raise EngineFault(f"field '{field.name}' enumerated before its endpoints")
    if field.multiplicity is Multiplicity.SUBSET_OF:
        base = instance.relation(field.subset_of)
        if base is None:
            raise EngineFault(f"field '{field.name}' enumerated before '{field.subset_of}'")
        per_source = [_subsets([t for t in targets if (s, t) in base]) for s in sources]
    else:
        choices = _choices(field.multiplicity, targets)
        per_source = [choices] * len(sources)
    chains = [
        [tuple((s, t) for t in combo) for combo in options]
        for s, options in zip(sources, per_source)
    ]
    return (
        frozenset(pair for part in combo for pair in part)
        for combo in itertools.product(*chains)
    )


def check_multiplicity(field: Field, tuples: frozenset, instance: Instance) -> None:
    """Raise `EngineFault` if `tuples` is not a legal value for `field`."""
    sources = set(instance.population(field.source) or ())
    targets = set(instance.population(field.target) or ())
    per_source = dict.fromkeys(sources, 0)
    for s, t in tuples:
        if s not in sources or t not in targets:
            raise EngineFault(f"field '{field.name}' holds ill-typed tuple ({s}, {t})")
        per_source[s] += 1
    mult = field.multiplicity
    for s, n in per_source.items():
        if (
            (mult is Multiplicity.ONE and n != 1)
            or (mult is Multiplicity.LONE and n > 1)
            or (mult is Multiplicity.SOME and n < 1)
        ):
            raise EngineFault(
                f"field '{field.name}' maps {s} to {n} atoms, violating '{mult.value}'"
            )
    if mult is Multiplicity.SUBSET_OF and not tuples <= (
        instance.relation(field.subset_of) or frozenset()
    ):
        raise EngineFault(f"field '{field.name}' is not a subset of '{field.subset_of}'")


# ---------- planning ----------


def decisions_for(schema: Schema, sigs: Iterable[str], fields: Iterable[str]) -> frozenset:
    """Decisions a formula depends on, given its signature and field reads."""
    out = {Decision("count", s) for s in sigs if schema.is_variable(s)}
    out.update(Decision("field", f) for f in fields)
    return frozenset(out)


def plan_decisions(
    schema: Schema, units: Sequence[tuple[int, frozenset]]
) -> list[Decision]:
    """Order all decisions so constraints become decidable as early as possible.

    `units` holds (priority, decisions) per constraint unit; lower priority
    values are served first. The unit with the fewest pending decisions is
    scheduled next (ties by priority, then position), its count decisions
    before its field decisions, each group in declaration order. Decisions no
    unit depends on come last.
    """
    sig_order = {s: i for i, s in enumerate(schema.sig_names)}
    field_order = {f: i for i, f in enumerate(schema.field_names)}

    def key(d: Decision) -> tuple[int, int]:
        if d.kind == "count":
            return (0, sig_order[d.name])
        return (1, field_order[d.name])

    planned: list[Decision] = []
    taken: set[Decision] = set()

    def schedule(needed: Iterable[Decision]) -> None:
        for d in sorted((d for d in needed if d not in taken), key=key):
            planned.append(d)
            taken.add(d)

    pending = list(enumerate(units))
    while pending:
        pending = [(i, (p, deps)) for i, (p, deps) in pending if not deps <= taken]
        if not pending:
            break
        _, (_, deps) = min(
            pending, key=lambda item: (item[1][0], len(item[1][1] - taken), item[0])
        )
        schedule(deps)

    everything = decisions_for(schema, schema.variable_sigs, schema.field_names)
    schedule(everything)
    return planned
