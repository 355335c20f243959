from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Union

from rarcheck.errors import DuplicateConstraint, UnknownConstraint
from rarcheck.model.grammar import parse_formula
from rarcheck.model.validate import resolve
from rarcheck.schema import Schema

__all__ = ["ConstraintKind", "Constraint", "ConstraintSet"]


class ConstraintKind(Enum):
    """Enum to represent how a constraint takes part in a search"""

    FACT = "fact"
    PREDICATE = "pred"
    ASSERTION = "assert"


@dataclass(frozen=True, slots=True)
class Constraint:
    """A named, validated formula.

    Attributes
    ----------
    name:        Stable identifier (e.g., "RarClearedOnInit").
    kind:        FACT constraints are enforced in every search; PREDICATE and
                 ASSERTION constraints are only used as FIND/CHECK targets.
    formula:     The resolved formula tree.
    text:        Source text the formula was parsed from (empty if built in code).
    description: Optional human-readable text for reports (can be empty).
    """

    name: str
    kind: ConstraintKind
    formula: object
    text: str = ""
    description: str = ""

    def __repr__(self) -> str:
        return f"Constraint({self.kind.value} {self.name})"


class ConstraintSet:
    """Registry of the constraints of one model, keyed by name.

    Every formula is parsed and validated against the schema when it is
    added, so a populated set only holds well-typed closed formulas.
    """

    def __init__(self, schema: Schema):
        self.schema = schema
        self._by_name: dict[str, Constraint] = {}

    def add(
        self,
        name: str,
        kind: Union[ConstraintKind, str],
        formula,
        description: str = "",
    ) -> Constraint:
        kind = ConstraintKind(kind)
        where = f"{kind.value} {name}"
        if name in self._by_name:
            raise DuplicateConstraint(f"constraint '{name}' is already declared", where=where)
        text = ""
        if isinstance(formula, str):
            text = formula
            formula = parse_formula(text, where=where)
        resolved = resolve(formula, self.schema, text=text or None, where=where)
        constraint = Constraint(
            name=name, kind=kind, formula=resolved, text=text, description=description
        )
        self._by_name[name] = constraint
        return constraint

    def get(self, name: str, kind: Optional[ConstraintKind] = None) -> Constraint:
        constraint = self._by_name.get(name)
        if constraint is None or (kind is not None and constraint.kind is not kind):
            label = kind.value if kind is not None else "constraint"
            known = ", ".join(self.names(kind)) or "none"
            raise UnknownConstraint(f"unknown {label} '{name}'. Known: {known}", where=name)
        return constraint

    def names(self, kind: Optional[ConstraintKind] = None) -> list[str]:
        """Return the names of all registered constraints, optionally of one kind."""
        return [c.name for c in self._by_name.values() if kind is None or c.kind is kind]

    @property
    def facts(self) -> tuple[Constraint, ...]:
        return tuple(c for c in self._by_name.values() if c.kind is ConstraintKind.FACT)

    def __iter__(self) -> Iterator[Constraint]:
        return iter(self._by_name.values())

    def __len__(self) -> int:
        return len(self._by_name)

    def __contains__(self, name: str) -> bool:
        return name in self._by_name
