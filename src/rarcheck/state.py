"""Module with dataclasses to hold the state for the main entities of the program"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import TYPE_CHECKING, Mapping, Optional

if TYPE_CHECKING:
    from rarcheck.schema import Schema

__all__ = [
    "INT",
    "Multiplicity",
    "Mode",
    "Outcome",
    "Atom",
    "Signature",
    "Field",
    "Instance",
    "make_atoms",
]

# Name of the built-in integer signature
INT = "Int"


class Multiplicity(Enum):
    """Enum to represent how many targets a field maps each source atom to"""

    ONE = "one"
    LONE = "lone"
    SOME = "some"
    SET = "set"
    SUBSET_OF = "subsetOf"


class Mode(Enum):
    """Enum to represent the kind of search requested"""

    FIND = "find"
    CHECK = "check"


class Outcome(Enum):
    """Enum to represent the result of a search"""

    SAT = "SAT"
    UNSAT = "UNSAT"
    COUNTEREXAMPLE = "COUNTEREXAMPLE"
    HOLDS = "HOLDS"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True, order=True, slots=True)
class Atom:
    """Class to represent an instance-local value

    Attributes:
        sig: The concrete signature that owns the atom
        index: Position of the atom among the atoms of its signature
    """

    sig: str
    index: int

    @property
    def name(self) -> str:
        if self.sig == INT:
            return str(self.index)
        return f"{self.sig}${self.index}"

    @property
    def value(self) -> Optional[int]:
        """Integer value for atoms of the built-in `Int` signature."""
        return self.index if self.sig == INT else None

    def __str__(self) -> str:
        return self.name


@lru_cache(maxsize=None)
def make_atoms(sig: str, count: int) -> tuple[Atom, ...]:
    """Return the `count` atoms owned by `sig`, in index order."""
    return tuple(Atom(sig, i) for i in range(count))


@dataclass(frozen=True, slots=True)
class Signature:
    """Class to represent a signature (a named set of atoms)

    Attributes:
        name: The name of the signature
        parent: The signature it extends, if any
        abstract: Whether the signature has no atoms of its own
        one: Whether the signature always holds exactly one atom
    """

    name: str
    parent: Optional[str] = None
    abstract: bool = False
    one: bool = False

    def __post_init__(self):
        if self.abstract and self.one:
            raise ValueError(f"Signature '{self.name}' cannot be both abstract and one")


@dataclass(frozen=True, slots=True)
class Field:
    """Class to represent a binary relation declared on a signature

    Attributes:
        name: The name of the field
        source: Signature whose atoms the field maps from
        target: Signature whose atoms the field maps to
        multiplicity: How many targets each source atom may have
        subset_of: For `subsetOf` fields, the field whose tuples bound this one
    """

    name: str
    source: str
    target: str
    multiplicity: Multiplicity
    subset_of: Optional[str] = None

    def __post_init__(self):
        if (self.multiplicity is Multiplicity.SUBSET_OF) != (self.subset_of is not None):
            raise ValueError(
                f"Field '{self.name}': subset_of must be given exactly for subsetOf fields"
            )


class Instance:
    """An assignment of atoms to signatures and tuples to fields.

    The instance may be partial: a signature missing from `counts` or a field
    missing from `relations` is undecided, and every query touching it answers
    None instead of a value. A complete instance decides everything the
    schema declares.
    """

    __slots__ = ("_schema", "_counts", "_relations", "_populations")

    def __init__(
        self,
        schema: "Schema",
        counts: Mapping[str, int],
        relations: Mapping[str, frozenset],
    ):
        self._schema = schema
        self._counts = dict(counts)
        self._relations = dict(relations)
        self._populations: dict[str, Optional[tuple[Atom, ...]]] = {}

    @property
    def schema(self) -> "Schema":
        return self._schema

    def count(self, sig: str) -> Optional[int]:
        return self._counts.get(sig)

    def atoms(self, sig: str) -> Optional[tuple[Atom, ...]]:
        """Atoms owned by `sig` itself, excluding subtypes."""
        n = self._counts.get(sig)
        if n is None:
            return None
        return make_atoms(sig, n)

    def population(self, sig: str) -> Optional[tuple[Atom, ...]]:
        """Atoms of `sig` and all its descendants, in declaration order."""
        try:
            return self._populations[sig]
        except KeyError:
            pass
        out: list[Atom] = []
        pop: Optional[tuple[Atom, ...]] = None
        for name in self._schema.type_closure_ordered(sig):
            own = self.atoms(name)
            if own is None:
                break
            out.extend(own)
        else:
            pop = tuple(out)
        self._populations[sig] = pop
        return pop

    def relation(self, name: str) -> Optional[frozenset]:
        return self._relations.get(name)

    @property
    def counts(self) -> dict[str, int]:
        return dict(self._counts)

    @property
    def relations(self) -> dict[str, frozenset]:
        return dict(self._relations)

    @property
    def complete(self) -> bool:
        return all(s in self._counts for s in self._schema.sig_names) and all(
            f in self._relations for f in self._schema.field_names
        )

    def __repr__(self) -> str:
        sizes = {s: n for s, n in self._counts.items() if n}
        return f"Instance(counts={sizes}, relations={sorted(self._relations)})"
