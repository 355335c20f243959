"""Schema registry: signatures, fields and the subtype hierarchy.

Signatures and fields share a single namespace, since formulas refer to both
by bare name. The built-in `Int` signature is always registered.
"""

from __future__ import annotations

from typing import Dict, Optional, Union

from rarcheck.errors import DuplicateType, TypeMismatch, UnknownParent, UnknownType
from rarcheck.state import INT, Field, Multiplicity, Signature

__all__ = ["Schema"]


class Schema:
    def __init__(self):
        self._sigs: Dict[str, Signature] = {INT: Signature(INT)}
        self._fields: Dict[str, Field] = {}
        self._children: Dict[str, list[str]] = {INT: []}
        self._closures: Dict[str, tuple[str, ...]] = {}

    # ---------- registration ----------

    def register_sig(
        self,
        name: str,
        parent: Optional[str] = None,
        abstract: bool = False,
        one: bool = False,
    ) -> Signature:
        if name in self._sigs or name in self._fields:
            raise DuplicateType(f"'{name}' is already declared", where=name)
        if parent is not None:
            if parent not in self._sigs:
                raise UnknownParent(
                    f"'{name}' extends '{parent}', which is not registered", where=name
                )
            if parent == INT:
                raise UnknownParent(f"'{name}' cannot extend built-in '{INT}'", where=name)
        if abstract and one:
            raise TypeMismatch(f"'{name}' cannot be both abstract and one", where=name)
        sig = Signature(name=name, parent=parent, abstract=abstract, one=one)
        self._sigs[name] = sig
        self._children[name] = []
        if parent is not None:
            self._children[parent].append(name)
        self._closures.clear()
        return sig

    def register_field(
        self,
        name: str,
        source: str,
        target: str,
        multiplicity: Union[Multiplicity, str],
        subset_of: Optional[str] = None,
    ) -> Field:
        if name in self._sigs or name in self._fields:
            raise DuplicateType(f"'{name}' is already declared", where=name)
        for endpoint in (source, target):
            if endpoint not in self._sigs:
                raise UnknownType(
                    f"field '{name}' refers to unknown type '{endpoint}'", where=name
                )
        try:
            mult = Multiplicity(multiplicity)
        except ValueError as e:
            raise TypeMismatch(
                f"field '{name}' has unknown multiplicity '{multiplicity}'", where=name
            ) from e
        if (mult is Multiplicity.SUBSET_OF) != (subset_of is not None):
            raise TypeMismatch(
                f"field '{name}': only subsetOf fields name a base field, and they must",
                where=name,
            )
        if subset_of is not None:
            base = self._fields.get(subset_of)
            if base is None:
                raise UnknownType(
                    f"field '{name}' is a subset of unknown field '{subset_of}'",
                    where=name,
                )
            if base.source != source or not self.related(base.target, target):
                raise TypeMismatch(
                    f"field '{name}' ({source} -> {target}) cannot be a subset of "
                    f"'{subset_of}' ({base.source} -> {base.target})",
                    where=name,
                )
        field = Field(
            name=name,
            source=source,
            target=target,
            multiplicity=mult,
            subset_of=subset_of,
        )
        self._fields[name] = field
        return field

    # ---------- lookup ----------

    def sig(self, name: str) -> Signature:
        try:
            return self._sigs[name]
        except KeyError as e:
            raise UnknownType(f"unknown type '{name}'", where=name) from e

    def field(self, name: str) -> Field:
        try:
            return self._fields[name]
        except KeyError as e:
            raise UnknownType(f"unknown field '{name}'", where=name) from e

    def has_sig(self, name: str) -> bool:
        return name in self._sigs

    def has_field(self, name: str) -> bool:
        return name in self._fields

    @property
    def sig_names(self) -> tuple[str, ...]:
        return tuple(self._sigs)

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(self._fields)

    @property
    def sigs(self) -> tuple[Signature, ...]:
        return tuple(self._sigs.values())

    @property
    def fields(self) -> tuple[Field, ...]:
        return tuple(self._fields.values())

    # ---------- hierarchy ----------

    def children(self, name: str) -> tuple[str, ...]:
        self.sig(name)
        return tuple(self._children[name])

    def ancestors(self, name: str) -> tuple[str, ...]:
        """Strict ancestors of `name`, nearest first."""
        out = []
        parent = self.sig(name).parent
        while parent is not None:
            out.append(parent)
            parent = self._sigs[parent].parent
        return tuple(out)

    def type_closure_ordered(self, name: str) -> tuple[str, ...]:
        """`name` and all its descendants, in declaration order."""
        try:
            return self._closures[name]
        except KeyError:
            pass
        self.sig(name)
        members = set()
        stack = [name]
        while stack:
            current = stack.pop()
            members.add(current)
            stack.extend(self._children[current])
        ordered = tuple(s for s in self._sigs if s in members)
        self._closures[name] = ordered
        return ordered

    def type_closure(self, name: str) -> frozenset[str]:
        return frozenset(self.type_closure_ordered(name))

    def related(self, a: str, b: str) -> bool:
        """True when one signature is an ancestor of (or equal to) the other.

        In a single-inheritance hierarchy this is exactly when the two
        populations may overlap.
        """
        return a == b or a in self.ancestors(b) or b in self.ancestors(a)

    def common_ancestor(self, a: str, b: str) -> Optional[str]:
        chain = (a,) + self.ancestors(a)
        for s in (b,) + self.ancestors(b):
            if s in chain:
                return s
        return None

    # ---------- population shape ----------

    def is_variable(self, name: str) -> bool:
        """Whether the number of atoms `name` owns is a search decision."""
        sig = self.sig(name)
        return not (sig.abstract or sig.one or name == INT)

    @property
    def variable_sigs(self) -> tuple[str, ...]:
        return tuple(s for s in self._sigs if self.is_variable(s))

    def fixed_counts(self, int_scope: int) -> dict[str, int]:
        """Atom counts that never vary: abstract, `one` and `Int` signatures."""
        out = {}
        for name, sig in self._sigs.items():
            if name == INT:
                out[name] = int_scope
            elif sig.abstract:
                out[name] = 0
            elif sig.one:
                out[name] = 1
        return out

    def __repr__(self) -> str:
        return f"Schema(sigs={len(self._sigs)}, fields={len(self._fields)})"
