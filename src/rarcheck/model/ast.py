"""Formula tree for the relational constraint language.

Every formula kind is a frozen dataclass; evaluation, validation and the
CP-SAT translation are structural recursions over these nodes. Parsed
formulas contain `Name` nodes; validation replaces each of them with a
`Var`, `SigRef` or `FieldRef`.

`pos` is the character offset of the node in its source text (-1 when the
node was built programmatically). It never takes part in equality.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, Union

__all__ = [
    "Quantifier",
    "Name",
    "Var",
    "SigRef",
    "FieldRef",
    "NoneExpr",
    "Join",
    "Union_",
    "Intersection",
    "Difference",
    "Transpose",
    "IntLiteral",
    "Cardinality",
    "IntValue",
    "Constant",
    "Not",
    "And",
    "Or",
    "Implies",
    "Iff",
    "Quantified",
    "MultTest",
    "Compare",
    "IntCompare",
    "Expr",
    "IntExpr",
    "Formula",
    "children",
    "walk",
    "to_text",
]


class Quantifier(Enum):
    ALL = "all"
    SOME = "some"
    NO = "no"
    ONE = "one"
    LONE = "lone"


# ---------- relational expressions ----------


@dataclass(frozen=True, slots=True)
class Name:
    ident: str
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Var:
    name: str
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class SigRef:
    name: str
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class FieldRef:
    name: str
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class NoneExpr:
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Join:
    left: "Expr"
    right: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Union_:
    left: "Expr"
    right: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Intersection:
    left: "Expr"
    right: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Difference:
    left: "Expr"
    right: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Transpose:
    operand: "Expr"
    pos: int = field(default=-1, compare=False)


# ---------- integer expressions ----------


@dataclass(frozen=True, slots=True)
class IntLiteral:
    value: int
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Cardinality:
    operand: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class IntValue:
    """Sum of the `Int` atoms an expression evaluates to."""

    operand: "Expr"
    pos: int = field(default=-1, compare=False)


# ---------- formulas ----------


@dataclass(frozen=True, slots=True)
class Constant:
    value: bool
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Not:
    operand: "Formula"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class And:
    operands: tuple["Formula", ...]
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Or:
    operands: tuple["Formula", ...]
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Implies:
    antecedent: "Formula"
    consequent: "Formula"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Iff:
    left: "Formula"
    right: "Formula"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Quantified:
    quantifier: Quantifier
    var: str
    domain: "Expr"
    body: "Formula"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class MultTest:
    """`no e`, `some e`, `one e` or `lone e`."""

    kind: Quantifier
    operand: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class Compare:
    """Relational comparison: `in` (subset), `=` or `!=`."""

    op: str
    left: "Expr"
    right: "Expr"
    pos: int = field(default=-1, compare=False)


@dataclass(frozen=True, slots=True)
class IntCompare:
    op: str
    left: "IntExpr"
    right: "IntExpr"
    pos: int = field(default=-1, compare=False)


Expr = Union[
    Name, Var, SigRef, FieldRef, NoneExpr, Join, Union_, Intersection, Difference, Transpose
]
IntExpr = Union[IntLiteral, Cardinality, IntValue]
Formula = Union[
    Constant, Not, And, Or, Implies, Iff, Quantified, MultTest, Compare, IntCompare
]

_BINARY_EXPR = {Join: ".", Union_: "+", Intersection: "&", Difference: "-"}


def children(node) -> tuple:
    """Direct sub-nodes of `node`, in source order."""
    if isinstance(node, (Join, Union_, Intersection, Difference, Compare, IntCompare, Iff)):
        return (node.left, node.right)
    if isinstance(node, (Transpose, Cardinality, IntValue, Not, MultTest)):
        return (node.operand,)
    if isinstance(node, (And, Or)):
        return node.operands
    if isinstance(node, Implies):
        return (node.antecedent, node.consequent)
    if isinstance(node, Quantified):
        return (node.domain, node.body)
    return ()


def walk(node) -> Iterator:
    """Pre-order traversal."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        stack.extend(reversed(children(current)))


def to_text(node) -> str:
    """Render a node back to the concrete syntax (fully parenthesized)."""
    if isinstance(node, Name):
        return node.ident
    if isinstance(node, (Var, SigRef, FieldRef)):
        return node.name
    if isinstance(node, NoneExpr):
        return "none"
    if type(node) in _BINARY_EXPR:
        left, right = to_text(node.left), to_text(node.right)
        if isinstance(node, Join):
            return f"{left}.{right}"
        return f"({left} {_BINARY_EXPR[type(node)]} {right})"
    if isinstance(node, Transpose):
        return f"~{to_text(node.operand)}"
    if isinstance(node, IntLiteral):
        return str(node.value)
    if isinstance(node, Cardinality):
        return f"#{to_text(node.operand)}"
    if isinstance(node, IntValue):
        return to_text(node.operand)
    if isinstance(node, Constant):
        return "true" if node.value else "false"
    if isinstance(node, Not):
        return f"not {to_text(node.operand)}"
    if isinstance(node, And):
        return "(" + " and ".join(to_text(f) for f in node.operands) + ")"
    if isinstance(node, Or):
        return "(" + " or ".join(to_text(f) for f in node.operands) + ")"
    if isinstance(node, Implies):
        return f"({to_text(node.antecedent)} => {to_text(node.consequent)})"
    if isinstance(node, Iff):
        return f"({to_text(node.left)} <=> {to_text(node.right)})"
    if isinstance(node, Quantified):
        return (
            f"({node.quantifier.value} {node.var}: {to_text(node.domain)} | "
            f"{to_text(node.body)})"
        )
    if isinstance(node, MultTest):
        return f"{node.kind.value} {to_text(node.operand)}"
    if isinstance(node, (Compare, IntCompare)):
        return f"{to_text(node.left)} {node.op} {to_text(node.right)}"
    raise TypeError(f"not a formula node: {node!r}")
