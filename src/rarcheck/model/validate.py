"""Static validation of parsed formulas.

`resolve` turns every `Name` into a variable, signature or field reference and
type-checks the tree against a schema. It runs once per constraint at load
time, so unbound names and ill-typed joins are reported before any search.
"""

from __future__ import annotations

from typing import Mapping, Optional

from rarcheck.errors import DefinitionError, TypeMismatch, UnboundVariable
from rarcheck.model.ast import (
    And,
    Cardinality,
    Compare,
    Constant,
    Difference,
    FieldRef,
    Iff,
    Implies,
    IntCompare,
    IntLiteral,
    IntValue,
    Intersection,
    Join,
    MultTest,
    Name,
    NoneExpr,
    Not,
    Or,
    Quantified,
    SigRef,
    Transpose,
    Union_,
    Var,
    walk,
)
from rarcheck.model.grammar import position
from rarcheck.schema import Schema
from rarcheck.state import INT

__all__ = ["UNIV", "resolve", "dependencies"]

# Column type of `none`; compatible with every signature
UNIV = "univ"

Type = tuple[str, ...]


class _Resolver:
    def __init__(self, schema: Schema, text: Optional[str], where: Optional[str]):
        self.schema = schema
        self.text = text
        self.where = where

    def _fail(self, cls: type[DefinitionError], message: str, node) -> DefinitionError:
        line = column = None
        if self.text is not None and node.pos >= 0:
            line, column = position(self.text, node.pos)
        return cls(message, where=self.where, line=line, column=column)

    def _compatible(self, a: str, b: str) -> bool:
        return a == UNIV or b == UNIV or self.schema.related(a, b)

    # ---------- expressions ----------

    def expr(self, node, env: Mapping[str, str]):
        if isinstance(node, Name):
            ident = node.ident
            if ident in env:
                return Var(ident, pos=node.pos), (env[ident],)
            if self.schema.has_sig(ident):
                return SigRef(ident, pos=node.pos), (ident,)
            if self.schema.has_field(ident):
                f = self.schema.field(ident)
                return FieldRef(ident, pos=node.pos), (f.source, f.target)
            raise self._fail(
                UnboundVariable,
                f"'{ident}' is not bound by an enclosing quantifier "
                "and names no signature or field",
                node,
            )
        if isinstance(node, (Var, SigRef, FieldRef)):
            return self.expr(Name(node.name, pos=node.pos), env)
        if isinstance(node, NoneExpr):
            return node, (UNIV,)
        if isinstance(node, Join):
            left, lt = self.expr(node.left, env)
            right, rt = self.expr(node.right, env)
            if len(lt) + len(rt) - 2 < 1:
                raise self._fail(TypeMismatch, "join of two unary expressions", node)
            if not self._compatible(lt[-1], rt[0]):
                raise self._fail(
                    TypeMismatch,
                    f"cannot join '{lt[-1]}' with '{rt[0]}': the types are unrelated",
                    node,
                )
            return Join(left, right, pos=node.pos), lt[:-1] + rt[1:]
        if isinstance(node, (Union_, Intersection, Difference)):
            left, lt = self.expr(node.left, env)
            right, rt = self.expr(node.right, env)
            if len(lt) != len(rt):
                raise self._fail(
                    TypeMismatch,
                    f"operands have different arities ({len(lt)} and {len(rt)})",
                    node,
                )
            columns = []
            for a, b in zip(lt, rt):
                columns.append(self._column(node, a, b))
            return type(node)(left, right, pos=node.pos), tuple(columns)
        if isinstance(node, Transpose):
            operand, t = self.expr(node.operand, env)
            if len(t) != 2:
                raise self._fail(TypeMismatch, "'~' needs a binary relation", node)
            return Transpose(operand, pos=node.pos), (t[1], t[0])
        raise self._fail(TypeMismatch, "expected a relational expression", node)

    def _column(self, node, a: str, b: str) -> str:
        if isinstance(node, Difference):
            return a
        if a == UNIV:
            return b
        if b == UNIV:
            return a
        if isinstance(node, Intersection):
            if not self.schema.related(a, b):
                raise self._fail(
                    TypeMismatch,
                    f"intersection of unrelated types '{a}' and '{b}' is always empty",
                    node,
                )
            return b if a in self.schema.ancestors(b) else a
        return self.schema.common_ancestor(a, b) or UNIV

    def int_expr(self, node, env):
        if isinstance(node, IntLiteral):
            return node
        if isinstance(node, Cardinality):
            operand, _ = self.expr(node.operand, env)
            return Cardinality(operand, pos=node.pos)
        if isinstance(node, IntValue):
            operand, t = self.expr(node.operand, env)
            if len(t) != 1 or t[0] not in (INT, UNIV):
                raise self._fail(
                    TypeMismatch,
                    f"expected an {INT}-valued expression, got type {'->'.join(t)}",
                    node,
                )
            return IntValue(operand, pos=node.pos)
        raise self._fail(TypeMismatch, "expected an integer expression", node)

    # ---------- formulas ----------

    def formula(self, node, env: Mapping[str, str]):
        if isinstance(node, Constant):
            return node
        if isinstance(node, Not):
            return Not(self.formula(node.operand, env), pos=node.pos)
        if isinstance(node, (And, Or)):
            return type(node)(
                tuple(self.formula(f, env) for f in node.operands), pos=node.pos
            )
        if isinstance(node, Implies):
            return Implies(
                self.formula(node.antecedent, env),
                self.formula(node.consequent, env),
                pos=node.pos,
            )
        if isinstance(node, Iff):
            return Iff(
                self.formula(node.left, env), self.formula(node.right, env), pos=node.pos
            )
        if isinstance(node, Quantified):
            domain, t = self.expr(node.domain, env)
            if len(t) != 1:
                raise self._fail(
                    TypeMismatch,
                    f"quantifier domain for '{node.var}' must be a set of atoms",
                    node,
                )
            inner = dict(env)
            inner[node.var] = t[0]
            body = self.formula(node.body, inner)
            return Quantified(node.quantifier, node.var, domain, body, pos=node.pos)
        if isinstance(node, MultTest):
            operand, _ = self.expr(node.operand, env)
            return MultTest(node.kind, operand, pos=node.pos)
        if isinstance(node, Compare):
            left, lt = self.expr(node.left, env)
            right, rt = self.expr(node.right, env)
            if len(lt) != len(rt):
                raise self._fail(
                    TypeMismatch,
                    f"cannot compare expressions of arity {len(lt)} and {len(rt)}",
                    node,
                )
            for a, b in zip(lt, rt):
                if not self._compatible(a, b):
                    raise self._fail(
                        TypeMismatch,
                        f"cannot compare '{a}' with unrelated '{b}'",
                        node,
                    )
            return Compare(node.op, left, right, pos=node.pos)
        if isinstance(node, IntCompare):
            return IntCompare(
                node.op,
                self.int_expr(node.left, env),
                self.int_expr(node.right, env),
                pos=node.pos,
            )
        raise self._fail(TypeMismatch, "expected a formula", node)


def resolve(
    formula,
    schema: Schema,
    *,
    text: Optional[str] = None,
    where: Optional[str] = None,
):
    """Resolve names and type-check a closed formula.

    Raises:
        UnboundVariable: a name is neither bound nor declared.
        TypeMismatch: a join, comparison or quantifier is ill-typed.
    """
    return _Resolver(schema, text, where).formula(formula, {})


def dependencies(formula, schema: Schema) -> tuple[frozenset[str], frozenset[str]]:
    """Signatures and fields a resolved formula reads.

    Signature references expand to their whole type closure; a field also
    needs the populations of both its endpoints (and the field it is a
    subset of, since that one is decided first).
    """
    sigs: set[str] = set()
    fields: set[str] = set()
    for node in walk(formula):
        if isinstance(node, SigRef):
            sigs.update(schema.type_closure(node.name))
        elif isinstance(node, FieldRef):
            pending = [node.name]
            while pending:
                name = pending.pop()
                if name in fields:
                    continue
                fields.add(name)
                f = schema.field(name)
                sigs.update(schema.type_closure(f.source))
                sigs.update(schema.type_closure(f.target))
                if f.subset_of is not None:
                    pending.append(f.subset_of)
    return frozenset(sigs), frozenset(fields)
