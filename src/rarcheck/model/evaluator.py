"""Constraint evaluation over (possibly partial) instances.

Relational values are frozensets of atom tuples; unary sets hold 1-tuples.
Evaluation is three-valued: a sub-expression reading an undecided signature
or field is unknown (None), and unknowns propagate with Kleene semantics.
A quantifier only answers once its whole domain is decided, so on a
complete instance the result is always a plain bool.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass, field
from typing import Mapping, Optional

from rarcheck.errors import EngineFault, UnboundVariable
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
    NoneExpr,
    Not,
    Or,
    Quantified,
    Quantifier,
    SigRef,
    Transpose,
    Union_,
    Var,
)
from rarcheck.state import Atom, Instance

__all__ = ["Evaluator", "Explanation", "evaluate", "evaluate_partial", "explain"]

Value = Optional[frozenset]
Env = Mapping[str, Atom]

_EMPTY: frozenset = frozenset()

_INT_OPS = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "=": operator.eq,
    "!=": operator.ne,
}


class Evaluator:
    """Evaluates resolved formulas against one instance."""

    def __init__(self, instance: Instance):
        self.instance = instance

    # ---------- expressions ----------

    def expr(self, node, env: Env) -> Value:
        if isinstance(node, Var):
            try:
                return frozenset({(env[node.name],)})
            except KeyError:
                raise UnboundVariable(f"'{node.name}' is not bound") from None
        if isinstance(node, SigRef):
            pop = self.instance.population(node.name)
            return None if pop is None else frozenset((a,) for a in pop)
        if isinstance(node, FieldRef):
            return self.instance.relation(node.name)
        if isinstance(node, NoneExpr):
            return _EMPTY
        if isinstance(node, Join):
            return self._join(node, env)
        if isinstance(node, Union_):
            left, right = self.expr(node.left, env), self.expr(node.right, env)
            if left is None or right is None:
                return None
            return left | right
        if isinstance(node, Intersection):
            left = self.expr(node.left, env)
            if left is not None and not left:
                return _EMPTY
            right = self.expr(node.right, env)
            if right is not None and not right:
                return _EMPTY
            if left is None or right is None:
                return None
            return left & right
        if isinstance(node, Difference):
            left = self.expr(node.left, env)
            if left is not None and not left:
                return _EMPTY
            right = self.expr(node.right, env)
            if left is None or right is None:
                return None
            return left - right
        if isinstance(node, Transpose):
            value = self.expr(node.operand, env)
            if value is None:
                return None
            return frozenset((b, a) for a, b in value)
        raise TypeError(f"not a resolved expression: {node!r}")

    def _join(self, node: Join, env: Env) -> Value:
        # An empty side makes the join empty even if the other is undecided
        left = self.expr(node.left, env)
        if left is not None and not left:
            return _EMPTY
        right = self.expr(node.right, env)
        if right is not None and not right:
            return _EMPTY
        if left is None or right is None:
            return None
        by_head: dict[Atom, list[tuple]] = {}
        for tup in right:
            by_head.setdefault(tup[0], []).append(tup[1:])
        out = set()
        for tup in left:
            for tail in by_head.get(tup[-1], ()):
                out.add(tup[:-1] + tail)
        return frozenset(out)

    def int_expr(self, node, env: Env) -> Optional[int]:
        if isinstance(node, IntLiteral):
            return node.value
        if isinstance(node, Cardinality):
            value = self.expr(node.operand, env)
            return None if value is None else len(value)
        if isinstance(node, IntValue):
            value = self.expr(node.operand, env)
            if value is None:
                return None
            return sum(tup[0].index for tup in value)
        raise TypeError(f"not an integer expression: {node!r}")

    # ---------- formulas ----------

    def formula(self, node, env: Env) -> Optional[bool]:
        if isinstance(node, Constant):
            return node.value
        if isinstance(node, Not):
            value = self.formula(node.operand, env)
            return None if value is None else not value
        if isinstance(node, And):
            unknown = False
            for f in node.operands:
                value = self.formula(f, env)
                if value is False:
                    return False
                if value is None:
                    unknown = True
            return None if unknown else True
        if isinstance(node, Or):
            unknown = False
            for f in node.operands:
                value = self.formula(f, env)
                if value is True:
                    return True
                if value is None:
                    unknown = True
            return None if unknown else False
        if isinstance(node, Implies):
            antecedent = self.formula(node.antecedent, env)
            if antecedent is False:
                return True
            consequent = self.formula(node.consequent, env)
            if consequent is True:
                return True
            if antecedent is True and consequent is False:
                return False
            return None
        if isinstance(node, Iff):
            left = self.formula(node.left, env)
            right = self.formula(node.right, env)
            if left is None or right is None:
                return None
            return left == right
        if isinstance(node, Quantified):
            return self._quantified(node, env)
        if isinstance(node, MultTest):
            value = self.expr(node.operand, env)
            if value is None:
                return None
            return _MULT_TESTS[node.kind](len(value))
        if isinstance(node, Compare):
            return self._compare(node, env)
        if isinstance(node, IntCompare):
            left = self.int_expr(node.left, env)
            right = self.int_expr(node.right, env)
            if left is None or right is None:
                return None
            return _INT_OPS[node.op](left, right)
        raise TypeError(f"not a resolved formula: {node!r}")

    def _compare(self, node: Compare, env: Env) -> Optional[bool]:
        left = self.expr(node.left, env)
        if node.op == "in" and left is not None and not left:
            return True
        right = self.expr(node.right, env)
        if left is None or right is None:
            return None
        if node.op == "in":
            return left <= right
        if node.op == "=":
            return left == right
        return left != right

    def _quantified(self, node: Quantified, env: Env) -> Optional[bool]:
        domain = self.expr(node.domain, env)
        if domain is None:
            return None
        q = node.quantifier
        unknown = False
        hits = 0
        for (atom,) in sorted(domain):
            inner = dict(env)
            inner[node.var] = atom
            value = self.formula(node.body, inner)
            if value is None:
                unknown = True
                continue
            if q is Quantifier.ALL and not value:
                return False
            if q is Quantifier.SOME and value:
                return True
            if q is Quantifier.NO and value:
                return False
            if value:
                hits += 1
                if hits > 1 and q in (Quantifier.ONE, Quantifier.LONE):
                    return False
        if unknown:
            return None
        if q is Quantifier.ALL or q is Quantifier.NO or q is Quantifier.LONE:
            return True
        if q is Quantifier.SOME:
            return False
        return hits == 1


_MULT_TESTS = {
    Quantifier.NO: lambda n: n == 0,
    Quantifier.SOME: lambda n: n > 0,
    Quantifier.ONE: lambda n: n == 1,
    Quantifier.LONE: lambda n: n <= 1,
}


def evaluate_partial(formula, instance: Instance, env: Optional[Env] = None) -> Optional[bool]:
    """Three-valued evaluation; None when the answer depends on undecided parts."""
    return Evaluator(instance).formula(formula, env or {})


def evaluate(formula, instance: Instance, env: Optional[Env] = None) -> bool:
    """Evaluate a closed formula against a complete instance."""
    value = evaluate_partial(formula, instance, env)
    if value is None:
        raise EngineFault("formula reads parts of the instance that are not decided")
    return value


@dataclass(frozen=True)
class Explanation:
    """Outcome of `explain`.

    Attributes:
        holds: Whether the formula is true in the instance
        failed: The innermost sub-formula found false (None when it holds)
        bindings: Quantified variables bound when `failed` was evaluated
    """

    holds: bool
    failed: Optional[object] = None
    bindings: dict[str, str] = field(default_factory=dict)


def explain(formula, instance: Instance) -> Explanation:
    """Evaluate `formula` and, when false, locate the sub-formula that failed."""
    ev = Evaluator(instance)
    if ev.formula(formula, {}):
        return Explanation(holds=True)
    node, env = _blame(ev, formula, {})
    return Explanation(
        holds=False,
        failed=node,
        bindings={name: atom.name for name, atom in env.items()},
    )


def _blame(ev: Evaluator, node, env: dict):
    # Precondition: node evaluates to False under env
    if isinstance(node, And):
        for f in node.operands:
            if ev.formula(f, env) is False:
                return _blame(ev, f, env)
    elif isinstance(node, Implies):
        return _blame(ev, node.consequent, env)
    elif isinstance(node, Quantified) and node.quantifier is Quantifier.ALL:
        for (atom,) in sorted(ev.expr(node.domain, env)):
            inner = dict(env)
            inner[node.var] = atom
            if ev.formula(node.body, inner) is False:
                return _blame(ev, node.body, inner)
    return node, env
