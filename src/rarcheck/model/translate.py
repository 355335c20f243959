"""CP-SAT translation of a bounded search problem.

Build a CP-SAT model by:
  1) creating one Boolean per candidate atom (does it exist?) and per candidate
     tuple of every field, under the effective scope, and
  2) reifying every fact and the search goal into a single literal, each
     guarded by a fresh enable literal.

The enable literals are meant to be passed as assumptions, so an infeasible
model yields an UNSAT core over constraint names (see `pipeline.unsat_core`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from ortools.sat.python import cp_model

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
from rarcheck.model.constraints import ConstraintSet
from rarcheck.schema import Schema
from rarcheck.search.enumerator import Scope
from rarcheck.state import Atom, Instance, Multiplicity, make_atoms

__all__ = ["Translation", "translate", "extract_instance"]

# A literal is a CP-SAT Boolean (or its negation) or a Python constant
Lit = Union[bool, Any]
# Relational value: candidate tuple -> literal saying the tuple is present
Rel = Dict[tuple, Lit]


@dataclass(slots=True)
class Translation:
    """Outcome of `translate`.

    Attributes
    ----------
    model : cp_model.CpModel
        The constructed CP-SAT model (no assumptions set).
    exists : Dict[Atom, BoolVar]
        Existence literal of each candidate atom of a variable signature.
    tuples : Dict[str, Dict[(Atom, Atom), BoolVar]]
        Membership literal of each candidate tuple, per field.
    enables : Dict[str, BoolVar]
        Mapping constraint name -> enable literal guarding it.
    """

    model: cp_model.CpModel
    exists: Dict[Atom, Any]
    tuples: Dict[str, Dict[tuple, Any]]
    enables: Dict[str, Any]


class _Builder:
    def __init__(self, schema: Schema, scope: Scope):
        self.schema = schema
        self.scope = scope
        self.model = cp_model.CpModel()
        self.exists: Dict[Atom, Any] = {}
        self.tuples: Dict[str, Dict[tuple, Any]] = {}
        self._own: Dict[str, tuple[Atom, ...]] = {}
        self._fresh = 0

    # ---------- literal helpers ----------

    def _new(self, prefix: str):
        self._fresh += 1
        return self.model.NewBoolVar(f"{prefix}_{self._fresh}")

    def conj(self, lits) -> Lit:
        out = []
        for lit in lits:
            if lit is False:
                return False
            if lit is not True:
                out.append(lit)
        if not out:
            return True
        if len(out) == 1:
            return out[0]
        b = self._new("and")
        self.model.AddBoolAnd(out).OnlyEnforceIf(b)
        self.model.AddBoolOr([x.Not() for x in out]).OnlyEnforceIf(b.Not())
        return b

    def disj(self, lits) -> Lit:
        out = []
        for lit in lits:
            if lit is True:
                return True
            if lit is not False:
                out.append(lit)
        if not out:
            return False
        if len(out) == 1:
            return out[0]
        b = self._new("or")
        self.model.AddBoolOr(out).OnlyEnforceIf(b)
        self.model.AddBoolAnd([x.Not() for x in out]).OnlyEnforceIf(b.Not())
        return b

    @staticmethod
    def neg(lit: Lit) -> Lit:
        if isinstance(lit, bool):
            return not lit
        return lit.Not()

    def implies(self, a: Lit, b: Lit) -> Lit:
        return self.disj([self.neg(a), b])

    def reify(self, left, op: str, right) -> Lit:
        """Literal equivalent to the linear comparison `left op right`."""
        if isinstance(left, int) and isinstance(right, int):
            return _COMPARE[op](left, right)
        b = self._new("cmp")
        self.model.Add(_COMPARE[op](left, right)).OnlyEnforceIf(b)
        self.model.Add(_COMPARE[_NEGATED[op]](left, right)).OnlyEnforceIf(b.Not())
        return b

    @staticmethod
    def linear(lits, weights=None):
        """Sum of literals (optionally weighted) as an int or a linear expression."""
        const = 0
        terms = []
        for i, lit in enumerate(lits):
            w = 1 if weights is None else weights[i]
            if lit is True:
                const += w
            elif lit is not False and w:
                terms.append(w * lit)
        if not terms:
            return const
        return sum(terms) + const

    def forbid(self, lit: Lit) -> None:
        """Require `lit` to be false (makes the model infeasible for True)."""
        if lit is True:
            lit = self._new("const")
            self.model.Add(lit == 1)
        if lit is not False:
            self.model.AddBoolOr([lit.Not()])

    def enforce(self, constraint, lit: Lit) -> None:
        if lit is True:
            return
        constraint.OnlyEnforceIf(lit)

    # ---------- universe ----------

    def build_universe(self) -> None:
        fixed = self.schema.fixed_counts(self.scope.int_scope)
        for name in self.schema.sig_names:
            if self.schema.is_variable(name):
                atoms = make_atoms(name, self.scope.limits[name])
                previous = None
                for atom in atoms:
                    var = self.model.NewBoolVar(f"exists_{atom.name}")
                    self.exists[atom] = var
                    if previous is not None:
                        # Atoms of one signature exist as a prefix
                        self.model.AddImplication(var, previous)
                    previous = var
            else:
                atoms = make_atoms(name, fixed[name])
            self._own[name] = atoms

        for name, limit in self.scope.limits.items():
            members = self.population(name)
            if len(members) > limit:
                total = self.linear([lit for _, lit in members])
                if not isinstance(total, int):
                    self.model.Add(total <= limit)

        for f in self.schema.fields:
            sources = self.population(f.source)
            targets = self.population(f.target)
            base = self.tuples.get(f.subset_of) if f.subset_of else None
            cells: Dict[tuple, Any] = {}
            for s, s_lit in sources:
                row = []
                for t, t_lit in targets:
                    var = self.model.NewBoolVar(f"{f.name}_{s.name}_{t.name}")
                    for endpoint in (s_lit, t_lit):
                        if endpoint is not True:
                            self.model.AddImplication(var, endpoint)
                    if base is not None:
                        above = base.get((s, t))
                        if above is None:
                            self.model.Add(var == 0)
                        else:
                            self.model.AddImplication(var, above)
                    cells[(s, t)] = var
                    row.append(var)
                self._multiplicity(f.multiplicity, row, s_lit)
            self.tuples[f.name] = cells

    def _multiplicity(self, multiplicity: Multiplicity, row: list, s_lit: Lit) -> None:
        if multiplicity is Multiplicity.ONE:
            if not row:
                self.forbid(s_lit)
                return
            self.enforce(self.model.Add(sum(row) == 1), s_lit)
        elif multiplicity is Multiplicity.LONE and row:
            self.model.Add(sum(row) <= 1)
        elif multiplicity is Multiplicity.SOME:
            if not row:
                self.forbid(s_lit)
                return
            self.enforce(self.model.Add(sum(row) >= 1), s_lit)

    def population(self, sig: str) -> list[tuple[Atom, Lit]]:
        out = []
        for name in self.schema.type_closure_ordered(sig):
            for atom in self._own[name]:
                out.append((atom, self.exists.get(atom, True)))
        return out

    # ---------- expressions ----------

    def expr(self, node, env: Mapping[str, Atom]) -> Rel:
        if isinstance(node, Var):
            return {(env[node.name],): True}
        if isinstance(node, SigRef):
            return {(atom,): lit for atom, lit in self.population(node.name)}
        if isinstance(node, FieldRef):
            return dict(self.tuples[node.name])
        if isinstance(node, NoneExpr):
            return {}
        if isinstance(node, Join):
            left = self.expr(node.left, env)
            right = self.expr(node.right, env)
            by_head: Dict[Atom, list] = {}
            for tup, lit in right.items():
                by_head.setdefault(tup[0], []).append((tup[1:], lit))
            parts: Dict[tuple, list] = {}
            for tup, lit in left.items():
                for tail, r_lit in by_head.get(tup[-1], ()):
                    parts.setdefault(tup[:-1] + tail, []).append(self.conj([lit, r_lit]))
            return {tup: self.disj(lits) for tup, lits in parts.items()}
        if isinstance(node, Union_):
            left = self.expr(node.left, env)
            right = self.expr(node.right, env)
            keys = list(left) + [k for k in right if k not in left]
            return {k: self.disj([left.get(k, False), right.get(k, False)]) for k in keys}
        if isinstance(node, Intersection):
            left = self.expr(node.left, env)
            right = self.expr(node.right, env)
            return {k: self.conj([lit, right[k]]) for k, lit in left.items() if k in right}
        if isinstance(node, Difference):
            left = self.expr(node.left, env)
            right = self.expr(node.right, env)
            return {
                k: self.conj([lit, self.neg(right.get(k, False))]) for k, lit in left.items()
            }
        if isinstance(node, Transpose):
            value = self.expr(node.operand, env)
            return {(b, a): lit for (a, b), lit in value.items()}
        raise TypeError(f"not a resolved expression: {node!r}")

    def int_expr(self, node, env):
        if isinstance(node, IntLiteral):
            return node.value
        if isinstance(node, Cardinality):
            return self.linear(list(self.expr(node.operand, env).values()))
        if isinstance(node, IntValue):
            value = self.expr(node.operand, env)
            lits = list(value.values())
            return self.linear(lits, [tup[0].index for tup in value])
        raise TypeError(f"not an integer expression: {node!r}")

    # ---------- formulas ----------

    def formula(self, node, env: Mapping[str, Atom]) -> Lit:
        if isinstance(node, Constant):
            return node.value
        if isinstance(node, Not):
            return self.neg(self.formula(node.operand, env))
        if isinstance(node, And):
            return self.conj([self.formula(f, env) for f in node.operands])
        if isinstance(node, Or):
            return self.disj([self.formula(f, env) for f in node.operands])
        if isinstance(node, Implies):
            return self.implies(
                self.formula(node.antecedent, env), self.formula(node.consequent, env)
            )
        if isinstance(node, Iff):
            left = self.formula(node.left, env)
            right = self.formula(node.right, env)
            return self.conj([self.implies(left, right), self.implies(right, left)])
        if isinstance(node, Quantified):
            return self._quantified(node, env)
        if isinstance(node, MultTest):
            lits = list(self.expr(node.operand, env).values())
            return self._count(node.kind, lits)
        if isinstance(node, Compare):
            left = self.expr(node.left, env)
            right = self.expr(node.right, env)
            subset = self.conj(
                [self.implies(lit, right.get(k, False)) for k, lit in left.items()]
            )
            if node.op == "in":
                return subset
            superset = self.conj(
                [self.implies(lit, left.get(k, False)) for k, lit in right.items()]
            )
            equal = self.conj([subset, superset])
            return equal if node.op == "=" else self.neg(equal)
        if isinstance(node, IntCompare):
            return self.reify(
                self.int_expr(node.left, env), node.op, self.int_expr(node.right, env)
            )
        raise TypeError(f"not a resolved formula: {node!r}")

    def _quantified(self, node: Quantified, env) -> Lit:
        domain = self.expr(node.domain, env)
        q = node.quantifier
        bodies = []
        for (atom,), member in sorted(domain.items()):
            inner = dict(env)
            inner[node.var] = atom
            body = self.formula(node.body, inner)
            if q is Quantifier.ALL:
                bodies.append(self.implies(member, body))
            else:
                bodies.append(self.conj([member, body]))
        if q is Quantifier.ALL:
            return self.conj(bodies)
        return self._count(q, bodies)

    def _count(self, kind: Quantifier, lits: list) -> Lit:
        if kind is Quantifier.SOME:
            return self.disj(lits)
        if kind is Quantifier.NO:
            return self.neg(self.disj(lits))
        total = self.linear(lits)
        if kind is Quantifier.ONE:
            return self.reify(total, "=", 1)
        return self.reify(total, "<=", 1)


_COMPARE = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
    "=": lambda a, b: a == b,
    "!=": lambda a, b: a != b,
}

_NEGATED = {"<": ">=", "<=": ">", ">": "<=", ">=": "<", "=": "!=", "!=": "="}


def translate(
    *,
    schema: Schema,
    constraints: ConstraintSet,
    scope: Scope,
    goal=None,
    goal_name: Optional[str] = None,
) -> Translation:
    """Build the CP-SAT model for one bounded search.

    Parameters
    ----------
    schema : Schema
        Signatures and fields to instantiate.
    constraints : ConstraintSet
        Every fact of the set is translated and guarded.
    scope : Scope
        Effective bounds (see `search.enumerator.resolve_scope`).
    goal : formula, optional
        Resolved FIND goal or negated CHECK assertion.
    goal_name : str, optional
        Name used for the goal's enable literal.

    Returns
    -------
    Translation
        Model, variables and the enable literal of every guarded constraint.
    """
    builder = _Builder(schema, scope)
    builder.build_universe()
    model = builder.model
    enables: Dict[str, Any] = {}
    guarded = []
    if goal is not None:
        guarded.append((goal_name or "goal", goal))
    guarded.extend((c.name, c.formula) for c in constraints.facts)
    for name, formula in guarded:
        enable = model.NewBoolVar(f"enable_{name}")
        lit = builder.formula(formula, {})
        if lit is False:
            model.AddBoolOr([enable.Not()])
        elif lit is not True:
            model.AddImplication(enable, lit)
        enables[name] = enable
    return Translation(
        model=model, exists=builder.exists, tuples=builder.tuples, enables=enables
    )


def extract_instance(
    solver: cp_model.CpSolver, translation: Translation, schema: Schema, scope: Scope
) -> Instance:
    """Read the instance chosen by a solved model."""
    counts = schema.fixed_counts(scope.int_scope)
    for name in schema.variable_sigs:
        counts[name] = sum(
            1 for i in range(scope.limits[name])
            if solver.BooleanValue(translation.exists[Atom(name, i)])
        )
    relations = {
        name: frozenset(tup for tup, var in cells.items() if solver.BooleanValue(var))
        for name, cells in translation.tuples.items()
    }
    return Instance(schema, counts, relations)
