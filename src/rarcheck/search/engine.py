"""Bounded search for instances.

FIND looks for an instance satisfying every fact and a predicate; CHECK looks
for an instance satisfying every fact and violating an assertion. Both run a
depth-first backtracking search over the decisions planned by
`rarcheck.search.enumerator`, pruning a branch as soon as one constraint
unit is definitely false on the partial instance.

Search runs single-threaded by default. With `workers > 1` the options of the
first planned decision are distributed over a thread pool; the workers share
the read-only schema and constraints, a node counter and a cancellation flag.
"""

from __future__ import annotations

import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from rarcheck.errors import EngineFault
from rarcheck.model.ast import And, Constant, Implies, Not, Quantified, Quantifier
from rarcheck.model.constraints import ConstraintKind, ConstraintSet
from rarcheck.model.evaluator import Explanation, evaluate, evaluate_partial, explain
from rarcheck.model.validate import dependencies
from rarcheck.schema import Schema
from rarcheck.search.enumerator import (
    DEFAULT_INT_SCOPE,
    DEFAULT_SCOPE,
    Decision,
    Scope,
    check_multiplicity,
    count_options,
    decisions_for,
    field_options,
    plan_decisions,
    resolve_scope,
)
from rarcheck.state import Instance, Mode, Outcome

__all__ = [
    "SearchBudget",
    "SearchStats",
    "SearchResult",
    "SearchEngine",
    "split_conjuncts",
]

logger = logging.getLogger(__name__)

GOAL = "<goal>"


@dataclass(slots=True)
class SearchBudget:
    """Limits of one search. None means unlimited."""

    max_steps: Optional[int] = None
    time_limit: Optional[float] = None

    def __post_init__(self):
        if self.max_steps is not None and self.max_steps < 0:
            raise ValueError(f"max_steps must not be negative, got {self.max_steps}")
        if self.time_limit is not None and not self.time_limit > 0:
            raise ValueError(f"time_limit must be positive, got {self.time_limit}")


@dataclass(slots=True)
class SearchStats:
    nodes: int = 0
    pruned: int = 0
    constraints_checked: int = 0
    max_depth: int = 0
    decisions: int = 0
    workers: int = 1
    elapsed_seconds: float = 0.0
    prunes_by_constraint: dict[str, int] = field(default_factory=dict)

    def merge(self, other: "SearchStats") -> None:
        self.nodes += other.nodes
        self.pruned += other.pruned
        self.constraints_checked += other.constraints_checked
        self.max_depth = max(self.max_depth, other.max_depth)
        for name, n in other.prunes_by_constraint.items():
            self.prunes_by_constraint[name] = self.prunes_by_constraint.get(name, 0) + n


@dataclass(slots=True)
class SearchResult:
    mode: Mode
    target: Optional[str]
    outcome: Outcome
    scope: Scope
    stats: SearchStats
    instance: Optional[Instance] = None
    # Where the assertion fails in a counterexample
    violation: Optional[Explanation] = None

    @property
    def found(self) -> bool:
        """Whether a witness (FIND) or counterexample (CHECK) was found."""
        return self.instance is not None


def split_conjuncts(formula) -> list:
    """Split a formula into parts whose conjunction is equivalent to it.

    Top-level conjunctions are flattened, a universal quantifier is
    distributed over a conjunctive body and an implication over a
    conjunctive consequent.
    """
    if isinstance(formula, And):
        return [part for op in formula.operands for part in split_conjuncts(op)]
    if isinstance(formula, Quantified) and formula.quantifier is Quantifier.ALL:
        parts = split_conjuncts(formula.body)
        if len(parts) > 1:
            return [
                Quantified(Quantifier.ALL, formula.var, formula.domain, p, pos=formula.pos)
                for p in parts
            ]
    if isinstance(formula, Implies):
        parts = split_conjuncts(formula.consequent)
        if len(parts) > 1:
            return [Implies(formula.antecedent, p, pos=formula.pos) for p in parts]
    if isinstance(formula, Constant) and formula.value:
        return []
    return [formula]


@dataclass(frozen=True, slots=True)
class _Unit:
    uid: int
    name: str
    formula: object
    decisions: frozenset


class _Cancelled(Exception):
    pass


class _BudgetExhausted(Exception):
    pass


class _Run:
    """Read-only state of one search, shared by all workers."""

    def __init__(
        self,
        schema: Schema,
        scope: Scope,
        units: Sequence[_Unit],
        plan: Sequence[Decision],
        budget: SearchBudget,
    ):
        self.schema = schema
        self.scope = scope
        self.units = tuple(units)
        self.plan = tuple(plan)
        self.fixed = schema.fixed_counts(scope.int_scope)
        position = {d: i for i, d in enumerate(self.plan)}
        # Units to re-check after each planned decision
        watchers: list[list[_Unit]] = [[] for _ in self.plan]
        for unit in self.units:
            for d in unit.decisions:
                watchers[position[d]].append(unit)
        self.watchers = tuple(tuple(w) for w in watchers)
        self.max_steps = budget.max_steps
        self.deadline = (
            None if budget.time_limit is None else time.monotonic() + budget.time_limit
        )
        self.steps = itertools.count(1)
        self.cancel = threading.Event()
        self.exhausted = threading.Event()


class _Worker:
    """Depth-first search over one part of the instance space."""

    def __init__(self, run: _Run):
        self.run = run
        self.stats = SearchStats()
        self.counts: dict[str, int] = dict(run.fixed)
        self.relations: dict[str, frozenset] = {}
        self._instance: Optional[Instance] = None

    def instance(self) -> Instance:
        if self._instance is None:
            self._instance = Instance(self.run.schema, self.counts, self.relations)
        return self._instance

    def _tick(self) -> None:
        run = self.run
        if run.cancel.is_set():
            raise _Cancelled()
        n = next(run.steps)
        if run.max_steps is not None and n > run.max_steps:
            raise _BudgetExhausted()
        if run.deadline is not None and time.monotonic() > run.deadline:
            raise _BudgetExhausted()

    def options(self, decision: Decision) -> list:
        if decision.kind == "count":
            return count_options(self.run.schema, self.run.scope, decision.name, self.counts)
        return list(field_options(self.run.schema.field(decision.name), self.instance()))

    def _assign(self, decision: Decision, option) -> None:
        if decision.kind == "count":
            self.counts[decision.name] = option
        else:
            self.relations[decision.name] = option
        self._instance = None

    def _retract(self, decision: Decision) -> None:
        if decision.kind == "count":
            self.counts.pop(decision.name, None)
        else:
            self.relations.pop(decision.name, None)
        self._instance = None

    def _check(self, units: Sequence[_Unit], open_units: frozenset) -> Optional[frozenset]:
        """Re-evaluate `units`; None if one is false, else the units still open."""
        closed = set()
        for unit in units:
            if unit.uid not in open_units:
                continue
            self.stats.constraints_checked += 1
            value = evaluate_partial(unit.formula, self.instance())
            if value is False:
                self.stats.pruned += 1
                prunes = self.stats.prunes_by_constraint
                prunes[unit.name] = prunes.get(unit.name, 0) + 1
                return None
            if value is True:
                closed.add(unit.uid)
        return open_units - closed if closed else open_units

    def start(self) -> Optional[frozenset]:
        """Evaluate every unit on the root instance (fixed atoms only)."""
        return self._check(self.run.units, frozenset(u.uid for u in self.run.units))

    def step(self, depth: int, option, open_units: frozenset) -> Optional[Instance]:
        """Take option `option` for the decision at `depth` and search below it."""
        decision = self.run.plan[depth]
        self._tick()
        self.stats.nodes += 1
        self.stats.max_depth = max(self.stats.max_depth, depth + 1)
        self._assign(decision, option)
        if decision.kind == "field":
            check_multiplicity(self.run.schema.field(decision.name), option, self.instance())
        remaining = self._check(self.run.watchers[depth], open_units)
        found = None
        if remaining is not None:
            found = self.descend(depth + 1, remaining)
        if found is None:
            self._retract(decision)
        return found

    def descend(self, depth: int, open_units: frozenset) -> Optional[Instance]:
        if depth == len(self.run.plan):
            if open_units:
                names = sorted({u.name for u in self.run.units if u.uid in open_units})
                raise EngineFault(f"constraints undecided on a complete instance: {names}")
            return self.instance()
        for option in self.options(self.run.plan[depth]):
            found = self.step(depth, option, open_units)
            if found is not None:
                return found
        return None


class SearchEngine:
    """Bounded model finder for one schema and constraint set.

    Parameters
    ----------
    schema : Schema
        The registered signatures and fields.
    constraints : ConstraintSet
        Facts (always enforced) plus predicates and assertions (targets).
    default_scope : int
        Bound for signatures without an explicit or inherited one.
    int_scope : int
        Number of `Int` atoms (integers 0 .. int_scope-1).
    """

    def __init__(
        self,
        schema: Schema,
        constraints: ConstraintSet,
        *,
        default_scope: int = DEFAULT_SCOPE,
        int_scope: int = DEFAULT_INT_SCOPE,
    ):
        self.schema = schema
        self.constraints = constraints
        self.default_scope = default_scope
        self.int_scope = int_scope

    def find(
        self,
        predicate: Optional[str] = None,
        bounds: Optional[Mapping[str, int]] = None,
        *,
        budget: Optional[SearchBudget] = None,
        workers: int = 1,
    ) -> SearchResult:
        """Search for an instance of the facts that satisfies `predicate`.

        With `predicate=None` any instance of the facts is a witness.
        """
        goal = Constant(True)
        if predicate is not None:
            goal = self.constraints.get(predicate, ConstraintKind.PREDICATE).formula
        return self._search(Mode.FIND, predicate, goal, bounds, budget, workers)

    def check(
        self,
        assertion: str,
        bounds: Optional[Mapping[str, int]] = None,
        *,
        budget: Optional[SearchBudget] = None,
        workers: int = 1,
    ) -> SearchResult:
        """Search for an instance of the facts that violates `assertion`."""
        formula = self.constraints.get(assertion, ConstraintKind.ASSERTION).formula
        return self._search(Mode.CHECK, assertion, Not(formula), bounds, budget, workers)

    # ---------- internals ----------

    def _units(self, goal) -> list[_Unit]:
        parts: list[tuple[str, object]] = [(GOAL, f) for f in split_conjuncts(goal)]
        for constraint in self.constraints.facts:
            parts.extend((constraint.name, f) for f in split_conjuncts(constraint.formula))
        units = []
        for uid, (name, formula) in enumerate(parts):
            sigs, fields = dependencies(formula, self.schema)
            units.append(
                _Unit(uid, name, formula, decisions_for(self.schema, sigs, fields))
            )
        return units

    def _search(
        self,
        mode: Mode,
        target: Optional[str],
        goal,
        bounds: Optional[Mapping[str, int]],
        budget: Optional[SearchBudget],
        workers: int,
    ) -> SearchResult:
        if workers < 1:
            raise ValueError("workers must be at least 1")
        scope = resolve_scope(
            self.schema,
            bounds,
            default_scope=self.default_scope,
            int_scope=self.int_scope,
        )
        started = time.perf_counter()
        units = self._units(goal)
        plan = plan_decisions(
            self.schema, [(0 if u.name == GOAL else 1, u.decisions) for u in units]
        )
        logger.debug("search plan: %s", " ".join(str(d) for d in plan))
        run = _Run(self.schema, scope, units, plan, budget or SearchBudget())

        if workers == 1 or not plan:
            instance, stats = self._run_single(run)
        else:
            instance, stats = self._run_parallel(run, workers)
        stats.decisions = len(plan)
        stats.elapsed_seconds = time.perf_counter() - started

        violation = None
        if instance is not None:
            self._verify(goal, instance)
            outcome = Outcome.SAT if mode is Mode.FIND else Outcome.COUNTEREXAMPLE
            if mode is Mode.CHECK:
                violation = explain(goal.operand, instance)
        elif run.exhausted.is_set():
            outcome = Outcome.TIMEOUT
        else:
            outcome = Outcome.UNSAT if mode is Mode.FIND else Outcome.HOLDS
        logger.info(
            "%s %s: %s after %d nodes (%d pruned) in %.3fs",
            mode.value,
            target or "facts",
            outcome.value,
            stats.nodes,
            stats.pruned,
            stats.elapsed_seconds,
        )
        return SearchResult(
            mode=mode,
            target=target,
            outcome=outcome,
            scope=scope,
            stats=stats,
            instance=instance,
            violation=violation,
        )

    def _run_single(self, run: _Run) -> tuple[Optional[Instance], SearchStats]:
        worker = _Worker(run)
        try:
            open_units = worker.start()
            if open_units is None:
                return None, worker.stats
            return worker.descend(0, open_units), worker.stats
        except _BudgetExhausted:
            run.exhausted.set()
            return None, worker.stats

    def _run_parallel(
        self, run: _Run, workers: int
    ) -> tuple[Optional[Instance], SearchStats]:
        root = _Worker(run)
        stats = root.stats
        stats.workers = workers
        open_units = root.start()
        if open_units is None:
            return None, stats
        partitions = root.options(run.plan[0])
        logger.debug("splitting %s into %d partitions", run.plan[0], len(partitions))

        def explore(option) -> tuple[Optional[Instance], SearchStats]:
            worker = _Worker(run)
            try:
                return worker.step(0, option, open_units), worker.stats
            except _Cancelled:
                return None, worker.stats
            except _BudgetExhausted:
                run.exhausted.set()
                run.cancel.set()
                return None, worker.stats

        found: Optional[Instance] = None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="rarcheck") as pool:
            futures = [pool.submit(explore, option) for option in partitions]
            try:
                for future in as_completed(futures):
                    instance, worker_stats = future.result()
                    stats.merge(worker_stats)
                    if instance is not None and found is None:
                        found = instance
                        run.cancel.set()
            except BaseException:
                run.cancel.set()
                raise
        return found, stats

    def _verify(self, goal, instance: Instance) -> None:
        checks: list[tuple[str, object]] = [(GOAL, goal)]
        checks.extend((c.name, c.formula) for c in self.constraints.facts)
        for name, formula in checks:
            if not evaluate(formula, instance):
                raise EngineFault(f"reported instance violates '{name}'")
