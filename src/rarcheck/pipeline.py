"""Search pipeline.

This module exposes the library entry points:
  - load_model(path_or_name): parse a YAML model (or a bundled one, e.g. "rar")
  - find(model, predicate, bounds) / check(model, assertion, bounds): run the
    backtracking search engine
  - run_command(model, name): run a search stored in the model file
  - cross_check(...): solve the same bounded problem with CP-SAT and compare
  - unsat_core(...): name the facts (and target) that make a search infeasible
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Union

from ortools.sat.python import cp_model

from rarcheck.errors import EngineFault
from rarcheck.io.model import Model
from rarcheck.io.model import load_model as _load_model
from rarcheck.model.ast import Constant, Not
from rarcheck.model.constraints import ConstraintKind
from rarcheck.model.evaluator import evaluate
from rarcheck.model.translate import Translation, extract_instance, translate
from rarcheck.search.engine import SearchBudget, SearchResult
from rarcheck.search.enumerator import resolve_scope
from rarcheck.state import Instance, Mode, Outcome

__all__ = [
    "CoreResult",
    "CrossCheckResult",
    "load_model",
    "find",
    "check",
    "run_command",
    "cross_check",
    "unsat_core",
]

logger = logging.getLogger(__name__)

ModelLike = Union[Model, str]


@dataclass(slots=True)
class CoreResult:
    solver_status: str
    unsat_core: Optional[List[str]]
    wall_time: float


@dataclass(slots=True)
class CrossCheckResult:
    """Engine outcome next to the CP-SAT verdict for the same bounded problem.

    `agree` is None when either side could not reach a verdict (engine
    TIMEOUT, or CP-SAT stopped with UNKNOWN).
    """

    engine_outcome: Outcome
    solver_status: str
    agree: Optional[bool]
    wall_time: float
    solver_instance: Optional[Instance] = None


def load_model(path_or_name: str) -> Model:
    return _load_model(path_or_name)


def _as_model(model: ModelLike) -> Model:
    return model if isinstance(model, Model) else _load_model(model)


def find(
    model: ModelLike,
    predicate: Optional[str] = None,
    bounds: Optional[Mapping[str, int]] = None,
    *,
    max_steps: Optional[int] = None,
    time_limit: Optional[float] = None,
    workers: int = 1,
) -> SearchResult:
    """FIND: an instance of all facts satisfying `predicate` (any instance if None)."""
    return _as_model(model).engine().find(
        predicate,
        bounds,
        budget=SearchBudget(max_steps=max_steps, time_limit=time_limit),
        workers=workers,
    )


def check(
    model: ModelLike,
    assertion: str,
    bounds: Optional[Mapping[str, int]] = None,
    *,
    max_steps: Optional[int] = None,
    time_limit: Optional[float] = None,
    workers: int = 1,
) -> SearchResult:
    """CHECK: an instance of all facts violating `assertion`, if one exists."""
    return _as_model(model).engine().check(
        assertion,
        bounds,
        budget=SearchBudget(max_steps=max_steps, time_limit=time_limit),
        workers=workers,
    )


def run_command(
    model: ModelLike,
    name: str,
    *,
    bounds: Optional[Mapping[str, int]] = None,
    max_steps: Optional[int] = None,
    time_limit: Optional[float] = None,
    workers: int = 1,
) -> SearchResult:
    """Run a command of the model file; `bounds` override the command's scope."""
    model = _as_model(model)
    command = model.command(name)
    merged = dict(command.scope)
    merged.update(bounds or {})
    run = find if command.mode is Mode.FIND else check
    return run(
        model,
        command.target,
        merged,
        max_steps=max_steps,
        time_limit=time_limit,
        workers=workers,
    )


def _goal(model: Model, mode: Mode, target: Optional[str]):
    if mode is Mode.FIND:
        if target is None:
            return Constant(True)
        return model.constraints.get(target, ConstraintKind.PREDICATE).formula
    if target is None:
        raise ValueError("CHECK needs an assertion name")
    return Not(model.constraints.get(target, ConstraintKind.ASSERTION).formula)


def _build(
    model: Model, mode: Mode, target: Optional[str], bounds: Optional[Mapping[str, int]]
):
    scope = resolve_scope(
        model.schema,
        bounds,
        default_scope=model.default_scope,
        int_scope=model.int_scope,
    )
    goal = _goal(model, mode, target)
    translation = translate(
        schema=model.schema,
        constraints=model.constraints,
        scope=scope,
        goal=goal,
        goal_name=target or "goal",
    )
    return scope, goal, translation


def _solve(
    translation: Translation, names: List[str], time_limit: Optional[float]
) -> tuple[cp_model.CpSolver, Any]:
    solver = cp_model.CpSolver()
    if time_limit is not None:
        solver.parameters.max_time_in_seconds = float(time_limit)
    model = translation.model
    model.ClearAssumptions()
    model.AddAssumptions([translation.enables[n] for n in names])
    status = solver.Solve(model)
    return solver, status


def _core_names(core_idx: List[int], enables: Dict[str, Any]) -> List[str]:
    # Map core literal indices back to constraint names, keeping enable order
    by_index = {var.Index(): name for name, var in enables.items()}
    found = {by_index[i] for i in core_idx if i in by_index}
    return [name for name in enables if name in found]


def _shrink_core_to_mus(
    *,
    translation: Translation,
    core_names: List[str],
    time_limit: Optional[float],
) -> List[str]:
    # Greedy deletion: drop a name for good if the rest stays infeasible
    mus = list(core_names)
    for name in core_names:
        trial = [n for n in mus if n != name]
        _, status = _solve(translation, trial, time_limit)
        if status == cp_model.INFEASIBLE:
            mus.remove(name)
    return mus


def unsat_core(
    model: ModelLike,
    target: Optional[str] = None,
    *,
    mode: Mode = Mode.FIND,
    bounds: Optional[Mapping[str, int]] = None,
    time_limit: Optional[float] = None,
) -> CoreResult:
    """Solve with every constraint as an assumption to obtain an UNSAT core.

    The core lists fact names (and the target name, when the target takes
    part) and is shrunk to a subset-minimal one. It is None when the
    problem is feasible or the solver gave up.
    """
    model = _as_model(model)
    _, _, translation = _build(model, mode, target, bounds)
    names = list(translation.enables)
    solver, status = _solve(translation, names, time_limit)
    logger.info("CP-SAT %s: %s", target or "facts", solver.status_name(status))
    core: Optional[List[str]] = None
    if status == cp_model.INFEASIBLE:
        core_idx = list(solver.SufficientAssumptionsForInfeasibility())
        # An empty answer means the solver kept no core; start from everything
        core_names = _core_names(core_idx, translation.enables) or names
        core = _shrink_core_to_mus(
            translation=translation,
            core_names=core_names,
            time_limit=time_limit,
        )
    return CoreResult(
        solver_status=solver.status_name(status),
        unsat_core=core,
        wall_time=solver.WallTime(),
    )


def cross_check(
    model: ModelLike,
    mode: Mode,
    target: Optional[str] = None,
    bounds: Optional[Mapping[str, int]] = None,
    *,
    time_limit: Optional[float] = None,
    result: Optional[SearchResult] = None,
) -> CrossCheckResult:
    """Compare the search engine with CP-SAT on the same bounded problem.

    Pass `result` to reuse an engine run; otherwise the engine is run here.
    A CP-SAT instance is re-evaluated with the exact evaluator; if it does
    not satisfy the facts and goal the translation is wrong (`EngineFault`).
    """
    model = _as_model(model)
    if result is None:
        search = find if mode is Mode.FIND else check
        result = search(model, target, bounds, time_limit=time_limit)
    scope, goal, translation = _build(model, mode, target, bounds)
    solver, status = _solve(translation, list(translation.enables), time_limit)
    status_name = solver.status_name(status)

    solver_instance = None
    solver_found: Optional[bool] = None
    if status in (cp_model.OPTIMAL, cp_model.FEASIBLE):
        solver_found = True
        solver_instance = extract_instance(solver, translation, model.schema, scope)
        checks = [(target or "goal", goal)] + [
            (c.name, c.formula) for c in model.constraints.facts
        ]
        for name, formula in checks:
            if not evaluate(formula, solver_instance):
                raise EngineFault(f"CP-SAT instance violates '{name}'")
    elif status == cp_model.INFEASIBLE:
        solver_found = False

    agree: Optional[bool] = None
    if result.outcome is not Outcome.TIMEOUT and solver_found is not None:
        agree = result.found == solver_found
    logger.info(
        "cross-check %s: engine %s, CP-SAT %s",
        target or "facts",
        result.outcome.value,
        status_name,
    )
    if agree is False:
        logger.warning(
            "engine and CP-SAT disagree on %s: %s vs %s",
            target or "facts",
            result.outcome.value,
            status_name,
        )
    return CrossCheckResult(
        engine_outcome=result.outcome,
        solver_status=status_name,
        agree=agree,
        wall_time=solver.WallTime(),
        solver_instance=solver_instance,
    )
