import pytest
from ortools.sat.python import cp_model

from rarcheck import pipeline
from rarcheck.io.model import parse_model
from rarcheck.model.evaluator import evaluate
from rarcheck.model.translate import extract_instance, translate
from rarcheck.search.enumerator import resolve_scope
from rarcheck.state import Mode, Outcome

from conftest import TOY_ASSERTS, TOY_FACTS, TOY_PREDS


def toy_model():
    document = {
        "name": "toy",
        "sigs": [
            {
                "name": "Node",
                "fields": {
                    "next": "lone Node",
                    "color": "one Color",
                    "labels": "set Label",
                    "favorites": "subsetOf labels",
                },
            },
            {"name": "Special", "extends": "Node"},
            {"name": "Label"},
            {"name": "Color", "abstract": True},
            {"name": "Red", "extends": "Color", "one": True},
            {"name": "Green", "extends": "Color", "one": True},
        ],
        "facts": [{"name": n, "formula": f} for n, f in TOY_FACTS.items()],
        "preds": [{"name": n, "formula": f} for n, f in TOY_PREDS.items()],
        "asserts": [{"name": n, "formula": f} for n, f in TOY_ASSERTS.items()],
    }
    return parse_model(document, source="toy.yaml")


class TestTranslation:
    def test_solution_is_a_valid_instance(self, toy_schema, toy_constraints):
        scope = resolve_scope(toy_schema, {"Node": 3, "Label": 2})
        goal = toy_constraints.get("Cycle").formula
        translation = translate(
            schema=toy_schema,
            constraints=toy_constraints,
            scope=scope,
            goal=goal,
            goal_name="Cycle",
        )
        assert list(translation.enables) == ["Cycle"] + list(TOY_FACTS)
        model = translation.model
        model.AddAssumptions(list(translation.enables.values()))
        solver = cp_model.CpSolver()
        status = solver.Solve(model)
        assert status in (cp_model.OPTIMAL, cp_model.FEASIBLE)
        inst = extract_instance(solver, translation, toy_schema, scope)
        assert inst.complete
        assert evaluate(goal, inst)
        assert all(evaluate(c.formula, inst) for c in toy_constraints.facts)
        assert inst.count("Node") + inst.count("Special") <= 3


class TestCrossCheck:
    @pytest.mark.parametrize(
        "mode, target",
        [
            (Mode.FIND, "Cycle"),
            (Mode.FIND, "RedWithLabel"),
            (Mode.FIND, "TwoGreen"),
            (Mode.CHECK, "NoSelfLoop"),
            (Mode.CHECK, "AllLinked"),
        ],
    )
    def test_engine_and_solver_agree(self, mode, target):
        verdict = pipeline.cross_check(toy_model(), mode, target, {"Node": 3, "Label": 1})
        assert verdict.agree is True
        if verdict.engine_outcome in (Outcome.SAT, Outcome.COUNTEREXAMPLE):
            assert verdict.solver_instance is not None

    @pytest.mark.parametrize(
        "command", ["rarbit-gates-enable", "sleep-inhibits-rar", "pending-action-witness"]
    )
    def test_rar_commands_agree(self, rar_model, command):
        cmd = rar_model.command(command)
        verdict = pipeline.cross_check(rar_model, cmd.mode, cmd.target, cmd.scope)
        assert verdict.agree is True

    def test_reuses_engine_result(self, rar_model):
        result = pipeline.run_command(rar_model, "rarbit-gates-enable")
        verdict = pipeline.cross_check(
            rar_model, Mode.FIND, "RarBitClearedButEnabled", {"Processor": 1}, result=result
        )
        assert verdict.engine_outcome is Outcome.UNSAT
        assert verdict.solver_status == "INFEASIBLE"
        assert verdict.solver_instance is None

    def test_timeout_is_inconclusive(self, rar_model):
        result = pipeline.run_command(rar_model, "init-clears-rar", max_steps=3)
        verdict = pipeline.cross_check(
            rar_model,
            Mode.CHECK,
            "NoRarTargetsInit",
            {"Processor": 2, "RAR": 2},
            result=result,
        )
        assert verdict.agree is None


class TestUnsatCore:
    def test_core_names_the_gating_fact(self, rar_model):
        core = pipeline.unsat_core(
            rar_model, "RarBitClearedButEnabled", bounds={"Processor": 1}
        )
        assert core.solver_status == "INFEASIBLE"
        assert set(core.unsat_core) == {"RarBitClearedButEnabled", "EnableRequiresRarBit"}

    def test_sleep_core(self, rar_model):
        core = pipeline.unsat_core(
            rar_model, "SleepingTargetOfRar", bounds={"Processor": 1, "RAR": 1}
        )
        assert set(core.unsat_core) == {"SleepingTargetOfRar", "SleepInhibit"}

    def test_satisfiable_has_no_core(self, rar_model):
        core = pipeline.unsat_core(rar_model, "SomeRar", bounds={"Processor": 1, "RAR": 1})
        assert core.unsat_core is None
        assert core.solver_status in ("OPTIMAL", "FEASIBLE")

    def test_check_mode_core(self, rar_model):
        core = pipeline.unsat_core(
            rar_model, "EnabledImpliesRarBit", mode=Mode.CHECK, bounds={"Processor": 1}
        )
        assert set(core.unsat_core) == {"EnabledImpliesRarBit", "EnableRequiresRarBit"}
