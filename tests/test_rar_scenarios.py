"""End-to-end searches over the bundled RAR model."""

import pytest

from rarcheck import pipeline
from rarcheck.model.ast import to_text
from rarcheck.model.evaluator import evaluate
from rarcheck.state import INT, Atom, Mode, Outcome

P0 = Atom("Processor", 0)
TRUE = Atom("True", 0)


def relation(result, name):
    return result.instance.relation(name)


class TestBundledModel:
    def test_declarations(self, rar_model):
        schema = rar_model.schema
        assert rar_model.name == "rar"
        assert schema.variable_sigs == (
            "Processor",
            "MsrControl",
            "MsrInfo",
            "ActionVectorEntry",
            "PayloadTableEntry",
            "RAR",
            "IPI",
        )
        assert schema.field("enabledTypes").subset_of == "supportedTypes"
        assert len(rar_model.constraints.facts) == 16
        assert set(rar_model.commands) >= {"pending-action-witness", "init-clears-rar"}

    def test_facts_alone_are_consistent(self, rar_model):
        result = pipeline.find(rar_model, None, {"Processor": 1})
        assert result.outcome is Outcome.SAT


class TestScenarios:
    def test_rar_bit_gates_enable(self, rar_model):
        result = pipeline.find(rar_model, "RarBitClearedButEnabled", {"Processor": 1})
        assert result.outcome is Outcome.UNSAT

    def test_sleeping_processor_never_targeted(self, rar_model):
        result = pipeline.find(rar_model, "SleepingTargetOfRar", {"Processor": 1, "RAR": 1})
        assert result.outcome is Outcome.UNSAT

    def test_payload_beyond_table_size(self, rar_model):
        result = pipeline.run_command(rar_model, "payload-table-size")
        assert result.outcome is Outcome.UNSAT

    def test_fully_enabled_pending_action_witness(self, rar_model):
        result = pipeline.run_command(rar_model, "pending-action-witness")
        assert result.outcome is Outcome.SAT
        inst = result.instance
        assert inst.count("Processor") == 1
        assert inst.count("RAR") == 0
        assert inst.count("ActionVectorEntry") == 1
        assert inst.count("PayloadTableEntry") == 1

        ave = Atom("ActionVectorEntry", 0)
        entry = Atom("PayloadTableEntry", 0)
        control = Atom("MsrControl", 0)
        assert relation(result, "rarBit") == {(P0, TRUE)}
        assert relation(result, "msrControl") == {(P0, control)}
        assert relation(result, "enable") == {(control, TRUE)}
        assert relation(result, "execState") == {(P0, Atom("NORMAL", 0))}
        assert relation(result, "IF") == {(P0, TRUE)}
        assert relation(result, "actionVec") == {(P0, ave)}
        assert relation(result, "status") == {(ave, Atom("PENDING", 0))}
        assert relation(result, "idx") == {(ave, Atom(INT, 0))}
        assert relation(result, "owner") == {(entry, P0)}
        assert relation(result, "idxInTable") == {(entry, Atom(INT, 0))}
        assert relation(result, "target") == frozenset()

    def test_no_rar_targets_init(self, rar_model):
        result = pipeline.run_command(rar_model, "init-clears-rar")
        assert result.mode is Mode.CHECK
        assert result.outcome is Outcome.HOLDS
        assert result.scope.limits["Processor"] == 2
        assert result.scope.limits["RAR"] == 2


class TestCounterexample:
    def test_pending_outside_normal(self, rar_model):
        result = pipeline.run_command(rar_model, "pending-outside-normal")
        assert result.outcome is Outcome.COUNTEREXAMPLE
        inst = result.instance
        assertion = rar_model.constraints.get("PendingOnlyWhenNormal").formula
        assert not evaluate(assertion, inst)
        for fact in rar_model.constraints.facts:
            assert evaluate(fact.formula, inst), fact.name
        states = {state.sig for _, state in inst.relation("execState")}
        assert states - {"NORMAL"}
        assert "INIT" not in states

    def test_counterexample_explains_the_failure(self, rar_model):
        result = pipeline.run_command(rar_model, "pending-outside-normal")
        assert to_text(result.violation.failed) == "p.execState = NORMAL"
        assert set(result.violation.bindings) == {"p", "a"}
        culprit = Atom("Processor", int(result.violation.bindings["p"].split("$")[1]))
        assert (culprit, Atom("NORMAL", 0)) not in result.instance.relation("execState")

    def test_enable_implies_rar_bit_holds(self, rar_model):
        result = pipeline.check(rar_model, "EnabledImpliesRarBit", {"Processor": 1})
        assert result.outcome is Outcome.HOLDS


class TestSearchOptions:
    def test_tiny_step_budget_times_out(self, rar_model):
        result = pipeline.run_command(rar_model, "init-clears-rar", max_steps=10)
        assert result.outcome is Outcome.TIMEOUT

    def test_parallel_witness(self, rar_model):
        result = pipeline.run_command(rar_model, "pending-action-witness", workers=3)
        assert result.outcome is Outcome.SAT
        goal = rar_model.constraints.get("FullyEnabledPendingAction").formula
        assert evaluate(goal, result.instance)

    def test_command_bounds_can_be_overridden(self, rar_model):
        result = pipeline.run_command(
            rar_model, "sleep-inhibits-rar", bounds={"RAR": 0}
        )
        assert result.outcome is Outcome.UNSAT
        assert result.scope.limits["RAR"] == 0

    @pytest.mark.parametrize("name", ["rarbit-gates-enable", "sleep-inhibits-rar"])
    def test_parallel_agrees_on_unsat(self, rar_model, name):
        assert pipeline.run_command(rar_model, name, workers=2).outcome is Outcome.UNSAT
