import pytest

from rarcheck.errors import EngineFault, ScopeExceeded, UnknownType
from rarcheck.search.enumerator import (
    Decision,
    check_multiplicity,
    count_options,
    decisions_for,
    field_options,
    plan_decisions,
    resolve_scope,
)
from rarcheck.state import INT, Atom, Instance


def instance(schema, relations=None, **counts):
    all_counts = schema.fixed_counts(4)
    all_counts.update(counts)
    return Instance(schema, all_counts, relations or {})


class TestResolveScope:
    def test_defaults_and_inheritance(self, toy_schema):
        scope = resolve_scope(toy_schema, {"Node": 2}, default_scope=3, int_scope=5)
        assert scope.limits == {"Node": 2, "Special": 2, "Label": 3}
        assert scope.int_scope == 5
        assert scope.as_dict()[INT] == 5

    def test_int_bound_overrides_int_scope(self, toy_schema):
        assert resolve_scope(toy_schema, {"Int": 2}).int_scope == 2

    def test_explicit_child_bound_wins(self, toy_schema):
        scope = resolve_scope(toy_schema, {"Node": 3, "Special": 1})
        assert scope.limits["Special"] == 1

    def test_abstract_bound_kept(self, toy_schema):
        scope = resolve_scope(toy_schema, {"Color": 2})
        assert scope.limits["Color"] == 2

    @pytest.mark.parametrize("bounds", [{"Node": -1}, {"Node": "2"}, {"Node": True}, {"Color": 1}])
    def test_invalid_bounds(self, toy_schema, bounds):
        with pytest.raises(ScopeExceeded):
            resolve_scope(toy_schema, bounds)

    def test_unknown_signature(self, toy_schema):
        with pytest.raises(UnknownType):
            resolve_scope(toy_schema, {"Ghost": 1})


class TestCountOptions:
    def test_population_is_shared_with_subtypes(self, toy_schema):
        scope = resolve_scope(toy_schema, {"Node": 2})
        assert count_options(toy_schema, scope, "Node", {}) == [0, 1, 2]
        assert count_options(toy_schema, scope, "Special", {"Node": 1}) == [0, 1]
        assert count_options(toy_schema, scope, "Special", {"Node": 2}) == [0]

    def test_zero_bound(self, toy_schema):
        scope = resolve_scope(toy_schema, {"Label": 0})
        assert count_options(toy_schema, scope, "Label", {}) == [0]


class TestFieldOptions:
    def test_lone_field(self, toy_schema):
        inst = instance(toy_schema, Node=2, Special=0)
        options = list(field_options(toy_schema.field("next"), inst))
        assert len(options) == 9
        assert options[0] == frozenset()
        assert len(set(options)) == 9

    def test_one_field_maps_every_source_once(self, toy_schema):
        inst = instance(toy_schema, Node=1, Special=1)
        options = list(field_options(toy_schema.field("color"), inst))
        assert len(options) == 4
        for tuples in options:
            assert sorted(s for s, _ in tuples) == [Atom("Node", 0), Atom("Special", 0)]

    def test_subset_field_follows_base(self, toy_schema):
        n0, l0, l1 = Atom("Node", 0), Atom("Label", 0), Atom("Label", 1)
        inst = instance(
            toy_schema, {"labels": frozenset({(n0, l1)})}, Node=1, Special=0, Label=2
        )
        options = list(field_options(toy_schema.field("favorites"), inst))
        assert options == [frozenset(), frozenset({(n0, l1)})]
        assert (n0, l0) not in frozenset().union(*options)

    def test_empty_source_has_single_empty_option(self, toy_schema):
        inst = instance(toy_schema, Node=0, Special=0)
        assert list(field_options(toy_schema.field("next"), inst)) == [frozenset()]

    def test_one_field_without_targets_has_no_option(self, toy_schema):
        inst = instance(toy_schema, Node=1, Special=0, Label=0)
        toy_schema.register_field("badge", "Node", "Label", "one")
        assert list(field_options(toy_schema.field("badge"), inst)) == []

    def test_undecided_endpoint_is_a_fault(self, toy_schema):
        inst = instance(toy_schema, Node=1)
        with pytest.raises(EngineFault):
            list(field_options(toy_schema.field("next"), inst))


class TestCheckMultiplicity:
    def test_detects_violation(self, toy_schema):
        inst = instance(toy_schema, Node=1, Special=0)
        n0 = Atom("Node", 0)
        check_multiplicity(toy_schema.field("color"), frozenset({(n0, Atom("Red", 0))}), inst)
        with pytest.raises(EngineFault):
            check_multiplicity(toy_schema.field("color"), frozenset(), inst)


class TestPlan:
    def test_goal_decisions_come_first(self, toy_schema):
        goal = decisions_for(toy_schema, {"Node", "Special", "Color", "Red"}, {"color"})
        fact = decisions_for(toy_schema, {"Label", "Node", "Special"}, {"labels"})
        plan = plan_decisions(toy_schema, [(1, fact), (0, goal)])
        assert plan[:3] == [
            Decision("count", "Node"),
            Decision("count", "Special"),
            Decision("field", "color"),
        ]
        assert set(plan) == decisions_for(
            toy_schema, toy_schema.variable_sigs, toy_schema.field_names
        )
        assert len(plan) == len(set(plan))

    def test_fixed_signatures_are_not_decisions(self, toy_schema):
        assert decisions_for(toy_schema, {"Red", "Color", INT}, ()) == frozenset()
        assert str(Decision("count", "Node")) == "#Node"
        assert str(Decision("field", "next")) == "next"
