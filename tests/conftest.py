import pytest

from rarcheck.io.model import load_model
from rarcheck.model.constraints import ConstraintSet
from rarcheck.schema import Schema

# Formulas of the small graph model shared by the engine tests
TOY_FACTS = {
    "NoSelfLoops": "all n: Node | n not in n.next",
    "RedIsBare": "all n: Node | n.color = Red => no n.labels",
    "SpecialLabelled": "all s: Special | some s.labels",
}
TOY_PREDS = {
    "Cycle": "some n: Node | n in n.next.next",
    "TwoGreen": "#color.Green >= 2",
    "RedWithLabel": "some n: Node | n.color = Red and some n.labels",
    "FavoriteSpecial": "some s: Special | some s.favorites",
    "LonelyLabel": "some l: Label | no labels.l",
}
TOY_ASSERTS = {
    "NoSelfLoop": "all n: Node | n.next != n",
    "RedsUnlabelled": "all n: Node | n.color = Red => no n.labels",
    "AllLinked": "all n: Node | some n.next",
}


def build_toy_schema() -> Schema:
    schema = Schema()
    schema.register_sig("Node")
    schema.register_sig("Special", parent="Node")
    schema.register_sig("Label")
    schema.register_sig("Color", abstract=True)
    schema.register_sig("Red", parent="Color", one=True)
    schema.register_sig("Green", parent="Color", one=True)
    schema.register_field("next", "Node", "Node", "lone")
    schema.register_field("color", "Node", "Color", "one")
    schema.register_field("labels", "Node", "Label", "set")
    schema.register_field("favorites", "Node", "Label", "subsetOf", subset_of="labels")
    return schema


def build_toy_constraints(schema: Schema) -> ConstraintSet:
    constraints = ConstraintSet(schema)
    for name, text in TOY_FACTS.items():
        constraints.add(name, "fact", text)
    for name, text in TOY_PREDS.items():
        constraints.add(name, "pred", text)
    for name, text in TOY_ASSERTS.items():
        constraints.add(name, "assert", text)
    return constraints


@pytest.fixture
def toy_schema():
    return build_toy_schema()


@pytest.fixture
def toy_constraints(toy_schema):
    return build_toy_constraints(toy_schema)


@pytest.fixture(scope="session")
def rar_model():
    return load_model("rar")
