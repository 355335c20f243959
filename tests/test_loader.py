import textwrap

import pytest

from rarcheck.errors import (
    DuplicateType,
    ModelFileError,
    ScopeExceeded,
    TypeMismatch,
    UnboundVariable,
    UnknownConstraint,
    UnknownParent,
    UnknownType,
)
from rarcheck.io.model import ModelWarning, bundled_models, load_model, parse_model
from rarcheck.state import Mode, Multiplicity

MINIMAL = """
name: shop
default_scope: 2
int_scope: 3
sigs:
  - name: Order
    fields:
      items: some Item      # declared before Item
      gift: lone Item
  - name: Item
facts:
  - name: GiftIsOrdered
    formula: 'all o: Order | o.gift in o.items'
preds:
  - name: Big
    formula: 'some o: Order | #o.items >= 2'
asserts:
  - name: Small
    formula: 'all o: Order | #o.items <= 1'
commands:
  - name: big
    mode: find
    target: Big
    scope: {Order: 1, Item: 2}
  - name: small
    mode: check
    target: Small
"""


def write(tmp_path, text, name="model.yaml"):
    path = tmp_path / name
    path.write_text(textwrap.dedent(text), encoding="utf-8")
    return str(path)


def document(**overrides):
    doc = {
        "sigs": [
            {"name": "A", "fields": {"f": "one B"}},
            {"name": "B"},
        ],
    }
    doc.update(overrides)
    return doc


class TestLoadModel:
    def test_loads_file(self, tmp_path):
        model = load_model(write(tmp_path, MINIMAL))
        assert model.name == "shop"
        assert model.default_scope == 2
        assert model.int_scope == 3
        assert model.schema.field("items").multiplicity is Multiplicity.SOME
        assert model.command("big").mode is Mode.FIND
        assert model.command("small").scope == {}
        assert model.constraints.get("GiftIsOrdered").text.startswith("all o")

    def test_name_defaults_to_file_stem(self, tmp_path):
        model = load_model(write(tmp_path, "sigs:\n  - name: A\n", name="tiny.yaml"))
        assert model.name == "tiny"

    def test_bundled(self):
        assert "rar" in bundled_models()
        assert load_model("rar").name == "rar"

    def test_missing(self, tmp_path):
        with pytest.raises(ModelFileError):
            load_model(str(tmp_path / "absent.yaml"))

    def test_unreadable_paths(self, tmp_path):
        binary = tmp_path / "binary.yaml"
        binary.write_bytes(b"name: \xff\n")
        with pytest.raises(ModelFileError, match="cannot read"):
            load_model(str(binary))
        with pytest.raises(ModelFileError, match="cannot read"):
            load_model(str(tmp_path))

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(ModelFileError):
            load_model(write(tmp_path, "sigs: [unclosed\n"))

    def test_engine_runs_commands(self, tmp_path):
        model = load_model(write(tmp_path, MINIMAL))
        result = model.engine().find("Big", {"Order": 1, "Item": 2})
        assert result.found

    def test_unknown_command(self, tmp_path):
        model = load_model(write(tmp_path, MINIMAL))
        with pytest.raises(ModelFileError):
            model.command("nope")


class TestShapeErrors:
    def test_top_level_must_have_sigs(self):
        with pytest.raises(ModelFileError):
            parse_model({"facts": []})
        with pytest.raises(ModelFileError):
            parse_model(["sigs"])

    def test_unknown_top_level_key_warns(self):
        with pytest.warns(ModelWarning, match="colour"):
            parse_model(document(colour="blue"))

    @pytest.mark.parametrize(
        "sigs",
        [
            [{"name": "A", "parent": "B"}],
            [{"name": ""}],
            [{"name": "A", "abstract": "yes"}],
            [{"name": "A", "abstract": True, "one": True}],
            [{"name": "A", "fields": ["f"]}],
            [{"name": "A", "fields": {"f": "A"}}],
            [{"name": "A", "fields": {"f": "many A"}}],
            ["A"],
        ],
    )
    def test_bad_signatures(self, sigs):
        with pytest.raises(ModelFileError):
            parse_model({"sigs": sigs})

    @pytest.mark.parametrize(
        "commands",
        [
            [{"name": "c", "mode": "explore", "target": None}],
            [{"name": "c", "mode": "check"}],
            [{"name": "c", "mode": "find", "scope": [1]}],
            [{"name": "c", "mode": "find"}, {"name": "c", "mode": "find"}],
        ],
    )
    def test_bad_commands(self, commands):
        with pytest.raises(ModelFileError):
            parse_model(document(commands=commands))

    def test_non_integer_scope_setting(self):
        with pytest.raises(ModelFileError):
            parse_model(document(default_scope="three"))

    def test_formula_must_be_text(self):
        with pytest.raises(ModelFileError):
            parse_model(document(facts=[{"name": "F", "formula": 3}]))

    def test_boolean_formula_is_a_constant(self):
        model = parse_model(document(facts=[{"name": "F", "formula": True}]))
        assert model.constraints.get("F").text == "true"


class TestDefinitionErrors:
    def test_duplicate_type(self):
        with pytest.raises(DuplicateType):
            parse_model({"sigs": [{"name": "A"}, {"name": "A"}]})

    def test_unknown_parent(self):
        with pytest.raises(UnknownParent):
            parse_model({"sigs": [{"name": "A", "extends": "Missing"}]})

    def test_parent_must_come_first(self):
        with pytest.raises(UnknownParent):
            parse_model({"sigs": [{"name": "B", "extends": "A"}, {"name": "A"}]})

    def test_unknown_field_target(self):
        with pytest.raises(UnknownType):
            parse_model({"sigs": [{"name": "A", "fields": {"f": "one Missing"}}]})

    def test_unbound_variable(self):
        with pytest.raises(UnboundVariable):
            parse_model(document(facts=[{"name": "F", "formula": "all a: A | a.f = b"}]))

    def test_type_mismatch(self):
        with pytest.raises(TypeMismatch):
            parse_model(document(facts=[{"name": "F", "formula": "some A.B"}]))

    def test_command_target_must_exist(self):
        commands = [{"name": "c", "mode": "find", "target": "Nope"}]
        with pytest.raises(UnknownConstraint):
            parse_model(document(commands=commands))

    def test_command_scope_checked_at_load(self):
        with pytest.raises(ScopeExceeded):
            parse_model(document(commands=[{"name": "c", "mode": "find", "scope": {"A": -1}}]))
        with pytest.raises(UnknownType):
            parse_model(document(commands=[{"name": "c", "mode": "find", "scope": {"Z": 1}}]))

    def test_negative_default_scope(self):
        with pytest.raises(ScopeExceeded):
            parse_model(document(default_scope=-1))
