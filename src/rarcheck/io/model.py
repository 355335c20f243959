"""YAML model loader that registers signatures, fields and constraints.

Assumptions (strict):
- The file is YAML and its top level is a mapping with a `sigs` list.
- Each entry of `sigs` is a mapping with `name` and optional `extends`,
  `abstract`, `one` and `fields` (mapping field name -> "<mult> <Target>"
  or "subsetOf <field>").
- `facts`, `preds` and `asserts` are lists of mappings with `name`, `formula`
  and optional `description`.
- `commands` is a list of mappings with `name`, `mode` (find/check), `target`
  and optional `scope` (mapping signature -> bound).
- Unknown top-level keys are ignored with a `ModelWarning`. Any other shape
  problem raises `ModelFileError`; schema and formula problems raise the
  matching `DefinitionError`.
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from importlib.resources import files
from typing import Any, Dict, List, Mapping, Optional

from yaml import YAMLError, safe_load

from rarcheck.errors import ModelFileError
from rarcheck.model.constraints import ConstraintKind, ConstraintSet
from rarcheck.schema import Schema
from rarcheck.search.enumerator import DEFAULT_INT_SCOPE, DEFAULT_SCOPE, resolve_scope
from rarcheck.search.engine import SearchEngine
from rarcheck.state import Mode, Multiplicity

__all__ = [
    "ModelWarning",
    "Command",
    "Model",
    "load_model",
    "parse_model",
    "bundled_models",
]

BUNDLED_PACKAGE = "rarcheck.models"

_TOP_LEVEL_KEYS = {
    "name",
    "description",
    "default_scope",
    "int_scope",
    "sigs",
    "facts",
    "preds",
    "asserts",
    "commands",
}
_SIG_KEYS = {"name", "extends", "abstract", "one", "fields"}
_CONSTRAINT_KEYS = {"name", "formula", "description"}
_COMMAND_KEYS = {"name", "mode", "target", "scope"}

_SECTIONS = (
    ("facts", ConstraintKind.FACT),
    ("preds", ConstraintKind.PREDICATE),
    ("asserts", ConstraintKind.ASSERTION),
)


class ModelWarning(UserWarning):
    pass


@dataclass(frozen=True, slots=True)
class Command:
    """A named search stored in a model file."""

    name: str
    mode: Mode
    target: Optional[str]
    scope: Mapping[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class Model:
    """A loaded model: schema, constraints, scope defaults and commands."""

    name: str
    schema: Schema
    constraints: ConstraintSet
    default_scope: int = DEFAULT_SCOPE
    int_scope: int = DEFAULT_INT_SCOPE
    commands: Dict[str, Command] = field(default_factory=dict)
    description: str = ""
    source: Optional[str] = None

    def engine(self) -> SearchEngine:
        return SearchEngine(
            self.schema,
            self.constraints,
            default_scope=self.default_scope,
            int_scope=self.int_scope,
        )

    def command(self, name: str) -> Command:
        try:
            return self.commands[name]
        except KeyError:
            known = ", ".join(self.commands) or "none"
            raise ModelFileError(
                f"unknown command '{name}'. Known: {known}", where=name
            ) from None


def _mapping(item: Any, where: str, allowed: set[str]) -> Dict[str, Any]:
    if not isinstance(item, dict):
        raise ModelFileError(f"{where} must be a mapping.", where=where)
    extra = sorted(set(item) - allowed)
    if extra:
        raise ModelFileError(
            f"{where} has unknown key(s) {extra}; allowed: {sorted(allowed)}.", where=where
        )
    return item


def _name(item: Dict[str, Any], where: str) -> str:
    name = item.get("name")
    if not isinstance(name, str) or not name.strip():
        raise ModelFileError(f"{where}.name must be a non-empty string.", where=where)
    return name.strip()


def _flag(item: Dict[str, Any], key: str, where: str) -> bool:
    value = item.get(key, False)
    if not isinstance(value, bool):
        raise ModelFileError(f"{where}.{key} must be true or false.", where=where)
    return value


def _list(parsed: Dict[str, Any], key: str) -> List[Any]:
    value = parsed.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ModelFileError(f"'{key}' must be a list.", where=key)
    return value


def _int(parsed: Dict[str, Any], key: str, default: int) -> int:
    value = parsed.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ModelFileError(f"'{key}' must be an integer.", where=key)
    return value


def _register_sigs(schema: Schema, sig_items: List[Any]) -> List[tuple[str, Dict[str, Any]]]:
    pending_fields = []
    for idx, raw in enumerate(sig_items):
        where = f"sigs[{idx}]"
        item = _mapping(raw, where, _SIG_KEYS)
        name = _name(item, where)
        parent = item.get("extends")
        if parent is not None and not isinstance(parent, str):
            raise ModelFileError(f"{where}.extends must be a signature name.", where=name)
        abstract = _flag(item, "abstract", where)
        one = _flag(item, "one", where)
        if abstract and one:
            raise ModelFileError(f"'{name}' cannot be both abstract and one.", where=name)
        schema.register_sig(name, parent=parent, abstract=abstract, one=one)
        fields = item.get("fields") or {}
        if not isinstance(fields, dict):
            raise ModelFileError(f"{where}.fields must be a mapping.", where=name)
        pending_fields.append((name, fields))
    return pending_fields


def _register_fields(schema: Schema, pending: List[tuple[str, Dict[str, Any]]]) -> None:
    # Fields are registered after every signature so they may point forward
    for source, fields in pending:
        for field_name, decl in fields.items():
            where = f"{source}.{field_name}"
            parts = decl.split() if isinstance(decl, str) else []
            if len(parts) != 2:
                raise ModelFileError(
                    f"field '{where}' must be declared as '<mult> <Target>' "
                    "or 'subsetOf <field>'.",
                    where=where,
                )
            mult_text, target = parts
            try:
                mult = Multiplicity(mult_text)
            except ValueError:
                allowed = ", ".join(m.value for m in Multiplicity)
                raise ModelFileError(
                    f"field '{where}' has unknown multiplicity '{mult_text}' ({allowed}).",
                    where=where,
                ) from None
            if mult is Multiplicity.SUBSET_OF:
                base = schema.field(target) if schema.has_field(target) else None
                schema.register_field(
                    field_name,
                    source,
                    base.target if base is not None else source,
                    mult,
                    subset_of=target,
                )
            else:
                schema.register_field(field_name, source, target, mult)


def _register_constraints(constraints: ConstraintSet, parsed: Dict[str, Any]) -> None:
    for key, kind in _SECTIONS:
        for idx, raw in enumerate(_list(parsed, key)):
            where = f"{key}[{idx}]"
            item = _mapping(raw, where, _CONSTRAINT_KEYS)
            name = _name(item, where)
            formula = item.get("formula")
            if isinstance(formula, bool):
                formula = "true" if formula else "false"
            if not isinstance(formula, str) or not formula.strip():
                raise ModelFileError(f"{where}.formula must be a string.", where=name)
            description = item.get("description") or ""
            constraints.add(name, kind, formula, " ".join(str(description).split()))


def _parse_commands(model: Model, items: List[Any]) -> None:
    for idx, raw in enumerate(items):
        where = f"commands[{idx}]"
        item = _mapping(raw, where, _COMMAND_KEYS)
        name = _name(item, where)
        if name in model.commands:
            raise ModelFileError(f"command '{name}' is declared twice.", where=name)
        try:
            mode = Mode(item.get("mode"))
        except ValueError:
            raise ModelFileError(
                f"{where}.mode must be 'find' or 'check'.", where=name
            ) from None
        target = item.get("target")
        if mode is Mode.CHECK or target is not None:
            if not isinstance(target, str):
                raise ModelFileError(f"{where}.target must be a constraint name.", where=name)
            kind = ConstraintKind.PREDICATE if mode is Mode.FIND else ConstraintKind.ASSERTION
            model.constraints.get(target, kind)
        scope = item.get("scope") or {}
        if not isinstance(scope, dict):
            raise ModelFileError(f"{where}.scope must be a mapping.", where=name)
        # Surface bad bounds at load time rather than at the first search
        resolve_scope(
            model.schema,
            scope,
            default_scope=model.default_scope,
            int_scope=model.int_scope,
        )
        model.commands[name] = Command(name=name, mode=mode, target=target, scope=dict(scope))


def parse_model(parsed: Any, *, source: Optional[str] = None) -> Model:
    """Build a `Model` from an already-parsed YAML document."""
    if not isinstance(parsed, dict) or "sigs" not in parsed:
        raise ModelFileError("Model file must contain a top-level 'sigs' list.", where=source)
    for key in parsed:
        if key not in _TOP_LEVEL_KEYS:
            warnings.warn(
                f"Unknown top-level key '{key}', ignoring.",
                ModelWarning,
                stacklevel=3,
            )

    schema = Schema()
    pending = _register_sigs(schema, _list(parsed, "sigs"))
    _register_fields(schema, pending)

    constraints = ConstraintSet(schema)
    _register_constraints(constraints, parsed)

    name = parsed.get("name")
    if not name:
        name = os.path.splitext(os.path.basename(source))[0] if source else "model"
    model = Model(
        name=str(name),
        schema=schema,
        constraints=constraints,
        default_scope=_int(parsed, "default_scope", DEFAULT_SCOPE),
        int_scope=_int(parsed, "int_scope", DEFAULT_INT_SCOPE),
        description=" ".join(str(parsed.get("description") or "").split()),
        source=source,
    )
    resolve_scope(schema, {}, default_scope=model.default_scope, int_scope=model.int_scope)
    _parse_commands(model, _list(parsed, "commands"))
    return model


def bundled_models() -> List[str]:
    """Names of the models shipped with the package."""
    return sorted(
        entry.name[: -len(".yaml")]
        for entry in files(BUNDLED_PACKAGE).iterdir()
        if entry.name.endswith(".yaml")
    )


def load_model(path_or_name: str) -> Model:
    """Load a model from a YAML file, or a bundled model by name (e.g. "rar")."""
    if os.path.exists(path_or_name):
        try:
            with open(path_or_name, "r", encoding="utf-8") as stream:
                text = stream.read()
        except (OSError, UnicodeDecodeError) as e:
            raise ModelFileError(f"cannot read model file: {e}", where=path_or_name) from e
        source = path_or_name
    elif path_or_name in bundled_models():
        resource = files(BUNDLED_PACKAGE).joinpath(f"{path_or_name}.yaml")
        text = resource.read_text(encoding="utf-8")
        source = path_or_name
    else:
        raise ModelFileError(
            f"no model file or bundled model named '{path_or_name}'. "
            f"Bundled: {', '.join(bundled_models())}",
            where=path_or_name,
        )
    try:
        parsed = safe_load(text)
    except YAMLError as e:
        raise ModelFileError(f"invalid YAML: {e}", where=source) from e
    return parse_model(parsed, source=source)
