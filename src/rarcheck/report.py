"""Witness reporting.

Turns search results into plain records (dicts of lists and strings, ready for
JSON), human-readable text, and pandas DataFrames. Nothing here mutates the
result or the instance it renders.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import pandas as pd

from rarcheck.model.ast import to_text
from rarcheck.search.engine import SearchResult
from rarcheck.state import Instance, Outcome

__all__ = [
    "HOLDS_MESSAGE",
    "render_instance",
    "render",
    "format_text",
    "to_frames",
    "summary_frame",
]

HOLDS_MESSAGE = "holds for all instances up to this bound"

_MESSAGES = {
    Outcome.SAT: "instance found",
    Outcome.UNSAT: "no instance exists up to this bound",
    Outcome.COUNTEREXAMPLE: "counterexample found",
    Outcome.HOLDS: HOLDS_MESSAGE,
    Outcome.TIMEOUT: "search budget exhausted before a conclusion was reached",
}


def render_instance(instance: Instance) -> Dict[str, Any]:
    """Atoms per signature (subtype atoms included) and sorted tuples per field."""
    schema = instance.schema
    atoms = {
        sig: [atom.name for atom in instance.population(sig) or ()]
        for sig in schema.sig_names
    }
    relations = {
        name: [[s.name, t.name] for s, t in sorted(instance.relation(name) or ())]
        for name in schema.field_names
    }
    return {"atoms": atoms, "relations": relations}


def _bound_text(scope: Dict[str, int]) -> str:
    return ", ".join(f"{sig}={n}" for sig, n in sorted(scope.items()))


def render(result: SearchResult) -> Dict[str, Any]:
    scope = result.scope.as_dict()
    stats = result.stats
    record: Dict[str, Any] = {
        "outcome": result.outcome.value,
        "mode": result.mode.value,
        "target": result.target,
        "scope": scope,
        "message": _MESSAGES[result.outcome],
        "stats": {
            "nodes": stats.nodes,
            "pruned": stats.pruned,
            "constraints_checked": stats.constraints_checked,
            "elapsed_seconds": round(stats.elapsed_seconds, 6),
            "max_depth": stats.max_depth,
            "decisions": stats.decisions,
            "workers": stats.workers,
            "prunes_by_constraint": dict(sorted(stats.prunes_by_constraint.items())),
        },
        "witness": None,
    }
    if result.outcome is Outcome.HOLDS:
        record["message"] = f"{result.target} {HOLDS_MESSAGE} ({_bound_text(scope)})"
    if result.instance is not None:
        record["witness"] = render_instance(result.instance)
    if result.violation is not None and result.violation.failed is not None:
        record["violation"] = {
            "formula": to_text(result.violation.failed),
            "bindings": dict(result.violation.bindings),
        }
    return record


def format_text(record: Dict[str, Any], *, show_empty: bool = False) -> str:
    """Human-readable report for the command line."""
    target = record["target"] or "facts"
    lines = [f"{record['mode']} {target}: {record['outcome']}", f"  {record['message']}"]
    stats = record["stats"]
    lines.append(f"  scope: {_bound_text(record['scope'])}")
    lines.append(
        "  nodes={nodes} pruned={pruned} checks={constraints_checked} "
        "depth={max_depth}/{decisions} workers={workers} time={elapsed_seconds:.3f}s".format(
            **stats
        )
    )
    violation = record.get("violation")
    if violation is not None:
        bound = ", ".join(f"{var}={atom}" for var, atom in violation["bindings"].items())
        lines.append(f"  violated: {violation['formula']}" + (f" [{bound}]" if bound else ""))
    witness: Optional[Dict[str, Any]] = record.get("witness")
    if witness is not None:
        lines.append("atoms:")
        for sig, names in witness["atoms"].items():
            if names or show_empty:
                lines.append(f"  {sig}: {' '.join(names)}")
        lines.append("relations:")
        for name, pairs in witness["relations"].items():
            if pairs or show_empty:
                body = ", ".join(f"{s}->{t}" for s, t in pairs)
                lines.append(f"  {name}: {body}")
    return "\n".join(lines)


def to_frames(record: Dict[str, Any]) -> Dict[str, pd.DataFrame]:
    """One DataFrame per signature (column `atom`) and per field (`source`, `target`).

    Returns an empty mapping when the record carries no witness.
    """
    witness = record.get("witness")
    if witness is None:
        return {}
    frames: Dict[str, pd.DataFrame] = {}
    for sig, names in witness["atoms"].items():
        frames[sig] = pd.DataFrame({"atom": list(names)}, dtype=object)
    for name, pairs in witness["relations"].items():
        frames[name] = pd.DataFrame(
            [list(p) for p in pairs], columns=["source", "target"], dtype=object
        )
    return frames


def summary_frame(record: Dict[str, Any]) -> pd.DataFrame:
    """Single-row overview of a record (outcome, target and search statistics)."""
    stats = record["stats"]
    row = {
        "mode": record["mode"],
        "target": record["target"] or "",
        "outcome": record["outcome"],
        "nodes": stats["nodes"],
        "pruned": stats["pruned"],
        "elapsed_seconds": stats["elapsed_seconds"],
    }
    return pd.DataFrame([row])
