"""
rarcheck command line.

Commands:
    rarcheck find  MODEL [PRED]      search for an instance (of PRED, or of the facts)
    rarcheck check MODEL ASSERT      search for a counterexample to ASSERT
    rarcheck run   MODEL COMMAND     run a command stored in the model file
    rarcheck core  MODEL TARGET      name the constraints that make TARGET infeasible
    rarcheck list  MODEL             show what a model declares

MODEL is a path to a YAML model file or the name of a bundled model ("rar").

Exit codes:
    0  instance found (find) / assertion holds up to the bound (check)
    1  no instance (find) / counterexample found (check)
    2  load-time error in the model, the target or the bounds
    3  search budget exhausted (timeout)
    4  engine and CP-SAT disagree (--cross-check)
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import textwrap
from typing import Dict, Optional, Sequence

from rarcheck import pipeline
from rarcheck.errors import DefinitionError
from rarcheck.io.excel import export_witness
from rarcheck.io.model import Model
from rarcheck.model.ast import to_text
from rarcheck.model.constraints import ConstraintKind
from rarcheck.report import format_text, render, summary_frame, to_frames
from rarcheck.search.engine import SearchResult
from rarcheck.state import INT, Mode, Outcome

_log = logging.getLogger("rarcheck")

EXIT_OK = 0
EXIT_NEGATIVE = 1
EXIT_DEFINITION = 2
EXIT_TIMEOUT = 3
EXIT_DISAGREE = 4

_OUTCOME_EXIT = {
    Outcome.SAT: EXIT_OK,
    Outcome.HOLDS: EXIT_OK,
    Outcome.UNSAT: EXIT_NEGATIVE,
    Outcome.COUNTEREXAMPLE: EXIT_NEGATIVE,
    Outcome.TIMEOUT: EXIT_TIMEOUT,
}

_handler: Optional[logging.Handler] = None


def _configure_logging(verbosity: int) -> None:
    """Set up the ``rarcheck`` logger: 0 -> WARNING, 1 -> INFO, 2+ -> DEBUG."""
    global _handler
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG

    root = logging.getLogger("rarcheck")
    if _handler is not None:
        root.removeHandler(_handler)
    _handler = logging.StreamHandler(sys.stderr)
    _handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s [%(levelname)-5.5s] %(name)s: %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    root.setLevel(level)
    root.addHandler(_handler)


def _scope_entry(text: str) -> tuple[str, int]:
    name, sep, value = text.partition("=")
    if not sep or not name.strip():
        raise argparse.ArgumentTypeError(f"expected Sig=N, got '{text}'")
    try:
        return name.strip(), int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"bound for '{name}' is not an integer") from None


def _count(minimum: int):
    def parse(text: str) -> int:
        try:
            value = int(text)
        except ValueError:
            raise argparse.ArgumentTypeError(f"expected an integer, got '{text}'") from None
        if value < minimum:
            raise argparse.ArgumentTypeError(f"must be at least {minimum}, got {value}")
        return value

    return parse


def _seconds(text: str) -> float:
    try:
        value = float(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number of seconds, got '{text}'") from None
    if not value > 0:
        raise argparse.ArgumentTypeError(f"must be positive, got {text}")
    return value


def _bounds(args: argparse.Namespace) -> Dict[str, int]:
    return dict(args.scope or [])


def _load(args: argparse.Namespace) -> Model:
    model = pipeline.load_model(args.model)
    if args.default_scope is not None:
        model.default_scope = args.default_scope
    return model


# ---------- output ----------


def _emit(result: SearchResult, args: argparse.Namespace) -> None:
    record = render(result)
    if args.format == "json":
        print(json.dumps(record, indent=2))
    elif args.format == "table":
        print(summary_frame(record).to_string(index=False))
        for name, df in to_frames(record).items():
            if not df.empty:
                print()
                print(f"[{name}]")
                print(df.to_string(index=False))
    else:
        print(format_text(record))
    if args.xlsx:
        export_witness(record, args.xlsx)
        _log.info("report written to %s", args.xlsx)


def _finish(
    model: Model,
    mode: Mode,
    target: Optional[str],
    bounds: Dict[str, int],
    result: SearchResult,
    args: argparse.Namespace,
) -> int:
    _emit(result, args)
    if args.cross_check:
        verdict = pipeline.cross_check(
            model, mode, target, bounds, time_limit=args.timeout, result=result
        )
        label = {True: "agree", False: "DISAGREE", None: "inconclusive"}[verdict.agree]
        print(
            f"cross-check: engine {verdict.engine_outcome.value}, "
            f"CP-SAT {verdict.solver_status} -> {label}"
        )
        if verdict.agree is False:
            return EXIT_DISAGREE
    return _OUTCOME_EXIT[result.outcome]


# ---------- commands ----------


def _search_options(args: argparse.Namespace) -> dict:
    return {
        "max_steps": args.max_steps,
        "time_limit": args.timeout,
        "workers": args.workers,
    }


def cmd_find(args: argparse.Namespace) -> int:
    model = _load(args)
    bounds = _bounds(args)
    result = pipeline.find(model, args.predicate, bounds, **_search_options(args))
    return _finish(model, Mode.FIND, args.predicate, bounds, result, args)


def cmd_check(args: argparse.Namespace) -> int:
    model = _load(args)
    bounds = _bounds(args)
    result = pipeline.check(model, args.assertion, bounds, **_search_options(args))
    return _finish(model, Mode.CHECK, args.assertion, bounds, result, args)


def cmd_run(args: argparse.Namespace) -> int:
    model = _load(args)
    command = model.command(args.name)
    bounds = dict(command.scope)
    bounds.update(_bounds(args))
    result = pipeline.run_command(model, args.name, bounds=bounds, **_search_options(args))
    return _finish(model, command.mode, command.target, bounds, result, args)


def cmd_core(args: argparse.Namespace) -> int:
    model = _load(args)
    mode = Mode.FIND
    if args.target in model.constraints:
        if model.constraints.get(args.target).kind is ConstraintKind.ASSERTION:
            mode = Mode.CHECK
    core = pipeline.unsat_core(
        model, args.target, mode=mode, bounds=_bounds(args), time_limit=args.timeout
    )
    print(f"CP-SAT: {core.solver_status} ({core.wall_time:.3f}s)")
    if core.unsat_core is not None:
        print("unsat core:")
        for name in core.unsat_core:
            print(f"  {name}")
        return EXIT_OK
    if core.solver_status in ("OPTIMAL", "FEASIBLE"):
        print("satisfiable: no core")
        return EXIT_NEGATIVE
    return EXIT_TIMEOUT


def cmd_list(args: argparse.Namespace) -> int:
    model = _load(args)
    schema = model.schema
    print(f"model {model.name}: {model.description}".rstrip(": "))
    print(f"  default scope {model.default_scope}, int scope {model.int_scope}")
    print("signatures:")
    for sig in schema.sigs:
        if sig.name == INT:
            continue
        flags = [f for f, on in (("abstract", sig.abstract), ("one", sig.one)) if on]
        parent = f" extends {sig.parent}" if sig.parent else ""
        prefix = " ".join(flags + [""])
        print(f"  {prefix}{sig.name}{parent}")
        for f in schema.fields:
            if f.source == sig.name:
                target = f.subset_of if f.subset_of else f.target
                print(f"      {f.name}: {f.multiplicity.value} {target}")
    for kind, title in (
        (ConstraintKind.FACT, "facts"),
        (ConstraintKind.PREDICATE, "preds"),
        (ConstraintKind.ASSERTION, "asserts"),
    ):
        print(f"{title}:")
        for name in model.constraints.names(kind):
            print(f"  {name}: {to_text(model.constraints.get(name).formula)}")
    print("commands:")
    for command in model.commands.values():
        scope = ", ".join(f"{k}={v}" for k, v in command.scope.items())
        print(f"  {command.name}: {command.mode.value} {command.target or ''} [{scope}]")
    return EXIT_OK


# ---------- parser ----------


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="rarcheck",
        description="Bounded model finder for relational models such as the RAR model.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=textwrap.dedent("""\
            examples:
              rarcheck find rar FullyEnabledPendingAction --scope Processor=1 --scope RAR=0
              rarcheck check rar NoRarTargetsInit --scope Processor=2 --scope RAR=2
              rarcheck run rar init-clears-rar --format json
              rarcheck core rar RarBitClearedButEnabled --scope Processor=1
        """),
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (-v info, -vv debug).",
    )
    subparsers = parser.add_subparsers(dest="command", title="commands", metavar="<command>")

    def _add_model_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("model", metavar="MODEL", help="Model file or bundled model name.")
        p.add_argument(
            "--default-scope",
            type=int,
            default=None,
            metavar="N",
            help="Bound for signatures without an explicit one (default: from the model).",
        )

    def _add_search_args(p: argparse.ArgumentParser, core: bool = False) -> None:
        p.add_argument(
            "--scope",
            action="append",
            type=_scope_entry,
            metavar="SIG=N",
            help="Bound a signature's population (repeatable).",
        )
        p.add_argument(
            "--timeout",
            type=_seconds,
            default=None,
            metavar="SECONDS",
            help="Wall-clock budget.",
        )
        if core:
            return
        g = p.add_argument_group("search")
        g.add_argument(
            "--max-steps",
            type=_count(0),
            default=None,
            metavar="N",
            help="Node budget; exhausting it reports a timeout.",
        )
        g.add_argument(
            "--workers",
            type=_count(1),
            default=1,
            metavar="N",
            help="Explore the first decision's options on N threads (default: 1).",
        )
        g = p.add_argument_group("output")
        g.add_argument(
            "-f", "--format",
            choices=["text", "json", "table"],
            default="text",
            help="Report format (default: text).",
        )
        g.add_argument(
            "--xlsx",
            default=None,
            metavar="FILE",
            help="Also write the report to an Excel workbook.",
        )
        g.add_argument(
            "--cross-check",
            action="store_true",
            help="Solve the same problem with CP-SAT and compare verdicts.",
        )

    p_find = subparsers.add_parser("find", help="Search for an instance.")
    _add_model_args(p_find)
    p_find.add_argument("predicate", metavar="PRED", nargs="?", default=None)
    _add_search_args(p_find)
    p_find.set_defaults(func=cmd_find)

    p_check = subparsers.add_parser("check", help="Search for a counterexample.")
    _add_model_args(p_check)
    p_check.add_argument("assertion", metavar="ASSERT")
    _add_search_args(p_check)
    p_check.set_defaults(func=cmd_check)

    p_run = subparsers.add_parser("run", help="Run a command stored in the model.")
    _add_model_args(p_run)
    p_run.add_argument("name", metavar="COMMAND")
    _add_search_args(p_run)
    p_run.set_defaults(func=cmd_run)

    p_core = subparsers.add_parser("core", help="Compute a minimal UNSAT core with CP-SAT.")
    _add_model_args(p_core)
    p_core.add_argument("target", metavar="TARGET")
    _add_search_args(p_core, core=True)
    p_core.set_defaults(func=cmd_core)

    p_list = subparsers.add_parser("list", help="Show a model's declarations.")
    _add_model_args(p_list)
    p_list.set_defaults(func=cmd_list)

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if not hasattr(args, "func"):
        parser.print_help(sys.stderr)
        return EXIT_DEFINITION

    try:
        return args.func(args)
    except DefinitionError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return EXIT_DEFINITION
    except KeyboardInterrupt:
        _log.info("Interrupted by user.")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
