import json

import pytest
from openpyxl import load_workbook

from rarcheck.io.excel import _sheet_title, export_witness
from rarcheck.report import HOLDS_MESSAGE, format_text, render, summary_frame, to_frames
from rarcheck.search.engine import SearchEngine


@pytest.fixture
def sat_record(toy_schema, toy_constraints):
    result = SearchEngine(toy_schema, toy_constraints).find(
        "Cycle", {"Node": 2, "Special": 0, "Label": 1}
    )
    return render(result)


@pytest.fixture
def counterexample_record(toy_schema, toy_constraints):
    result = SearchEngine(toy_schema, toy_constraints).check("AllLinked", {"Node": 2})
    return render(result)


@pytest.fixture
def holds_record(toy_schema, toy_constraints):
    result = SearchEngine(toy_schema, toy_constraints).check("NoSelfLoop", {"Node": 2})
    return render(result)


class TestRender:
    def test_sat_record(self, sat_record):
        assert sat_record["outcome"] == "SAT"
        assert sat_record["mode"] == "find"
        assert sat_record["target"] == "Cycle"
        assert sat_record["scope"]["Node"] == 2
        assert sat_record["scope"]["Int"] == 4
        witness = sat_record["witness"]
        assert witness["atoms"]["Node"] == ["Node$0", "Node$1"]
        assert witness["atoms"]["Color"] == ["Red$0", "Green$0"]
        assert witness["relations"]["next"] == [
            ["Node$0", "Node$1"],
            ["Node$1", "Node$0"],
        ]
        json.dumps(sat_record)

    def test_holds_record(self, holds_record):
        assert holds_record["outcome"] == "HOLDS"
        assert holds_record["witness"] is None
        assert holds_record["message"].startswith(f"NoSelfLoop {HOLDS_MESSAGE} (")
        assert "Node=2" in holds_record["message"]

    def test_counterexample_names_the_failing_part(self, counterexample_record):
        assert counterexample_record["outcome"] == "COUNTEREXAMPLE"
        violation = counterexample_record["violation"]
        assert violation["formula"] == "some n.next"
        assert list(violation["bindings"]) == ["n"]
        culprit = violation["bindings"]["n"]
        sources = [s for s, _ in counterexample_record["witness"]["relations"]["next"]]
        assert culprit in counterexample_record["witness"]["atoms"]["Node"]
        assert culprit not in sources
        assert f"  violated: some n.next [n={culprit}]" in format_text(counterexample_record)

    def test_only_counterexamples_carry_a_violation(self, sat_record, holds_record):
        assert "violation" not in sat_record
        assert "violation" not in holds_record

    def test_text(self, sat_record, holds_record):
        text = format_text(sat_record)
        assert text.splitlines()[0] == "find Cycle: SAT"
        assert "  next: Node$0->Node$1, Node$1->Node$0" in text
        assert "  favorites:" not in text
        assert "  favorites: " in format_text(sat_record, show_empty=True)
        assert "atoms:" not in format_text(holds_record)


class TestFrames:
    def test_frames_per_signature_and_field(self, sat_record):
        frames = to_frames(sat_record)
        assert list(frames["Node"].columns) == ["atom"]
        assert list(frames["next"].columns) == ["source", "target"]
        assert len(frames["next"]) == 2
        assert frames["favorites"].empty

    def test_no_witness_no_frames(self, holds_record):
        assert to_frames(holds_record) == {}

    def test_summary(self, holds_record):
        df = summary_frame(holds_record)
        assert df.loc[0, "outcome"] == "HOLDS"
        assert df.loc[0, "target"] == "NoSelfLoop"


class TestExcel:
    def test_export(self, sat_record, tmp_path):
        path = tmp_path / "witness.xlsx"
        assert export_witness(sat_record, str(path)) == str(path)
        wb = load_workbook(path)
        assert wb.sheetnames[0] == "summary"
        assert "next" in wb.sheetnames
        assert "favorites" not in wb.sheetnames
        rows = list(wb["next"].iter_rows(values_only=True))
        assert rows[0] == ("source", "target")
        assert len(rows) == 3
        summary = {row[0]: row[1] for row in wb["summary"].iter_rows(values_only=True)}
        assert summary["outcome"] == "SAT"

    def test_sheet_titles_are_unique_and_short(self):
        used = {"summary"}
        long_name = "x" * 40
        first = _sheet_title(long_name, used)
        second = _sheet_title(long_name, used)
        assert len(first) == len(second) == 31
        assert first != second
        assert _sheet_title("Summary", used) == "Summary~1"
