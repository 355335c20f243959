"""Module to write search reports to Excel workbooks"""

from __future__ import annotations

from typing import Any, Dict

from openpyxl import Workbook

from rarcheck.report import to_frames

# Excel limits sheet titles to 31 characters
MAX_TITLE = 31


def _sheet_title(name: str, used: set[str]) -> str:
    title = name[:MAX_TITLE]
    n = 1
    while title.lower() in used:
        suffix = f"~{n}"
        title = name[: MAX_TITLE - len(suffix)] + suffix
        n += 1
    used.add(title.lower())
    return title


def export_witness(record: Dict[str, Any], file_path: str) -> str:
    """Writes a search report to a new workbook

    args:
        record: A record produced by `report.render`
        file_path: Where to save the workbook (overwritten if it exists)

    returns:
        The path of the saved workbook
    """

    wb = Workbook()
    summary = wb.active
    summary.title = "summary"
    used = {"summary"}

    summary.append(["mode", record["mode"]])
    summary.append(["target", record["target"] or ""])
    summary.append(["outcome", record["outcome"]])
    summary.append(["message", record["message"]])
    violation = record.get("violation")
    if violation is not None:
        summary.append(["violated", violation["formula"]])
    for key, value in record["stats"].items():
        if not isinstance(value, dict):
            summary.append([key, value])
    summary.append([])
    summary.append(["bound", "atoms"])
    for sig, n in sorted(record["scope"].items()):
        summary.append([sig, n])

    # Only non-empty signatures and fields get a sheet
    for name, df in to_frames(record).items():
        if df.empty:
            continue
        sheet = wb.create_sheet(_sheet_title(name, used))
        sheet.append(list(df.columns))
        for row in df.itertuples(index=False):
            sheet.append(list(row))

    wb.save(file_path)
    return file_path
