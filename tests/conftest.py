"""Shared test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from openpyxl import Workbook

from xlplan.adapters.openpyxl_store import OpenpyxlStore
from xlplan.engine.schema import extract_schema
from xlplan.skills.registry import SkillRegistry

SALES_HEADERS = ["Region", "Product", "Sales", "Cost", "Status"]
SALES_ROWS = [
    ["East", "Widget", 1200, 700, "Active"],
    ["West", "Gadget", 800, 500, "Cancelled"],
    ["East", "Gadget", 1500, 900, "Active"],
    ["North", "Widget", 600, 400, "Cancelled"],
    ["South", "Widget", 2000, 1100, "Active"],
    ["West", "Widget", 950, 550, "Active"],
]


def _sales_sheet(wb: Workbook) -> None:
    """Title on row 1, headers on row 2, six data rows below."""
    ws = wb.active
    ws.title = "Sales"
    ws["A1"] = "Quarterly Sales Report"
    ws.append(SALES_HEADERS)
    for row in SALES_ROWS:
        ws.append(row)


@pytest.fixture()
def registry() -> SkillRegistry:
    return SkillRegistry.load()


@pytest.fixture()
def make_store():
    """Build an in-memory store from a header row and data rows."""

    def _make(headers: list, rows: list[list], *, title: str | None = None) -> OpenpyxlStore:
        wb = Workbook()
        ws = wb.active
        ws.title = "Data"
        if title is not None:
            ws["A1"] = title
            ws.append(headers)
        else:
            for idx, value in enumerate(headers, start=1):
                ws.cell(row=1, column=idx, value=value)
        for row in rows:
            ws.append(row)
        return OpenpyxlStore(ws)

    return _make


@pytest.fixture()
def sales_store() -> OpenpyxlStore:
    wb = Workbook()
    _sales_sheet(wb)
    return OpenpyxlStore(wb.active)


@pytest.fixture()
def sales_schema(sales_store: OpenpyxlStore):
    return extract_schema(sales_store, "Sales")


@pytest.fixture()
def sales_workbook(tmp_path: Path) -> Path:
    """Sales workbook on disk plus a second sheet."""
    wb = Workbook()
    _sales_sheet(wb)
    notes = wb.create_sheet("Notes")
    notes["A1"] = "Owner"
    notes["B1"] = "Finance"
    path = tmp_path / "sales.xlsx"
    wb.save(str(path))
    return path
