"""openpyxl-backed tabular store: cell/range ops, structural edits, charts."""

from __future__ import annotations

import re
from typing import Any

from openpyxl.chart import AreaChart, BarChart, LineChart, PieChart, Reference, ScatterChart, Series
from openpyxl.utils import column_index_from_string, get_column_letter
from openpyxl.worksheet.worksheet import Worksheet

from xlplan.adapters.recalc import FormulaEvaluator


def parse_ref(ref: str) -> tuple[int, int, int, int]:
    """Parse A1:B2 style ref into (min_row, min_col, max_row, max_col)."""
    parts = ref.replace("$", "").upper().split(":")
    m1 = re.match(r"([A-Z]+)(\d+)$", parts[0])
    if not m1:
        raise ValueError(f"Invalid ref: {ref}")
    min_col = column_index_from_string(m1.group(1))
    min_row = int(m1.group(2))
    if len(parts) == 2:
        m2 = re.match(r"([A-Z]+)(\d+)$", parts[1])
        if not m2:
            raise ValueError(f"Invalid ref: {ref}")
        max_col = column_index_from_string(m2.group(1))
        max_row = int(m2.group(2))
    else:
        max_col = min_col
        max_row = min_row
    return min_row, min_col, max_row, max_col


def _bar(kind: str) -> BarChart:
    chart = BarChart()
    chart.type = kind
    return chart


_CHART_FACTORIES = {
    "column": lambda: _bar("col"),
    "bar": lambda: _bar("bar"),
    "line": LineChart,
    "pie": PieChart,
    "scatter": ScatterChart,
    "area": AreaChart,
}


class OpenpyxlStore:
    """Adapts one openpyxl worksheet to the executor's store surface."""

    def __init__(self, ws: Worksheet) -> None:
        self.ws = ws
        self._evaluator: FormulaEvaluator | None = None

    # -- extent ---------------------------------------------------------------
    @property
    def max_row(self) -> int:
        # openpyxl's max_row counts styled and cleared cells; scan back to real data
        for row in range(self.ws.max_row, 0, -1):
            if any(c.value is not None for c in self.ws[row]):
                return row
        return 0

    @property
    def max_column(self) -> int:
        last = 0
        for row in self.ws.iter_rows(min_row=1, max_row=self.ws.max_row):
            for cell in reversed(row):
                if cell.value is not None:
                    last = max(last, cell.column)
                    break
        return last

    # -- cells ------------------------------------------------------------------
    def _touch(self) -> None:
        self._evaluator = None

    def get_value(self, row: int, col: int) -> Any:
        return self.ws.cell(row=row, column=col).value

    def set_value(self, row: int, col: int, value: Any) -> None:
        self.ws.cell(row=row, column=col).value = value
        self._touch()

    def read_range(self, min_row: int, min_col: int, max_row: int, max_col: int) -> list[list[Any]]:
        if max_row < min_row or max_col < min_col:
            return []
        return [
            list(values)
            for values in self.ws.iter_rows(
                min_row=min_row, max_row=max_row, min_col=min_col, max_col=max_col, values_only=True
            )
        ]

    def write_range(self, min_row: int, min_col: int, values: list[list[Any]]) -> None:
        for r_offset, row_values in enumerate(values):
            for c_offset, value in enumerate(row_values):
                self.ws.cell(row=min_row + r_offset, column=min_col + c_offset).value = value
        self._touch()

    def set_formula(self, row: int, col: int, formula: str) -> None:
        if not formula.startswith("="):
            formula = f"={formula}"
        self.ws.cell(row=row, column=col).value = formula
        self._touch()

    def set_number_format(self, row: int, col: int, pattern: str) -> None:
        self.ws.cell(row=row, column=col).number_format = pattern

    # -- structure -------------------------------------------------------------
    def insert_column(self, idx: int) -> None:
        self.ws.insert_cols(idx)
        self._touch()

    def delete_column(self, idx: int) -> None:
        self.ws.delete_cols(idx)
        self._touch()

    def insert_row(self, idx: int) -> None:
        self.ws.insert_rows(idx)
        self._touch()

    def delete_row(self, idx: int) -> None:
        self.ws.delete_rows(idx)
        self._touch()

    # -- computation -------------------------------------------------------------
    def recalculate(self) -> None:
        self._evaluator = FormulaEvaluator(self)

    def computed_value(self, row: int, col: int) -> Any:
        if self._evaluator is None:
            self._evaluator = FormulaEvaluator(self)
        return self._evaluator.cell_value(row, col)

    # -- charts ------------------------------------------------------------------
    def add_chart(
        self,
        chart_type: str,
        *,
        category_col: int | None,
        series_cols: list[int],
        header_row: int,
        last_row: int,
        title: str = "",
        styling: dict[str, Any] | None = None,
    ) -> str:
        """Build a chart from column ranges and anchor it right of the data."""
        factory = _CHART_FACTORIES.get(chart_type)
        if factory is None:
            raise ValueError(f"Unsupported chart type: {chart_type}")
        if not series_cols:
            raise ValueError("Chart needs at least one data column")
        if last_row <= header_row:
            raise ValueError("Chart needs at least one data row")

        chart = factory()
        if title:
            chart.title = title
        styling = styling or {}

        categories = None
        if category_col is not None:
            categories = Reference(self.ws, min_col=category_col, min_row=header_row + 1, max_row=last_row)

        if chart_type == "scatter":
            for col in series_cols:
                values = Reference(self.ws, min_col=col, min_row=header_row, max_row=last_row)
                series = Series(values, categories, title_from_data=True)
                chart.series.append(series)
        else:
            for col in series_cols:
                data = Reference(self.ws, min_col=col, min_row=header_row, max_row=last_row)
                chart.add_data(data, titles_from_data=True)
            if categories is not None:
                chart.set_categories(categories)

        if "style" in styling:
            chart.style = int(styling["style"])
        if "width" in styling:
            chart.width = float(styling["width"])
        if "height" in styling:
            chart.height = float(styling["height"])
        if chart.legend is not None and styling.get("legend_position"):
            chart.legend.position = styling["legend_position"]

        anchor = f"{get_column_letter(self.max_column + 2)}{header_row}"
        self.ws.add_chart(chart, anchor)
        return anchor
