"""The capability surface the executor needs from a tabular store."""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class TabularStore(Protocol):
    """Row/column addressed store. Rows and columns are 1-based."""

    @property
    def max_row(self) -> int: ...

    @property
    def max_column(self) -> int: ...

    def get_value(self, row: int, col: int) -> Any: ...

    def set_value(self, row: int, col: int, value: Any) -> None: ...

    def read_range(self, min_row: int, min_col: int, max_row: int, max_col: int) -> list[list[Any]]: ...

    def write_range(self, min_row: int, min_col: int, values: list[list[Any]]) -> None: ...

    def insert_column(self, idx: int) -> None: ...

    def delete_column(self, idx: int) -> None: ...

    def insert_row(self, idx: int) -> None: ...

    def delete_row(self, idx: int) -> None: ...

    def set_formula(self, row: int, col: int, formula: str) -> None: ...

    def set_number_format(self, row: int, col: int, pattern: str) -> None: ...

    def recalculate(self) -> None: ...

    def computed_value(self, row: int, col: int) -> Any: ...

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
    ) -> str: ...
