"""WorkbookContext: loads a workbook, hands out sheet stores, saves atomically."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from xlplan.adapters.openpyxl_store import OpenpyxlStore
from xlplan.contracts.common import WorkbookCorruptError
from xlplan.io.fileops import atomic_write, fingerprint


class WorkbookContext:
    """Wraps an openpyxl workbook with its fingerprint and sheet lookup."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).resolve()
        if not self.path.exists():
            raise FileNotFoundError(f"Workbook not found: {self.path}")
        self.fp = fingerprint(self.path)
        try:
            self.wb: Workbook = openpyxl.load_workbook(str(self.path))
        except Exception as e:
            raise WorkbookCorruptError(f"Cannot open workbook {self.path}: {e}") from e

    def sheet_names(self) -> list[str]:
        return list(self.wb.sheetnames)

    def get_sheet(self, name: str | None = None) -> Worksheet:
        """Return the named sheet, or the active sheet when *name* is None."""
        if name is None:
            return self.wb.active
        if name not in self.wb.sheetnames:
            raise KeyError(f"Sheet not found: {name}")
        return self.wb[name]

    def store(self, name: str | None = None) -> OpenpyxlStore:
        return OpenpyxlStore(self.get_sheet(name))

    def save(self, path: str | Path | None = None) -> bytes:
        """Save workbook to bytes. Optionally save to a path."""
        buf = BytesIO()
        self.wb.save(buf)
        data = buf.getvalue()
        if path:
            atomic_write(path, data)
        return data

    def close(self) -> None:
        self.wb.close()
