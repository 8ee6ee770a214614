"""Excel statement parser (.xlsx / .xlsm) via openpyxl.

Every worksheet is read; the first sheet that has a header row and at
least one data row is returned. Cells holding dates are converted to ISO
strings by coerce_cell so downstream stages see the same types as CSV.
"""

from __future__ import annotations

import logging
import zipfile
from pathlib import Path

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from .base import BaseParser, FileParseError, RawRow, clean_headers, coerce_row

logger = logging.getLogger(__name__)


class StatementExcelParser(BaseParser):
    """Parse Excel workbook exports into RawRows."""

    extensions = frozenset({".xlsx", ".xlsm"})

    def parse(self, file_path: Path) -> list[RawRow]:
        self.skipped_count = 0
        sheets = self.parse_sheets(file_path)
        if not sheets:
            raise FileParseError(f"No data found in Excel file: {Path(file_path).name}")
        return sheets[0]

    def parse_sheets(self, file_path: Path) -> list[list[RawRow]]:
        """Return the rows of every non-empty worksheet, in workbook order."""
        try:
            wb = load_workbook(filename=file_path, read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, OSError, KeyError) as e:
            raise FileParseError(
                f"Failed to parse Excel file {Path(file_path).name}: {e}"
            ) from e

        sheets: list[list[RawRow]] = []
        try:
            for ws in wb.worksheets:
                rows = self._read_sheet(ws.iter_rows(values_only=True))
                if rows:
                    sheets.append(rows)
                else:
                    logger.debug("Worksheet '%s' has no data rows", ws.title)
        finally:
            wb.close()
        return sheets

    def _read_sheet(self, values_iter) -> list[RawRow]:
        header_values = next(values_iter, None)
        if header_values is None:
            return []
        headers = clean_headers(list(header_values))
        if not any(headers):
            return []

        rows: list[RawRow] = []
        for values in values_iter:
            row = coerce_row(headers, list(values))
            if row is None:
                self.skipped_count += 1
                continue
            rows.append(row)
        return rows
