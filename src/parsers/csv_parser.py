"""CSV statement parser.

Any issuer's CSV export with a header row. Column roles are not assumed
here; the column detector decides which header is the date, merchant and
amount. Blank lines and all-empty rows are skipped.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path

from .base import BaseParser, FileParseError, RawRow, clean_headers, coerce_row

logger = logging.getLogger(__name__)


class StatementCsvParser(BaseParser):
    """Parse CSV statement exports into RawRows."""

    extensions = frozenset({".csv"})

    def parse(self, file_path: Path) -> list[RawRow]:
        rows: list[RawRow] = []
        self.skipped_count = 0  # Reset for each parse

        try:
            with open(file_path, "r", newline="", encoding="utf-8-sig", errors="replace") as f:
                reader = csv.reader(f)
                header_line = next(reader, None)
                if not header_line or not any(h.strip() for h in header_line):
                    raise FileParseError(f"File is empty: {Path(file_path).name}")
                headers = clean_headers(header_line)

                for values in reader:
                    if not values:
                        self.skipped_count += 1
                        continue
                    row = coerce_row(headers, values)
                    if row is None:
                        self.skipped_count += 1
                        continue
                    rows.append(row)
        except OSError as e:
            raise FileParseError(f"Could not read {Path(file_path).name}: {e}") from e
        except csv.Error as e:
            raise FileParseError(f"CSV parsing failed for {Path(file_path).name}: {e}") from e

        if self.skipped_count:
            logger.debug("Skipped %d blank row(s) in %s", self.skipped_count, Path(file_path).name)
        return rows
