"""Base parser: shared interface, raw row types, and cell coercion."""

from __future__ import annotations

import datetime as dt
from abc import ABC, abstractmethod
from decimal import Decimal
from pathlib import Path
from typing import Union

# A raw cell is validated once at parse time; downstream stages only ever
# see these scalar types.
CellValue = Union[str, int, float, Decimal, None]
RawRow = dict[str, CellValue]


class FileParseError(Exception):
    """Raised when an uploaded file cannot be read as a table with a header row."""


def coerce_cell(value: object) -> CellValue:
    """Coerce a parser-produced cell into a CellValue.

    - None and blank strings → None
    - strings are stripped
    - bool → "true"/"false" (bool is an int subclass, handled first)
    - int/float/Decimal pass through
    - date/datetime → ISO date string (YYYY-MM-DD)
    - anything else → str(value)
    """
    if value is None:
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float, Decimal)):
        return value
    if isinstance(value, (dt.datetime, dt.date)):
        return value.strftime("%Y-%m-%d")
    text = str(value).strip()
    return text or None


def coerce_row(headers: list[str], values: list[object]) -> RawRow | None:
    """Zip headers with values into a RawRow. Returns None for all-blank rows."""
    row: RawRow = {}
    for i, header in enumerate(headers):
        if not header:
            continue
        row[header] = coerce_cell(values[i]) if i < len(values) else None
    if all(v is None for v in row.values()):
        return None
    return row


def clean_headers(raw_headers: list[object]) -> list[str]:
    """Strip header cells; blank headers become empty strings and are ignored."""
    headers: list[str] = []
    for h in raw_headers:
        text = "" if h is None else str(h).strip().lstrip("﻿")
        headers.append(text)
    return headers


class BaseParser(ABC):
    """Abstract base for statement file parsers.

    Attributes:
        skipped_count: Number of blank rows skipped during parsing. Check
            this after parse() to see how much of the file was ignored.
    """

    extensions: frozenset[str] = frozenset()

    def __init__(self):
        self.skipped_count: int = 0

    @abstractmethod
    def parse(self, file_path: Path) -> list[RawRow]:
        """Parse a statement file into RawRows keyed by header name.

        Raises:
            FileParseError: If the file is unreadable, empty, or has no header row.
        """

    def detect(self, file_path: Path) -> bool:
        """Return True if this parser can handle the given file."""
        return Path(file_path).suffix.lower() in self.extensions
