"""Column detection: which raw-row fields hold the date, merchant and amount.

Two passes per role:
  1. Header names: ordered regex patterns, first pattern with a matching
     (unclaimed) header wins.
  2. Content shape: sampled values that look like dates / numbers, and
     the longest-average-length text column for the merchant.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import Decimal

from .base import RawRow

SAMPLE_SIZE = 25

DATE_PATTERNS = [
    re.compile(r"^date$", re.I),
    re.compile(r"transaction.*date", re.I),
    re.compile(r"posted.*date", re.I),
    re.compile(r"trans.*date", re.I),
]

MERCHANT_PATTERNS = [
    re.compile(r"^merchant$", re.I),
    re.compile(r"description", re.I),
    re.compile(r"^vendor$", re.I),
    re.compile(r"payee", re.I),
    re.compile(r"^name$", re.I),
    re.compile(r"merchant.*name", re.I),
]

AMOUNT_PATTERNS = [
    re.compile(r"^amount$", re.I),
    re.compile(r"transaction.*amount", re.I),
    re.compile(r"^total$", re.I),
    re.compile(r"^debit$", re.I),
    re.compile(r"^credit$", re.I),
    re.compile(r"balance", re.I),
]

_DATE_SHAPE = re.compile(
    r"^(\d{4}[-/]\d{1,2}[-/]\d{1,2}|\d{1,2}[-/]\d{1,2}[-/](\d{4}|\d{2}))(\b|T|\s|$)"
)
_AMOUNT_SHAPE = re.compile(r"^[-+]?\$?-?\d+(\.\d+)?$")


@dataclass(frozen=True)
class DetectedColumns:
    date_column: str
    merchant_column: str
    amount_column: str


class MissingColumnsError(Exception):
    """Raised when one of the date/merchant/amount columns cannot be identified."""

    def __init__(self, role: str, message: str | None = None):
        self.role = role
        super().__init__(
            message
            or f"Could not detect {role} column. Please ensure the file has a {role} column."
        )


def detect_columns(rows: list[RawRow]) -> DetectedColumns:
    """Detect date, merchant, and amount columns from headers, then content.

    Raises:
        MissingColumnsError: naming the first role that could not be resolved.
    """
    if not rows:
        raise MissingColumnsError("date", "No rows found in file")

    headers = list(rows[0].keys())
    sample = rows[:SAMPLE_SIZE]
    claimed: set[str] = set()

    date_col = _match_header(headers, DATE_PATTERNS, claimed)
    if date_col:
        claimed.add(date_col)
    merchant_col = _match_header(headers, MERCHANT_PATTERNS, claimed)
    if merchant_col:
        claimed.add(merchant_col)
    amount_col = _match_header(headers, AMOUNT_PATTERNS, claimed)
    if amount_col:
        claimed.add(amount_col)

    # Content fallbacks: date and amount before merchant so the text
    # heuristic doesn't grab a date or number column.
    if date_col is None:
        date_col = _find_by_shape(headers, sample, claimed, looks_like_date)
        if date_col:
            claimed.add(date_col)
    if amount_col is None:
        amount_col = _find_by_shape(headers, sample, claimed, looks_like_amount)
        if amount_col:
            claimed.add(amount_col)
    if merchant_col is None:
        merchant_col = _longest_text_column(headers, sample, claimed)

    if date_col is None:
        raise MissingColumnsError("date")
    if merchant_col is None:
        raise MissingColumnsError("merchant")
    if amount_col is None:
        raise MissingColumnsError("amount")

    return DetectedColumns(
        date_column=date_col,
        merchant_column=merchant_col,
        amount_column=amount_col,
    )


def looks_like_date(value) -> bool:
    return isinstance(value, str) and bool(_DATE_SHAPE.match(value))


def looks_like_amount(value) -> bool:
    if isinstance(value, (int, float, Decimal)):
        return True
    if isinstance(value, str):
        return bool(_AMOUNT_SHAPE.match(value.replace(",", "").replace(" ", "")))
    return False


def _match_header(headers: list[str], patterns: list[re.Pattern], claimed: set[str]) -> str | None:
    for pattern in patterns:
        for header in headers:
            if header not in claimed and pattern.search(header):
                return header
    return None


def _find_by_shape(headers, sample, claimed, predicate) -> str | None:
    """First unclaimed column whose non-null sampled values all satisfy predicate."""
    for header in headers:
        if header in claimed:
            continue
        values = [row.get(header) for row in sample if row.get(header) is not None]
        if values and all(predicate(v) for v in values):
            return header
    return None


def _longest_text_column(headers, sample, claimed) -> str | None:
    best: str | None = None
    best_avg = 0.0
    for header in headers:
        if header in claimed:
            continue
        values = [row.get(header) for row in sample if row.get(header) is not None]
        texts = [v for v in values if isinstance(v, str) and not looks_like_amount(v)
                 and not looks_like_date(v)]
        # Mostly-numeric or mostly-date columns are not merchant candidates
        if not texts or len(texts) * 2 < len(values):
            continue
        avg = sum(len(t) for t in texts) / len(texts)
        if avg > best_avg:
            best, best_avg = header, avg
    return best
