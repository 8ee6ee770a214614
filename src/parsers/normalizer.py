"""Row normalization: raw row → canonical transaction or classified error.

Each row yields exactly one NormalizedTransaction or one NormalizationError.
Rejected rows are kept with their reason and the offending raw row so the
upload result can report them; nothing is silently dropped.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum

from dateutil import parser as date_parser

from .base import CellValue, RawRow
from .columns import DetectedColumns
from .convention import AmountSignConvention, parse_amount

logger = logging.getLogger(__name__)

# strptime accepts 1-2 digit month/day for %m/%d, so these cover the
# M/d, MM/d, M/dd permutations as well.
DATE_FORMATS = [
    "%Y-%m-%d",
    "%m/%d/%Y",
    "%d/%m/%Y",
    "%Y/%m/%d",
    "%m-%d-%Y",
    "%m/%d/%y",
]

PAYMENT_PATTERNS = [
    re.compile(r"credit.*card.*payment"),
    re.compile(r"statement.*payment"),
    re.compile(r"online.*payment"),
    re.compile(r"mobile payment"),
    re.compile(r"automatic payment"),
    re.compile(r"payment thank you"),
    re.compile(r"autopay"),
]

_TYPE_HEADER = re.compile(r"^type$", re.I)


class ErrorReason(str, Enum):
    DATE_PARSE = "date_parse"
    AMOUNT_PARSE = "amount_parse"
    EMPTY_MERCHANT = "empty_merchant"
    ZERO_AMOUNT = "zero_amount"
    PAYMENT = "payment"
    MISSING_COLUMNS = "missing_columns"
    OTHER = "other"


@dataclass(frozen=True)
class NormalizedTransaction:
    date: dt.date
    merchant: str
    amount_raw: Decimal
    amount_spending: Decimal
    convention: AmountSignConvention
    is_credit: bool = False
    is_payment: bool = False
    merchant_raw: str | None = None


@dataclass(frozen=True)
class NormalizationError:
    raw_row: RawRow
    reason: ErrorReason
    message: str
    row_number: int | None = None

    def describe(self) -> str:
        prefix = f"Row {self.row_number}: " if self.row_number is not None else ""
        return f"{prefix}{self.message}"


@dataclass
class NormalizationResult:
    transactions: list[NormalizedTransaction] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)

    def reason_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for err in self.errors:
            counts[err.reason.value] = counts.get(err.reason.value, 0) + 1
        return counts


def normalize_merchant(merchant: CellValue) -> str:
    """Lowercase, collapse whitespace, strip punctuation except hyphens."""
    if merchant is None:
        return ""
    text = str(merchant).strip().lower()
    text = re.sub(r"\s+", " ", text)
    text = re.sub(r"[^\w\s-]", "", text)
    text = re.sub(r"_", "", text)
    text = re.sub(r"\s+", " ", text)
    return text.strip()


def is_statement_payment(merchant_normalized: str) -> bool:
    """True if the merchant text names a card/statement payment."""
    return any(p.search(merchant_normalized) for p in PAYMENT_PATTERNS)


def parse_date(value: CellValue) -> dt.date:
    """Parse a date cell via explicit formats, then a dateutil fallback.

    Raises:
        ValueError: If no format matches.
    """
    if value is None:
        raise ValueError("Date value is null or empty")
    text = str(value).strip()
    if not text:
        raise ValueError("Date value is null or empty")

    for fmt in DATE_FORMATS:
        try:
            return dt.datetime.strptime(text, fmt).date()
        except ValueError:
            continue

    try:
        return date_parser.parse(text).date()
    except (ValueError, OverflowError) as e:
        raise ValueError(f"Could not parse date: {text}") from e


def normalize_row(
    raw_row: RawRow,
    columns: DetectedColumns,
    convention: AmountSignConvention,
    row_number: int | None = None,
) -> NormalizedTransaction | NormalizationError:
    """Normalize one raw row. Returns a transaction or the reason it was rejected."""

    def _reject(reason: ErrorReason, message: str) -> NormalizationError:
        return NormalizationError(
            raw_row=raw_row, reason=reason, message=message, row_number=row_number,
        )

    for col in (columns.date_column, columns.merchant_column, columns.amount_column):
        if col not in raw_row:
            return _reject(ErrorReason.MISSING_COLUMNS, f"Missing required column: {col}")

    # Step 1: Explicit Type column
    type_col = next((k for k in raw_row if _TYPE_HEADER.match(k)), None)
    if type_col is not None:
        type_value = raw_row.get(type_col)
        if type_value is not None and str(type_value).strip().lower() == "payment":
            return _reject(ErrorReason.PAYMENT, "Payment transaction (skipped)")

    # Step 2: Date
    try:
        date = parse_date(raw_row.get(columns.date_column))
    except ValueError as e:
        return _reject(ErrorReason.DATE_PARSE, str(e))

    # Step 3-4: Merchant
    merchant_value = raw_row.get(columns.merchant_column)
    merchant_raw = str(merchant_value).strip() if merchant_value is not None else ""
    if not merchant_raw:
        return _reject(ErrorReason.EMPTY_MERCHANT, "Empty merchant name")
    merchant = normalize_merchant(merchant_raw)
    if not merchant:
        return _reject(ErrorReason.EMPTY_MERCHANT, f"Merchant has no usable text: {merchant_raw}")

    # Step 5: Statement payment by merchant text, regardless of sign
    if is_statement_payment(merchant):
        return _reject(ErrorReason.PAYMENT, "Credit card payment pattern detected")

    # Step 6: Amount
    try:
        amount = parse_amount(raw_row.get(columns.amount_column))
    except ValueError as e:
        return _reject(ErrorReason.AMOUNT_PARSE, str(e))
    if amount == 0:
        return _reject(ErrorReason.ZERO_AMOUNT, "Zero amount")

    # Step 7: Spending under the file's convention
    spending = convention.spending_amount(amount)
    return NormalizedTransaction(
        date=date,
        merchant=merchant,
        amount_raw=amount,
        amount_spending=spending,
        convention=convention,
        is_credit=spending == 0,
        is_payment=False,
        merchant_raw=merchant_raw,
    )


def normalize_rows(
    rows: list[RawRow],
    columns: DetectedColumns,
    convention: AmountSignConvention,
) -> NormalizationResult:
    """Normalize every row, keeping input order in both output lists.

    Row numbers are 1-based data-row positions (header excluded).
    """
    result = NormalizationResult()
    for i, row in enumerate(rows, start=1):
        try:
            outcome = normalize_row(row, columns, convention, row_number=i)
        except Exception as e:
            logger.warning("Skipping row %d due to unexpected error: %s", i, e)
            outcome = NormalizationError(
                raw_row=row, reason=ErrorReason.OTHER, message=str(e) or "Unknown error",
                row_number=i,
            )
        if isinstance(outcome, NormalizationError):
            result.errors.append(outcome)
        else:
            result.transactions.append(outcome)
    return result
