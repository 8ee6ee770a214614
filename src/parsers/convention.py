"""Amount sign convention: which raw sign means money leaving the account.

Card issuers disagree: Chase exports spending as negative amounts, Amex
activity files as positive. One convention is resolved per file, in
priority order:

  1. Known issuer: filename substring from issuers.yaml
  2. Count: one sign outnumbers the other by more than 1.5x
  3. Magnitude: absolute totals by sign differ by more than 1.2x
  4. Default: negative (most credit cards)

The branch that fired is recorded for diagnosability.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from .base import CellValue, RawRow
from .columns import DetectedColumns

logger = logging.getLogger(__name__)

COUNT_RATIO = Decimal("1.5")
MAGNITUDE_RATIO = Decimal("1.2")


class AmountSignConvention(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"

    def is_spending(self, amount: Decimal) -> bool:
        """True if a raw amount of this sign is spending under this convention."""
        if self is AmountSignConvention.NEGATIVE:
            return amount < 0
        return amount > 0

    def spending_amount(self, amount: Decimal) -> Decimal:
        """Spending value (always >= 0); 0 for credits/refunds."""
        return abs(amount) if self.is_spending(amount) else Decimal("0")


@dataclass(frozen=True)
class ConventionDecision:
    convention: AmountSignConvention
    branch: str  # "issuer", "count", "magnitude", "default", "no_amounts"


def parse_amount(value: CellValue) -> Decimal:
    """Parse an amount cell, stripping currency symbol, commas and whitespace.

    Raises:
        ValueError: If the value is empty or not a finite number.
    """
    if value is None:
        raise ValueError("Amount value is null or empty")
    if isinstance(value, Decimal):
        amount = value
    elif isinstance(value, (int, float)):
        amount = Decimal(str(value))
    else:
        cleaned = "".join(str(value).replace("$", "").replace(",", "").split())
        if not cleaned:
            raise ValueError("Amount value is null or empty")
        try:
            amount = Decimal(cleaned)
        except InvalidOperation as e:
            raise ValueError(f"Could not parse amount: {value}") from e
    if not amount.is_finite():
        raise ValueError(f"Could not parse amount: {value}")
    return amount


def resolve_convention(
    file_name: str,
    rows: list[RawRow],
    columns: DetectedColumns,
    known_issuers: dict[str, str] | None = None,
) -> ConventionDecision:
    """Decide the amount sign convention for a whole file.

    Args:
        file_name: Uploaded file name (checked against known issuers).
        rows: All raw rows of the file.
        columns: Detected columns; only amount_column is read.
        known_issuers: Lowercase filename substring → "positive"/"negative".
    """
    name_lower = file_name.lower()
    for pattern, convention in (known_issuers or {}).items():
        if pattern and pattern in name_lower:
            return ConventionDecision(AmountSignConvention(convention), "issuer")

    amounts: list[Decimal] = []
    for row in rows:
        try:
            amount = parse_amount(row.get(columns.amount_column))
        except ValueError:
            continue
        if amount != 0:
            amounts.append(amount)

    if not amounts:
        return ConventionDecision(AmountSignConvention.NEGATIVE, "no_amounts")

    positives = [a for a in amounts if a > 0]
    negatives = [a for a in amounts if a < 0]

    if len(negatives) > len(positives) * COUNT_RATIO:
        return ConventionDecision(AmountSignConvention.NEGATIVE, "count")
    if len(positives) > len(negatives) * COUNT_RATIO:
        return ConventionDecision(AmountSignConvention.POSITIVE, "count")

    positive_total = sum(positives, Decimal("0"))
    negative_total = sum((abs(a) for a in negatives), Decimal("0"))

    if negative_total > positive_total * MAGNITUDE_RATIO:
        return ConventionDecision(AmountSignConvention.NEGATIVE, "magnitude")
    if positive_total > negative_total * MAGNITUDE_RATIO:
        return ConventionDecision(AmountSignConvention.POSITIVE, "magnitude")

    logger.debug("Amount convention undecided for %s, defaulting to negative", file_name)
    return ConventionDecision(AmountSignConvention.NEGATIVE, "default")
