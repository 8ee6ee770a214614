"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
Upload and transaction primary keys are TEXT (UUID strings generated via
uuid4()). Money columns are stored as TEXT decimals and surfaced as Decimal.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


STATUS_APPROVED = "approved"
STATUS_PENDING_REVIEW = "pending_review"


@dataclass
class Category:
    id: str
    name: str


@dataclass
class Upload:
    user_id: str
    file_name: str
    fingerprint: str
    uploaded_at: str
    convention: str
    id: str = field(default_factory=_new_id)
    convention_branch: str | None = None
    record_count: int = 0
    skipped_count: int = 0
    total_spending: Decimal = Decimal("0")
    created_at: str = field(default_factory=_now)


@dataclass
class Transaction:
    user_id: str
    upload_id: str
    date: str              # YYYY-MM-DD
    merchant: str          # normalized merchant, the only merchant form kept
    amount_raw: Decimal
    amount_spending: Decimal
    convention: str
    id: str = field(default_factory=_new_id)
    is_credit: bool = False
    is_payment: bool = False
    category_id: str | None = None
    confidence: float | None = None
    status: str = STATUS_PENDING_REVIEW
    categorization_method: str | None = None
    notes: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass
class MerchantRule:
    user_id: str
    merchant_normalized: str
    category_id: str
    confidence_boost: float = 0.0
    created_from_manual_override: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


def validate_transaction(txn: Transaction) -> str | None:
    """Return a message if txn breaks the spending/flag invariants, else None."""
    if txn.amount_spending < 0:
        return "amount_spending cannot be negative"
    if txn.amount_spending > 0 and (txn.is_credit or txn.is_payment):
        return "Transaction with spending > 0 cannot be marked as credit or payment"
    if txn.amount_spending == 0 and not txn.is_credit and not txn.is_payment:
        return "Transaction with spending = 0 must be marked as credit or payment"
    if not txn.merchant or not txn.merchant.strip():
        return "merchant cannot be empty"
    return None
