"""User corrections and acceptances from the review queue.

Each action persists the category with approved status, then teaches a
manual merchant rule so future uploads of the same merchant skip the AI:
corrections carry a 0.3 boost, acceptances of a suggestion 0.2.

Unknown transaction or category ids raise LookupError.
"""

from __future__ import annotations

import logging

from src.categorize.learner import learn_rule
from src.database.models import STATUS_APPROVED, STATUS_PENDING_REVIEW, Transaction
from src.database.repository import Repository
from src.parsers.normalizer import normalize_merchant

logger = logging.getLogger(__name__)

CORRECTION_BOOST = 0.3
ACCEPT_BOOST = 0.2

METHOD_MANUAL = "manual"
METHOD_ACCEPTED = "accepted"


def _require_transaction(repo: Repository, txn_id: str) -> Transaction:
    txn = repo.get_transaction(txn_id)
    if txn is None:
        raise LookupError(f"Transaction not found: {txn_id}")
    return txn


def _require_category(repo: Repository, category_id: str) -> None:
    if repo.get_category(category_id) is None:
        raise LookupError(f"Category not found: {category_id}")


def change_category(
    repo: Repository, txn_id: str, category_id: str,
    boost: float = CORRECTION_BOOST,
) -> Transaction:
    """Set a transaction's category and learn a manual rule for its merchant."""
    txn = _require_transaction(repo, txn_id)
    _require_category(repo, category_id)

    repo.update_transaction_category(txn.id, category_id, STATUS_APPROVED, 1.0, METHOD_MANUAL)
    learn_rule(repo, txn.merchant, category_id, txn.user_id,
               confidence_boost=boost, from_manual_override=True)
    logger.info("Recategorized %s (%s) → %s", txn.id, txn.merchant, category_id)
    return repo.get_transaction(txn.id)


def bulk_apply_category(
    repo: Repository, user_id: str, merchant: str, category_id: str,
    boost: float = CORRECTION_BOOST,
) -> int:
    """Categorize every pending transaction for a merchant and learn one rule.

    Returns the number of transactions updated.
    """
    _require_category(repo, category_id)
    merchant = normalize_merchant(merchant)
    if not merchant:
        raise ValueError("Merchant cannot be empty")

    pending = repo.get_transactions_by_merchant(user_id, merchant, status=STATUS_PENDING_REVIEW)
    for txn in pending:
        repo.update_transaction_category(txn.id, category_id, STATUS_APPROVED, 1.0, METHOD_MANUAL)
    learn_rule(repo, merchant, category_id, user_id,
               confidence_boost=boost, from_manual_override=True)
    logger.info("Applied %s to %d transactions for '%s'", category_id, len(pending), merchant)
    return len(pending)


def accept_transaction(
    repo: Repository, txn_id: str, boost: float = ACCEPT_BOOST,
) -> Transaction:
    """Approve the suggested category as-is.

    Raises:
        LookupError: Unknown transaction id.
        ValueError: The transaction has no suggested category to accept.
    """
    txn = _require_transaction(repo, txn_id)
    if txn.category_id is None:
        raise ValueError(f"Transaction {txn_id} has no suggested category")

    repo.update_transaction_category(
        txn.id, txn.category_id, STATUS_APPROVED, txn.confidence, METHOD_ACCEPTED,
    )
    learn_rule(repo, txn.merchant, txn.category_id, txn.user_id,
               confidence_boost=boost, from_manual_override=True)
    return repo.get_transaction(txn.id)


def accept_all(repo: Repository, user_id: str, boost: float = ACCEPT_BOOST) -> int:
    """Approve every pending suggestion for a user.

    Transactions without a suggested category stay pending. One rule is
    learned per distinct (merchant, category) pair.
    """
    pending = repo.get_transactions_by_status(user_id, STATUS_PENDING_REVIEW)
    accepted = 0
    learned: set[tuple[str, str]] = set()
    for txn in pending:
        if txn.category_id is None:
            continue
        repo.update_transaction_category(
            txn.id, txn.category_id, STATUS_APPROVED, txn.confidence, METHOD_ACCEPTED,
        )
        accepted += 1
        key = (txn.merchant, txn.category_id)
        if key not in learned:
            learned.add(key)
            learn_rule(repo, txn.merchant, txn.category_id, user_id,
                       confidence_boost=boost, from_manual_override=True)
    logger.info("Accepted %d pending transactions", accepted)
    return accepted
