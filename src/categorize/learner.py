"""Merchant rule learning from categorizations and user corrections.

Policy when a rule already exists for (user, merchant):

  existing    incoming    effect
  --------    --------    ------------------------------------------------
  manual      automatic   keep category, boost accumulates
  manual      manual      take new category, boost accumulates
  automatic   manual      take new category and boost, rule becomes manual
  automatic   automatic   take new category and boost

Boosts are capped at 1.0. A manual rule is never re-categorized by
automatic learning.

The read and the write are separate statements. Two concurrent learners for
the same merchant can interleave, in which case the last write wins; the
primary key on (user_id, merchant_normalized) still guarantees one rule.
Learning is best-effort: storage errors are logged and skipped, never
raised to the caller.
"""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum

from src.database.models import MerchantRule, _now
from src.database.repository import Repository

logger = logging.getLogger(__name__)


class RuleUpdate(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"


def learn_rule(
    repo: Repository,
    merchant: str,
    category_id: str,
    user_id: str,
    confidence_boost: float = 0.0,
    from_manual_override: bool = False,
) -> RuleUpdate:
    """Create or update the user's rule for a normalized merchant."""
    if not merchant or not category_id:
        return RuleUpdate.SKIPPED
    boost = max(0.0, min(1.0, confidence_boost))

    try:
        existing = repo.get_merchant_rule(user_id, merchant)
        if existing is None:
            repo.insert_merchant_rule(MerchantRule(
                user_id=user_id,
                merchant_normalized=merchant,
                category_id=category_id,
                confidence_boost=boost,
                created_from_manual_override=from_manual_override,
            ))
            logger.info("Learned rule '%s' → %s (manual=%s)", merchant, category_id, from_manual_override)
            return RuleUpdate.CREATED

        if existing.created_from_manual_override:
            existing.confidence_boost = min(1.0, existing.confidence_boost + boost)
            if from_manual_override:
                existing.category_id = category_id
        elif from_manual_override:
            existing.category_id = category_id
            existing.confidence_boost = boost
            existing.created_from_manual_override = True
        else:
            existing.category_id = category_id
            existing.confidence_boost = boost

        existing.updated_at = _now()
        repo.update_merchant_rule(existing)
        return RuleUpdate.UPDATED
    except sqlite3.Error as e:
        logger.warning("Could not learn rule for '%s': %s", merchant, e)
        return RuleUpdate.SKIPPED
