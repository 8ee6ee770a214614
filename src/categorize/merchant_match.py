"""Merchant rule matching: maps a normalized merchant to a learned category.

Two tiers, evaluated in order:
  - Exact (base 0.95): rule merchant equals the transaction merchant
  - Partial (base 0.85): either string contains the other

Partial candidates are scanned longest rule merchant first, then
alphabetically, so "starbucks reserve" beats "starbucks" for
"starbucks reserve roastery" regardless of insertion order.

The rule's learned confidence_boost is added to the base and capped at 1.0.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from src.database.models import MerchantRule
from src.database.repository import Repository

logger = logging.getLogger(__name__)

EXACT_BASE_CONFIDENCE = 0.95
PARTIAL_BASE_CONFIDENCE = 0.85


@dataclass
class RuleMatch:
    """Result of a merchant rule lookup."""
    rule: MerchantRule
    confidence: float
    match_type: str  # "exact" or "partial"

    @property
    def category_id(self) -> str:
        return self.rule.category_id


def match_rule(merchant: str, user_id: str, repo: Repository) -> RuleMatch | None:
    """Find the user's rule for a normalized merchant, or None.

    Storage errors propagate; the batch orchestrator turns them into a
    per-transaction error result.
    """
    if not merchant:
        return None

    exact = repo.get_merchant_rule(user_id, merchant)
    if exact is not None:
        return RuleMatch(
            rule=exact,
            confidence=_with_boost(EXACT_BASE_CONFIDENCE, exact.confidence_boost),
            match_type="exact",
        )

    for rule in _partial_candidates(repo.get_merchant_rules(user_id)):
        pattern = rule.merchant_normalized
        if pattern and (pattern in merchant or merchant in pattern):
            logger.debug("Partial rule match: '%s' ~ '%s'", merchant, pattern)
            return RuleMatch(
                rule=rule,
                confidence=_with_boost(PARTIAL_BASE_CONFIDENCE, rule.confidence_boost),
                match_type="partial",
            )
    return None


def _partial_candidates(rules: list[MerchantRule]) -> list[MerchantRule]:
    return sorted(rules, key=lambda r: (-len(r.merchant_normalized), r.merchant_normalized))


def _with_boost(base: float, boost: float | None) -> float:
    return min(1.0, base + (boost or 0.0))
