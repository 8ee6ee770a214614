"""Confidence routing: auto-approve or send to the review queue."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from src.categorize.claude_ai import CategoryProbability
from src.categorize.merchant_match import RuleMatch
from src.database.models import STATUS_APPROVED, STATUS_PENDING_REVIEW, Category

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.75

METHOD_RULE_EXACT = "rule_exact"
METHOD_RULE_PARTIAL = "rule_partial"
METHOD_AI = "ai"
METHOD_AI_FALLBACK = "ai_fallback"
METHOD_ERROR = "error"


class Routing(str, Enum):
    APPROVED = STATUS_APPROVED
    PENDING_REVIEW = STATUS_PENDING_REVIEW


@dataclass
class CategorizationResult:
    """Outcome of categorizing one transaction."""
    category_id: str | None
    confidence_score: float
    routing: Routing
    probabilities: list[CategoryProbability] = field(default_factory=list)
    used_rule: bool = False
    method: str = METHOD_AI

    @property
    def status(self) -> str:
        return self.routing.value


def route(confidence: float, threshold: float = DEFAULT_THRESHOLD) -> Routing:
    """Scores at or above the threshold are approved."""
    return Routing.APPROVED if confidence >= threshold else Routing.PENDING_REVIEW


def result_from_rule(
    match: RuleMatch,
    categories: list[Category],
    threshold: float = DEFAULT_THRESHOLD,
) -> CategorizationResult:
    """Rule hit: the whole distribution sits on the rule's category."""
    probabilities = [
        CategoryProbability(c.id, c.name, 1.0 if c.id == match.category_id else 0.0)
        for c in categories
    ]
    if not any(p.probability for p in probabilities):
        # Category created after the context's category list was loaded
        logger.warning("Rule category %r not in category list", match.category_id)
        probabilities = [CategoryProbability(match.category_id, match.category_id, 1.0)]
    return CategorizationResult(
        category_id=match.category_id,
        confidence_score=match.confidence,
        routing=route(match.confidence, threshold),
        probabilities=probabilities,
        used_rule=True,
        method=METHOD_RULE_EXACT if match.match_type == "exact" else METHOD_RULE_PARTIAL,
    )


def result_from_probabilities(
    probabilities: list[CategoryProbability],
    threshold: float = DEFAULT_THRESHOLD,
    fallback: bool = False,
) -> CategorizationResult:
    """AI distribution: the most probable category wins, first one on ties."""
    if not probabilities:
        return error_result()
    best = probabilities[0]
    for p in probabilities[1:]:
        if p.probability > best.probability:
            best = p
    return CategorizationResult(
        category_id=best.category_id,
        confidence_score=best.probability,
        routing=route(best.probability, threshold),
        probabilities=probabilities,
        used_rule=False,
        method=METHOD_AI_FALLBACK if fallback else METHOD_AI,
    )


def error_result() -> CategorizationResult:
    return CategorizationResult(
        category_id=None,
        confidence_score=0.0,
        routing=Routing.PENDING_REVIEW,
        method=METHOD_ERROR,
    )
