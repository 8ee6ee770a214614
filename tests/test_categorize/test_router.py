"""Tests for confidence routing."""

import pytest

from src.categorize.claude_ai import CategoryProbability
from src.categorize.merchant_match import RuleMatch
from src.categorize.router import (
    DEFAULT_THRESHOLD,
    Routing,
    error_result,
    result_from_probabilities,
    result_from_rule,
    route,
)
from src.database.models import Category, MerchantRule

CATEGORIES = [Category("groceries", "Groceries"), Category("dining", "Dining")]


class TestRoute:
    def test_at_threshold_approved(self):
        assert route(0.75) is Routing.APPROVED

    def test_just_below_pending(self):
        assert route(0.7499) is Routing.PENDING_REVIEW

    def test_custom_threshold(self):
        assert route(0.6, threshold=0.5) is Routing.APPROVED
        assert route(0.9, threshold=0.95) is Routing.PENDING_REVIEW

    def test_default(self):
        assert DEFAULT_THRESHOLD == 0.75

    def test_routing_values_are_statuses(self):
        assert Routing.APPROVED.value == "approved"
        assert Routing.PENDING_REVIEW.value == "pending_review"


class TestResultFromRule:
    def _match(self, match_type="exact", confidence=0.95):
        return RuleMatch(MerchantRule("u1", "cafe", "dining"), confidence, match_type)

    def test_exact(self):
        result = result_from_rule(self._match(), CATEGORIES)
        assert result.category_id == "dining"
        assert result.used_rule is True
        assert result.method == "rule_exact"
        assert result.routing is Routing.APPROVED
        assert {p.category_id: p.probability for p in result.probabilities} == {
            "groceries": 0.0, "dining": 1.0,
        }

    def test_partial_below_threshold(self):
        result = result_from_rule(self._match("partial", 0.85), CATEGORIES, threshold=0.9)
        assert result.method == "rule_partial"
        assert result.routing is Routing.PENDING_REVIEW

    def test_category_missing_from_list(self):
        match = RuleMatch(MerchantRule("u1", "vet clinic", "pets"), 0.95, "exact")
        result = result_from_rule(match, CATEGORIES)
        assert result.category_id == "pets"
        assert [p.category_id for p in result.probabilities] == ["pets"]
        assert sum(p.probability for p in result.probabilities) == pytest.approx(1.0)


class TestResultFromProbabilities:
    def test_picks_max(self):
        probs = [CategoryProbability("groceries", "Groceries", 0.2),
                 CategoryProbability("dining", "Dining", 0.8)]
        result = result_from_probabilities(probs)
        assert result.category_id == "dining"
        assert result.confidence_score == 0.8
        assert result.routing is Routing.APPROVED
        assert result.used_rule is False
        assert result.method == "ai"

    def test_tie_takes_first(self):
        probs = [CategoryProbability("groceries", "Groceries", 0.5),
                 CategoryProbability("dining", "Dining", 0.5)]
        assert result_from_probabilities(probs).category_id == "groceries"

    def test_fallback_method(self):
        probs = [CategoryProbability("groceries", "Groceries", 0.5),
                 CategoryProbability("dining", "Dining", 0.5)]
        result = result_from_probabilities(probs, fallback=True)
        assert result.method == "ai_fallback"
        assert result.routing is Routing.PENDING_REVIEW

    def test_empty_is_error(self):
        assert result_from_probabilities([]).method == "error"


class TestErrorResult:
    def test_shape(self):
        result = error_result()
        assert result.category_id is None
        assert result.confidence_score == 0.0
        assert result.routing is Routing.PENDING_REVIEW
        assert result.status == "pending_review"
