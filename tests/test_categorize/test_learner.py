"""Tests for merchant rule learning."""

from pathlib import Path

import pytest

from src.categorize.learner import RuleUpdate, learn_rule
from src.categorize.merchant_match import match_rule
from src.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    r.sync_categories([
        {"id": "dining", "name": "Dining"},
        {"id": "groceries", "name": "Groceries"},
        {"id": "shopping", "name": "Shopping"},
    ])
    yield r
    r.close()


class TestCreate:
    def test_new_rule(self, repo):
        assert learn_rule(repo, "starbucks", "dining", "u1") is RuleUpdate.CREATED
        rule = repo.get_merchant_rule("u1", "starbucks")
        assert rule.category_id == "dining"
        assert rule.confidence_boost == 0.0
        assert rule.created_from_manual_override is False

    def test_manual_rule(self, repo):
        learn_rule(repo, "starbucks", "dining", "u1", confidence_boost=0.3, from_manual_override=True)
        rule = repo.get_merchant_rule("u1", "starbucks")
        assert rule.created_from_manual_override is True
        assert rule.confidence_boost == pytest.approx(0.3)

    def test_boost_clamped(self, repo):
        learn_rule(repo, "a", "dining", "u1", confidence_boost=4.0)
        learn_rule(repo, "b", "dining", "u1", confidence_boost=-1.0)
        assert repo.get_merchant_rule("u1", "a").confidence_boost == 1.0
        assert repo.get_merchant_rule("u1", "b").confidence_boost == 0.0

    def test_empty_merchant_skipped(self, repo):
        assert learn_rule(repo, "", "dining", "u1") is RuleUpdate.SKIPPED
        assert repo.get_merchant_rules("u1") == []

    def test_rules_are_per_user(self, repo):
        learn_rule(repo, "starbucks", "dining", "u1")
        learn_rule(repo, "starbucks", "groceries", "u2")
        assert repo.get_merchant_rule("u1", "starbucks").category_id == "dining"
        assert repo.get_merchant_rule("u2", "starbucks").category_id == "groceries"


class TestUpdatePolicy:
    def test_automatic_over_automatic_replaces(self, repo):
        learn_rule(repo, "target", "groceries", "u1", confidence_boost=0.1)
        assert learn_rule(repo, "target", "shopping", "u1", confidence_boost=0.05) is RuleUpdate.UPDATED
        rule = repo.get_merchant_rule("u1", "target")
        assert rule.category_id == "shopping"
        assert rule.confidence_boost == pytest.approx(0.05)

    def test_manual_over_automatic_takes_over(self, repo):
        learn_rule(repo, "target", "groceries", "u1", confidence_boost=0.1)
        learn_rule(repo, "target", "shopping", "u1", confidence_boost=0.3, from_manual_override=True)
        rule = repo.get_merchant_rule("u1", "target")
        assert rule.category_id == "shopping"
        assert rule.confidence_boost == pytest.approx(0.3)
        assert rule.created_from_manual_override is True

    def test_manual_over_manual_accumulates(self, repo):
        learn_rule(repo, "target", "groceries", "u1", confidence_boost=0.3, from_manual_override=True)
        learn_rule(repo, "target", "shopping", "u1", confidence_boost=0.3, from_manual_override=True)
        rule = repo.get_merchant_rule("u1", "target")
        assert rule.category_id == "shopping"
        assert rule.confidence_boost == pytest.approx(0.6)

    def test_accumulated_boost_capped(self, repo):
        for _ in range(5):
            learn_rule(repo, "target", "shopping", "u1", confidence_boost=0.3, from_manual_override=True)
        assert repo.get_merchant_rule("u1", "target").confidence_boost == 1.0

    def test_one_rule_per_merchant(self, repo):
        for cat in ("dining", "groceries", "shopping"):
            learn_rule(repo, "target", cat, "u1")
        assert len(repo.get_merchant_rules("u1")) == 1


class TestManualStickiness:
    def test_automatic_update_keeps_manual_category(self, repo):
        learn_rule(repo, "coffee shop", "dining", "u1", confidence_boost=0.3, from_manual_override=True)
        assert learn_rule(repo, "coffee shop", "groceries", "u1", confidence_boost=0.1) is RuleUpdate.UPDATED

        rule = repo.get_merchant_rule("u1", "coffee shop")
        assert rule.category_id == "dining"
        assert rule.created_from_manual_override is True
        assert rule.confidence_boost == pytest.approx(0.4)
        assert match_rule("coffee shop", "u1", repo).category_id == "dining"

    def test_manual_correction_overrides_manual(self, repo):
        learn_rule(repo, "coffee shop", "dining", "u1", confidence_boost=0.3, from_manual_override=True)
        learn_rule(repo, "coffee shop", "groceries", "u1", confidence_boost=0.3, from_manual_override=True)
        assert match_rule("coffee shop", "u1", repo).category_id == "groceries"


class TestStorageErrors:
    def test_unknown_category_skipped(self, repo, caplog):
        with caplog.at_level("WARNING"):
            assert learn_rule(repo, "starbucks", "no-such-category", "u1") is RuleUpdate.SKIPPED
        assert "Could not learn rule" in caplog.text
        assert repo.get_merchant_rule("u1", "starbucks") is None

    def test_repo_usable_after_failure(self, repo):
        learn_rule(repo, "starbucks", "no-such-category", "u1")
        assert learn_rule(repo, "starbucks", "dining", "u1") is RuleUpdate.CREATED

    def test_missing_tables_skipped(self):
        bare = Repository(":memory:")
        try:
            assert learn_rule(bare, "starbucks", "dining", "u1") is RuleUpdate.SKIPPED
        finally:
            bare.close()
