"""Tests for Repository CRUD operations."""

import sqlite3
import threading
from decimal import Decimal
from pathlib import Path

import pytest

from src.database.models import (
    STATUS_APPROVED,
    STATUS_PENDING_REVIEW,
    MerchantRule,
    Transaction,
    Upload,
)
from src.database.repository import DuplicateFileError, Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"

CATEGORIES = [
    {"id": "groceries", "name": "Groceries"},
    {"id": "dining", "name": "Dining"},
    {"id": "shopping", "name": "Shopping"},
]


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    r.sync_categories(CATEGORIES)
    yield r
    r.close()


def _make_upload(**overrides) -> Upload:
    defaults = dict(
        user_id="u1",
        file_name="chase.csv",
        fingerprint="fp_abc",
        uploaded_at="2024-02-01T10:00:00+00:00",
        convention="negative",
        convention_branch="issuer",
    )
    defaults.update(overrides)
    return Upload(**defaults)


def _make_txn(upload_id: str, **overrides) -> Transaction:
    defaults = dict(
        user_id="u1",
        upload_id=upload_id,
        date="2024-01-15",
        merchant="starbucks",
        amount_raw=Decimal("-5.75"),
        amount_spending=Decimal("5.75"),
        convention="negative",
    )
    defaults.update(overrides)
    return Transaction(**defaults)


# ── Categories ─────────────────────────────────────────────


class TestCategories:
    def test_sync_preserves_config_order(self, repo):
        assert [c.id for c in repo.get_categories()] == ["groceries", "dining", "shopping"]

    def test_sync_is_idempotent_and_renames(self, repo):
        repo.sync_categories([{"id": "dining", "name": "Restaurants"}])
        assert len(repo.get_categories()) == 3
        assert repo.get_category("dining").name == "Restaurants"

    def test_unknown_category(self, repo):
        assert repo.get_category("nope") is None


# ── Uploads + transactions ─────────────────────────────────


class TestUploadInsert:
    def test_insert_and_read_back(self, repo):
        upload = _make_upload(total_spending=Decimal("5.75"), record_count=1)
        txn = _make_txn(upload.id, category_id="dining", confidence=0.95,
                        status=STATUS_APPROVED, categorization_method="rule_exact")
        repo.insert_upload_with_transactions(upload, [txn])

        found = repo.get_upload_by_fingerprint("fp_abc")
        assert found.id == upload.id
        assert found.total_spending == Decimal("5.75")
        assert found.convention_branch == "issuer"

        txns = repo.get_transactions_by_upload(upload.id)
        assert len(txns) == 1
        assert txns[0].amount_raw == Decimal("-5.75")
        assert txns[0].amount_spending == Decimal("5.75")
        assert txns[0].is_credit is False
        assert txns[0].category_id == "dining"
        assert txns[0].status == STATUS_APPROVED

    def test_money_keeps_exact_decimal(self, repo):
        upload = _make_upload()
        txn = _make_txn(upload.id, amount_raw=Decimal("-0.10"), amount_spending=Decimal("0.10"))
        repo.insert_upload_with_transactions(upload, [txn])
        assert repo.get_transaction(txn.id).amount_spending == Decimal("0.10")

    def test_duplicate_fingerprint_raises(self, repo):
        first = _make_upload()
        repo.insert_upload_with_transactions(first, [_make_txn(first.id)])

        second = _make_upload()
        with pytest.raises(DuplicateFileError) as exc:
            repo.insert_upload_with_transactions(second, [_make_txn(second.id)])
        assert exc.value.existing_upload_id == first.id
        assert repo.get_transactions_by_upload(second.id) == []

    def test_bad_transaction_rolls_back_whole_upload(self, repo):
        upload = _make_upload()
        good = _make_txn(upload.id)
        # Spending > 0 but flagged as credit violates the CHECK constraint
        bad = _make_txn(upload.id, is_credit=True)
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_upload_with_transactions(upload, [good, bad])
        assert repo.get_upload_by_fingerprint("fp_abc") is None
        assert repo.get_transaction(good.id) is None

    def test_credit_row_allowed(self, repo):
        upload = _make_upload()
        credit = _make_txn(upload.id, amount_raw=Decimal("20"),
                           amount_spending=Decimal("0"), is_credit=True)
        repo.insert_upload_with_transactions(upload, [credit])
        assert repo.get_transaction(credit.id).is_credit is True

    def test_get_uploads_for_user(self, repo):
        a = _make_upload(fingerprint="a", uploaded_at="2024-02-01T10:00:00+00:00")
        b = _make_upload(fingerprint="b", uploaded_at="2024-02-02T10:00:00+00:00")
        c = _make_upload(fingerprint="c", user_id="u2")
        for u in (a, b, c):
            repo.insert_upload_with_transactions(u, [])
        assert [u.fingerprint for u in repo.get_uploads("u1")] == ["b", "a"]


class TestTransactionQueries:
    @pytest.fixture
    def loaded(self, repo):
        upload = _make_upload()
        txns = [
            _make_txn(upload.id, merchant="starbucks", category_id="dining"),
            _make_txn(upload.id, merchant="starbucks", date="2024-01-20"),
            _make_txn(upload.id, merchant="target", status=STATUS_APPROVED,
                      category_id="shopping"),
        ]
        repo.insert_upload_with_transactions(upload, txns)
        return txns

    def test_by_merchant(self, repo, loaded):
        assert len(repo.get_transactions_by_merchant("u1", "starbucks")) == 2
        assert repo.get_transactions_by_merchant("u2", "starbucks") == []

    def test_by_merchant_and_status(self, repo, loaded):
        found = repo.get_transactions_by_merchant("u1", "target", status=STATUS_PENDING_REVIEW)
        assert found == []

    def test_by_status(self, repo, loaded):
        pending = repo.get_transactions_by_status("u1", STATUS_PENDING_REVIEW)
        assert {t.merchant for t in pending} == {"starbucks"}
        assert len(repo.get_transactions_by_status("u1", STATUS_PENDING_REVIEW, limit=1)) == 1

    def test_update_category(self, repo, loaded):
        txn = loaded[1]
        repo.update_transaction_category(txn.id, "dining", STATUS_APPROVED, 1.0, "manual")
        found = repo.get_transaction(txn.id)
        assert found.category_id == "dining"
        assert found.status == STATUS_APPROVED
        assert found.confidence == 1.0
        assert found.categorization_method == "manual"


# ── Merchant rules ─────────────────────────────────────────


class TestMerchantRules:
    def test_insert_and_get(self, repo):
        repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "dining", 0.3, True))
        rule = repo.get_merchant_rule("u1", "starbucks")
        assert rule.category_id == "dining"
        assert rule.confidence_boost == 0.3
        assert rule.created_from_manual_override is True

    def test_rules_are_per_user(self, repo):
        repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "dining"))
        assert repo.get_merchant_rule("u2", "starbucks") is None

    def test_one_rule_per_merchant(self, repo):
        repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "dining"))
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "groceries"))

    def test_update(self, repo):
        rule = repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "dining"))
        rule.category_id = "groceries"
        rule.confidence_boost = 0.5
        repo.update_merchant_rule(rule)
        assert repo.get_merchant_rule("u1", "starbucks").category_id == "groceries"

    def test_list_longest_first(self, repo):
        for m in ("amazon", "amazon prime video", "uber", "amazon prime"):
            repo.insert_merchant_rule(MerchantRule("u1", m, "shopping"))
        names = [r.merchant_normalized for r in repo.get_merchant_rules("u1")]
        assert names == ["amazon prime video", "amazon prime", "amazon", "uber"]

    def test_boost_out_of_range_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_merchant_rule(MerchantRule("u1", "x", "dining", 1.5))

    def test_unknown_category_rejected(self, repo):
        with pytest.raises(sqlite3.IntegrityError):
            repo.insert_merchant_rule(MerchantRule("u1", "x", "not-a-category"))


class TestThreadSafety:
    def test_concurrent_reads(self, repo):
        repo.insert_merchant_rule(MerchantRule("u1", "starbucks", "dining"))
        errors = []

        def _read():
            try:
                for _ in range(50):
                    assert repo.get_merchant_rule("u1", "starbucks") is not None
                    repo.get_merchant_rules("u1")
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        threads = [threading.Thread(target=_read) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert errors == []
