"""Tests for schema migration system and table constraints."""

import sqlite3
from pathlib import Path

import pytest

from src.database.repository import Repository

MIGRATIONS_DIR = Path(__file__).parent.parent.parent / "src" / "database" / "migrations"


@pytest.fixture
def repo():
    r = Repository(":memory:")
    yield r
    r.close()


@pytest.fixture
def migrated(repo):
    repo.apply_migrations(MIGRATIONS_DIR)
    repo.conn.execute("INSERT INTO categories (id, name) VALUES ('dining', 'Dining')")
    repo.conn.execute(
        "INSERT INTO uploads (id, user_id, file_name, fingerprint, uploaded_at, convention)"
        " VALUES ('up1','u1','chase.csv','fp1','2024-01-01T00:00:00','negative')"
    )
    return repo


def _insert_txn(repo, txn_id="t1", spending="5.00", is_credit=0, is_payment=0,
                merchant="cafe", status="pending_review"):
    repo.conn.execute(
        "INSERT INTO transactions"
        " (id, user_id, upload_id, date, merchant, amount_raw, amount_spending,"
        "  convention, is_credit, is_payment, status)"
        " VALUES (?, 'u1', 'up1', '2024-01-01', ?, '-5.00', ?, 'negative', ?, ?, ?)",
        (txn_id, merchant, spending, is_credit, is_payment, status),
    )


class TestMigrationApply:
    def test_creates_all_tables(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        tables = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        expected = {"schema_version", "categories", "uploads", "transactions", "merchant_rules"}
        assert expected.issubset(tables)

    def test_tracks_version(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        row = repo.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        assert row[0] == 2

    def test_idempotent(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        repo.apply_migrations(MIGRATIONS_DIR)  # second run
        row = repo.conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()
        assert row[0] == 2  # one record per migration

    def test_creates_indexes(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        indexes = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='index'"
            ).fetchall()
        }
        assert {
            "idx_transactions_user_id",
            "idx_transactions_upload_id",
            "idx_transactions_status",
            "idx_transactions_merchant",
            "idx_uploads_user_id",
            "idx_merchant_rules_user_id",
        }.issubset(indexes)

    def test_failed_migration_not_recorded(self, repo, tmp_path):
        (tmp_path / "001_ok.sql").write_text("CREATE TABLE a (id INTEGER)")
        (tmp_path / "002_broken.sql").write_text("CREATE TABLE b (id INTEGER); NOT SQL")
        with pytest.raises(sqlite3.OperationalError):
            repo.apply_migrations(tmp_path)
        row = repo.conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
        assert row[0] == 1

    def test_comment_lines_with_semicolons(self, repo, tmp_path):
        (tmp_path / "001_commented.sql").write_text(
            "-- First table; holds ids\n"
            "CREATE TABLE a (id INTEGER);\n"
            "  -- Second table; also ids\n"
            "CREATE TABLE b (id INTEGER);\n"
        )
        repo.apply_migrations(tmp_path)
        tables = {
            row[0]
            for row in repo.conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()
        }
        assert {"a", "b"}.issubset(tables)


class TestForeignKeys:
    def test_foreign_keys_enabled(self, repo):
        repo.apply_migrations(MIGRATIONS_DIR)
        assert repo.conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1

    def test_transaction_requires_valid_upload(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            migrated.conn.execute(
                "INSERT INTO transactions"
                " (id, user_id, upload_id, date, merchant, amount_raw, amount_spending, convention)"
                " VALUES ('t9','u1','missing','2024-01-01','cafe','-1','1','negative')"
            )

    def test_rule_requires_valid_category(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            migrated.conn.execute(
                "INSERT INTO merchant_rules (user_id, merchant_normalized, category_id)"
                " VALUES ('u1','cafe','missing')"
            )


class TestCheckConstraints:
    def test_spending_row_ok(self, migrated):
        _insert_txn(migrated)

    def test_credit_row_ok(self, migrated):
        _insert_txn(migrated, spending="0", is_credit=1)

    def test_payment_row_ok(self, migrated):
        _insert_txn(migrated, spending="0", is_payment=1)

    def test_spending_with_credit_flag_rejected(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_txn(migrated, spending="5.00", is_credit=1)

    def test_zero_spending_without_flag_rejected(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_txn(migrated, spending="0")

    def test_negative_spending_rejected(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_txn(migrated, spending="-1.00")

    def test_blank_merchant_rejected(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_txn(migrated, merchant="   ")

    def test_unknown_status_rejected(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            _insert_txn(migrated, status="flagged")


class TestUniqueConstraints:
    def test_upload_fingerprint_unique(self, migrated):
        with pytest.raises(sqlite3.IntegrityError):
            migrated.conn.execute(
                "INSERT INTO uploads (id, user_id, file_name, fingerprint, uploaded_at, convention)"
                " VALUES ('up2','u1','chase.csv','fp1','2024-01-01T00:00:00','negative')"
            )

    def test_one_rule_per_user_merchant(self, migrated):
        migrated.conn.execute(
            "INSERT INTO merchant_rules (user_id, merchant_normalized, category_id)"
            " VALUES ('u1','cafe','dining')"
        )
        with pytest.raises(sqlite3.IntegrityError):
            migrated.conn.execute(
                "INSERT INTO merchant_rules (user_id, merchant_normalized, category_id)"
                " VALUES ('u1','cafe','dining')"
            )
