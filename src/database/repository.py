"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. The categorization workers share this connection,
so every statement runs under one re-entrant lock.
"""

from __future__ import annotations

import sqlite3
import threading
from decimal import Decimal
from pathlib import Path

from .models import (
    Category,
    MerchantRule,
    Transaction,
    Upload,
)


class DuplicateFileError(Exception):
    """Raised when an upload's fingerprint already exists (same file, user and hour)."""

    def __init__(self, fingerprint: str, existing_upload_id: str | None = None):
        self.fingerprint = fingerprint
        self.existing_upload_id = existing_upload_id
        super().__init__(f"Upload with fingerprint '{fingerprint}' already exists")


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _write(self, sql: str, params=(), many: bool = False) -> None:
        """Run one write statement and commit; roll back if it fails."""
        with self._lock:
            try:
                if many:
                    self.conn.executemany(sql, params)
                else:
                    self.conn.execute(sql, params)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        with self._lock:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "  version INTEGER PRIMARY KEY,"
                "  description TEXT,"
                "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
                ")"
            )
            self.conn.commit()

            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version > current:
                    try:
                        self.conn.execute("BEGIN")
                        # executescript auto-commits, so we split statements manually
                        sql_text = "\n".join(
                            line for line in sql_file.read_text().splitlines()
                            if not line.lstrip().startswith("--")
                        )
                        for statement in sql_text.split(";"):
                            statement = statement.strip()
                            if statement:
                                self.conn.execute(statement)
                        self.conn.execute(
                            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                            (version, sql_file.stem),
                        )
                        self.conn.commit()
                    except Exception:
                        self.conn.rollback()
                        raise

    # ── Categories ──────────────────────────────────────────

    def sync_categories(self, categories: list[dict]) -> None:
        """Insert config categories that are missing; refresh names of existing ones."""
        self._write(
            "INSERT INTO categories (id, name) VALUES (?, ?)"
            " ON CONFLICT(id) DO UPDATE SET name = excluded.name",
            [(c["id"], c["name"]) for c in categories],
            many=True,
        )

    def get_categories(self) -> list[Category]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT id, name FROM categories ORDER BY rowid"
            ).fetchall()
        return [Category(id=r["id"], name=r["name"]) for r in rows]

    def get_category(self, category_id: str) -> Category | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT id, name FROM categories WHERE id = ?", (category_id,)
            ).fetchone()
        return Category(id=row["id"], name=row["name"]) if row else None

    # ── Uploads ─────────────────────────────────────────────

    def get_upload_by_fingerprint(self, fingerprint: str) -> Upload | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM uploads WHERE fingerprint = ?", (fingerprint,)
            ).fetchone()
        return self._row_to_upload(row) if row else None

    def get_uploads(self, user_id: str) -> list[Upload]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM uploads WHERE user_id = ? ORDER BY uploaded_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [self._row_to_upload(r) for r in rows]

    def insert_upload_with_transactions(
        self, upload: Upload, txns: list[Transaction]
    ) -> Upload:
        """Insert an upload and all of its transactions atomically.

        Either the upload row and every transaction are written, or nothing is.

        Raises:
            DuplicateFileError: If the upload fingerprint already exists. This
                also covers two concurrent uploads racing past the pre-check.
        """
        with self._lock:
            try:
                self.conn.execute("BEGIN")
                self.conn.execute(
                    "INSERT INTO uploads (id, user_id, file_name, fingerprint,"
                    " uploaded_at, convention, convention_branch, record_count,"
                    " skipped_count, total_spending, created_at)"
                    " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (upload.id, upload.user_id, upload.file_name,
                     upload.fingerprint, upload.uploaded_at, upload.convention,
                     upload.convention_branch, upload.record_count,
                     upload.skipped_count, str(upload.total_spending),
                     upload.created_at),
                )
                self.conn.executemany(
                    "INSERT INTO transactions"
                    " (id, user_id, upload_id, date, merchant, amount_raw,"
                    "  amount_spending, convention, is_credit, is_payment,"
                    "  category_id, confidence, status, categorization_method,"
                    "  notes, created_at, updated_at)"
                    " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                    [
                        (t.id, t.user_id, t.upload_id, t.date, t.merchant,
                         str(t.amount_raw), str(t.amount_spending), t.convention,
                         int(t.is_credit), int(t.is_payment), t.category_id,
                         t.confidence, t.status, t.categorization_method,
                         t.notes, t.created_at, t.updated_at)
                        for t in txns
                    ],
                )
                self.conn.commit()
                return upload
            except sqlite3.IntegrityError as e:
                self.conn.rollback()
                if "fingerprint" in str(e):
                    existing = self.get_upload_by_fingerprint(upload.fingerprint)
                    raise DuplicateFileError(
                        upload.fingerprint,
                        existing.id if existing else None,
                    ) from e
                raise
            except Exception:
                self.conn.rollback()
                raise

    # ── Transactions ────────────────────────────────────────

    def get_transaction(self, txn_id: str) -> Transaction | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM transactions WHERE id = ?", (txn_id,)
            ).fetchone()
        return self._row_to_transaction(row) if row else None

    def get_transactions_by_upload(self, upload_id: str) -> list[Transaction]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM transactions WHERE upload_id = ? ORDER BY rowid",
                (upload_id,),
            ).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_by_merchant(
        self, user_id: str, merchant: str, status: str | None = None,
    ) -> list[Transaction]:
        sql = "SELECT * FROM transactions WHERE user_id = ? AND merchant = ?"
        params: list = [user_id, merchant]
        if status is not None:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY date, rowid"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_by_status(
        self, user_id: str, status: str, limit: int | None = None,
    ) -> list[Transaction]:
        sql = (
            "SELECT * FROM transactions WHERE user_id = ? AND status = ?"
            " ORDER BY date DESC, rowid"
        )
        params: list = [user_id, status]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    def update_transaction_category(
        self, txn_id: str, category_id: str | None, status: str,
        confidence: float | None, method: str | None,
    ) -> None:
        self._write(
            "UPDATE transactions SET category_id = ?, status = ?,"
            " confidence = ?, categorization_method = ?,"
            " updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (category_id, status, confidence, method, txn_id),
        )

    # ── Merchant Rules ──────────────────────────────────────

    def get_merchant_rule(self, user_id: str, merchant: str) -> MerchantRule | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM merchant_rules"
                " WHERE user_id = ? AND merchant_normalized = ?",
                (user_id, merchant),
            ).fetchone()
        return self._row_to_rule(row) if row else None

    def get_merchant_rules(self, user_id: str) -> list[MerchantRule]:
        """All rules for a user, most specific (longest merchant) first."""
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM merchant_rules WHERE user_id = ?"
                " ORDER BY LENGTH(merchant_normalized) DESC, merchant_normalized",
                (user_id,),
            ).fetchall()
        return [self._row_to_rule(r) for r in rows]

    def insert_merchant_rule(self, rule: MerchantRule) -> MerchantRule:
        self._write(
            "INSERT INTO merchant_rules"
            " (user_id, merchant_normalized, category_id, confidence_boost,"
            "  created_from_manual_override, created_at, updated_at)"
            " VALUES (?,?,?,?,?,?,?)",
            (rule.user_id, rule.merchant_normalized, rule.category_id,
             rule.confidence_boost, int(rule.created_from_manual_override),
             rule.created_at, rule.updated_at),
        )
        return rule

    def update_merchant_rule(self, rule: MerchantRule) -> MerchantRule:
        self._write(
            "UPDATE merchant_rules SET category_id = ?, confidence_boost = ?,"
            " created_from_manual_override = ?, updated_at = CURRENT_TIMESTAMP"
            " WHERE user_id = ? AND merchant_normalized = ?",
            (rule.category_id, rule.confidence_boost,
             int(rule.created_from_manual_override),
             rule.user_id, rule.merchant_normalized),
        )
        return rule

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_upload(row: sqlite3.Row) -> Upload:
        return Upload(
            id=row["id"], user_id=row["user_id"],
            file_name=row["file_name"], fingerprint=row["fingerprint"],
            uploaded_at=row["uploaded_at"], convention=row["convention"],
            convention_branch=row["convention_branch"],
            record_count=row["record_count"],
            skipped_count=row["skipped_count"],
            total_spending=Decimal(row["total_spending"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], user_id=row["user_id"],
            upload_id=row["upload_id"], date=row["date"],
            merchant=row["merchant"],
            amount_raw=Decimal(row["amount_raw"]),
            amount_spending=Decimal(row["amount_spending"]),
            convention=row["convention"],
            is_credit=bool(row["is_credit"]),
            is_payment=bool(row["is_payment"]),
            category_id=row["category_id"],
            confidence=row["confidence"], status=row["status"],
            categorization_method=row["categorization_method"],
            notes=row["notes"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_rule(row: sqlite3.Row) -> MerchantRule:
        return MerchantRule(
            user_id=row["user_id"],
            merchant_normalized=row["merchant_normalized"],
            category_id=row["category_id"],
            confidence_boost=row["confidence_boost"],
            created_from_manual_override=bool(row["created_from_manual_override"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
