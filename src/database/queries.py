"""Reporting queries that span multiple tables.

These take a raw sqlite3 connection (like the CLI does via repo.conn) and
return plain dicts. Money columns are TEXT decimals, so sums are done in
Python with Decimal rather than with SQL SUM over REAL.
"""

from __future__ import annotations

import sqlite3
from decimal import Decimal


def get_review_queue(
    conn: sqlite3.Connection, user_id: str, limit: int | None = None
) -> list[dict]:
    """Pending-review transactions with their suggested category name."""
    sql = (
        "SELECT t.id, t.date, t.merchant, t.amount_spending, t.category_id,"
        "  c.name AS category_name, t.confidence, t.categorization_method"
        " FROM transactions t"
        " LEFT JOIN categories c ON c.id = t.category_id"
        " WHERE t.user_id = ? AND t.status = 'pending_review'"
        " ORDER BY t.date DESC, t.rowid"
    )
    params: list = [user_id]
    if limit is not None:
        sql += " LIMIT ?"
        params.append(limit)
    rows = conn.execute(sql, params).fetchall()
    result = []
    for r in rows:
        item = dict(r)
        item["amount_spending"] = Decimal(item["amount_spending"])
        result.append(item)
    return result


def get_upload_summary(conn: sqlite3.Connection, upload_id: str) -> dict:
    """Count, spending total and credit count for one upload."""
    rows = conn.execute(
        "SELECT amount_spending, is_credit, status FROM transactions WHERE upload_id = ?",
        (upload_id,),
    ).fetchall()
    return {
        "upload_id": upload_id,
        "transaction_count": len(rows),
        "total_spending": sum(
            (Decimal(r["amount_spending"]) for r in rows), Decimal("0")
        ),
        "credit_count": sum(1 for r in rows if r["is_credit"]),
        "pending_review_count": sum(1 for r in rows if r["status"] == "pending_review"),
    }


def get_upload_summaries(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Per-upload summaries for a user, newest first."""
    uploads = conn.execute(
        "SELECT id, file_name, uploaded_at, convention, convention_branch,"
        "  skipped_count"
        " FROM uploads WHERE user_id = ?"
        " ORDER BY uploaded_at DESC, rowid DESC",
        (user_id,),
    ).fetchall()
    summaries = []
    for u in uploads:
        summary = get_upload_summary(conn, u["id"])
        summary.update(
            file_name=u["file_name"],
            uploaded_at=u["uploaded_at"],
            convention=u["convention"],
            convention_branch=u["convention_branch"],
            skipped_count=u["skipped_count"],
        )
        summaries.append(summary)
    return summaries


def get_spending_by_category(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Total spending per category, largest first. Uncategorized rows group under None."""
    rows = conn.execute(
        "SELECT t.category_id, c.name AS category_name, t.amount_spending"
        " FROM transactions t"
        " LEFT JOIN categories c ON c.id = t.category_id"
        " WHERE t.user_id = ?",
        (user_id,),
    ).fetchall()
    totals: dict[str | None, dict] = {}
    for r in rows:
        entry = totals.setdefault(
            r["category_id"],
            {
                "category_id": r["category_id"],
                "category_name": r["category_name"],
                "total": Decimal("0"),
                "txn_count": 0,
            },
        )
        entry["total"] += Decimal(r["amount_spending"])
        entry["txn_count"] += 1
    return sorted(totals.values(), key=lambda e: (-e["total"], e["category_id"] or ""))


def get_status_counts(conn: sqlite3.Connection, user_id: str) -> dict:
    """Counts for the `spendsort status` command."""
    row = conn.execute(
        "SELECT"
        "  (SELECT COUNT(*) FROM transactions WHERE user_id = :u) AS total_txns,"
        "  (SELECT COUNT(*) FROM transactions WHERE user_id = :u"
        "     AND status = 'pending_review') AS pending_review,"
        "  (SELECT COUNT(*) FROM transactions WHERE user_id = :u"
        "     AND status = 'approved') AS approved,"
        "  (SELECT COUNT(*) FROM uploads WHERE user_id = :u) AS total_uploads,"
        "  (SELECT COUNT(*) FROM merchant_rules WHERE user_id = :u) AS total_rules",
        {"u": user_id},
    ).fetchone()
    return dict(row)
