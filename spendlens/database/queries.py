"""Reporting queries that span multiple tables.

These go beyond single-table CRUD and implement aggregations used by the
CLI status screen and statement detail views.
"""

from __future__ import annotations

import sqlite3


def get_status_counts(conn: sqlite3.Connection, user_id: str | None = None) -> dict:
    """Statement counts per processing status plus transaction/cache totals.

    Scoped to user_id when given, otherwise across all users.
    """
    where = " WHERE user_id = ?" if user_id else ""
    params: tuple = (user_id,) if user_id else ()

    counts = {
        "uploaded": 0,
        "processing": 0,
        "processed": 0,
        "error": 0,
    }
    rows = conn.execute(
        "SELECT processing_status, COUNT(*) AS cnt FROM statements"
        + where + " GROUP BY processing_status",
        params,
    ).fetchall()
    for r in rows:
        counts[r["processing_status"]] = r["cnt"]
    counts["total_statements"] = sum(
        counts[s] for s in ("uploaded", "processing", "processed", "error")
    )

    row = conn.execute(
        "SELECT COUNT(*) FROM transactions" + where, params,
    ).fetchone()
    counts["total_txns"] = row[0]

    row = conn.execute(
        "SELECT COUNT(*) FROM insights" + where, params,
    ).fetchone()
    counts["insights_entries"] = row[0]
    return counts


def get_statement_totals(
    conn: sqlite3.Connection, statement_id: str, user_id: str
) -> dict:
    """Debit/credit totals for one statement's transactions."""
    row = conn.execute(
        "SELECT"
        "  COUNT(*) AS cnt,"
        "  COALESCE(SUM(CASE WHEN type = 'debit' THEN amount ELSE 0 END), 0) AS debits,"
        "  COALESCE(SUM(CASE WHEN type = 'credit' THEN amount ELSE 0 END), 0) AS credits"
        " FROM transactions WHERE statement_id = ? AND user_id = ?",
        (statement_id, user_id),
    ).fetchone()
    return {
        "count": row["cnt"],
        "debits": round(row["debits"], 2),
        "credits": round(row["credits"], 2),
        "net": round(row["debits"] + row["credits"], 2),
    }


def get_category_summary(conn: sqlite3.Connection, user_id: str) -> list[dict]:
    """Spending (debits) by category for a user, largest first."""
    rows = conn.execute(
        "SELECT COALESCE(category, 'Uncategorized') AS category,"
        "  currency, COUNT(*) AS cnt, SUM(amount) AS total"
        " FROM transactions"
        " WHERE user_id = ? AND type = 'debit'"
        " GROUP BY COALESCE(category, 'Uncategorized'), currency"
        " ORDER BY total ASC",
        (user_id,),
    ).fetchall()
    return [
        {
            "category": r["category"],
            "currency": r["currency"],
            "count": r["cnt"],
            "total": round(r["total"], 2),
        }
        for r in rows
    ]
