"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py. Every read and
write of user-owned rows is scoped by user_id as well as by row id.
Connection management uses a single connection with WAL mode and foreign
keys enabled, shared between the CLI thread and dispatcher workers behind
a re-entrant lock.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path

from .models import (
    InsightsCacheEntry,
    Statement,
    StatementSummary,
    Transaction,
    to_iso,
    utc_now,
)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _transaction(self):
        """Run the enclosed statements as one all-or-nothing unit."""
        with self._lock:
            self.conn.execute("BEGIN")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")

    def _query(self, sql: str, params=()) -> list[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params=()) -> sqlite3.Row | None:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
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
            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(Path(migrations_dir).glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version <= current:
                    continue
                with self._transaction() as conn:
                    # executescript auto-commits, so we split statements manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            conn.execute(statement)
                    conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )

    # ── Statements ──────────────────────────────────────────

    def insert_statement(self, stmt: Statement) -> Statement:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO statements"
                " (id, user_id, file_name, storage_path, uploaded_at,"
                "  processing_status, statement_type, currency, metadata,"
                "  error_message, processed_at, processing_started_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (stmt.id, stmt.user_id, stmt.file_name, stmt.storage_path,
                 stmt.uploaded_at, stmt.processing_status, stmt.statement_type,
                 stmt.currency, _dump_json(stmt.metadata),
                 stmt.error_message, stmt.processed_at,
                 stmt.processing_started_at),
            )
        return stmt

    def get_statement(self, statement_id: str, user_id: str) -> Statement | None:
        row = self._query_one(
            "SELECT * FROM statements WHERE id = ? AND user_id = ?",
            (statement_id, user_id),
        )
        return self._row_to_statement(row) if row else None

    def list_statements(self, user_id: str) -> list[Statement]:
        rows = self._query(
            "SELECT * FROM statements WHERE user_id = ?"
            " ORDER BY uploaded_at DESC, rowid DESC",
            (user_id,),
        )
        return [self._row_to_statement(r) for r in rows]

    def claim_statement(
        self, statement_id: str, user_id: str,
        from_statuses: tuple[str, ...], to_status: str,
        started_at: str | None = None,
        stale_before: str | None = None,
    ) -> bool:
        """Atomically move a statement to to_status if its current status is
        one of from_statuses. Returns False when no row changed.

        The claim is stamped with started_at (now by default). When
        stale_before is given, a row already in to_status whose claim is
        older than stale_before (or was never stamped) is taken over as
        abandoned.
        """
        ph = ",".join("?" * len(from_statuses))
        sql = (
            "UPDATE statements SET processing_status = ?, error_message = NULL,"
            " processing_started_at = ?"
            f" WHERE id = ? AND user_id = ? AND (processing_status IN ({ph})"
        )
        params: list = [
            to_status, started_at or to_iso(utc_now()),
            statement_id, user_id, *from_statuses,
        ]
        if stale_before is not None:
            sql += (
                " OR (processing_status = ?"
                " AND COALESCE(processing_started_at, '') < ?)"
            )
            params.extend([to_status, stale_before])
        sql += ")"
        with self._transaction() as conn:
            cur = conn.execute(sql, params)
            return cur.rowcount == 1
    _STATUS_UPDATE_COLS = frozenset({"error_message", "processed_at"})

    def update_statement_status(
        self, statement_id: str, user_id: str, status: str, **kwargs
    ):
        # Reject unknown column names to prevent silent bugs
        unknown = set(kwargs.keys()) - self._STATUS_UPDATE_COLS
        if unknown:
            raise ValueError(f"Unknown columns for update_statement_status: {unknown}")

        sets = ["processing_status = ?"]
        vals: list = [status]
        for col in ("error_message", "processed_at"):
            if col in kwargs:
                sets.append(f"{col} = ?")
                vals.append(kwargs[col])
        vals.extend([statement_id, user_id])
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE statements SET {', '.join(sets)}"
                " WHERE id = ? AND user_id = ?",
                vals,
            )

    _SENTINEL = object()

    def update_statement_details(
        self, statement_id: str, user_id: str,
        currency: str | None = _SENTINEL,
        statement_type: str | None = _SENTINEL,
        metadata: dict | None = _SENTINEL,
    ):
        sets: list[str] = []
        vals: list = []
        if currency is not self._SENTINEL:
            sets.append("currency = ?")
            vals.append(currency)
        if statement_type is not self._SENTINEL:
            sets.append("statement_type = ?")
            vals.append(statement_type)
        if metadata is not self._SENTINEL:
            sets.append("metadata = ?")
            vals.append(_dump_json(metadata))
        if not sets:
            return
        vals.extend([statement_id, user_id])
        with self._transaction() as conn:
            conn.execute(
                f"UPDATE statements SET {', '.join(sets)}"
                " WHERE id = ? AND user_id = ?",
                vals,
            )

    def delete_statement(self, statement_id: str, user_id: str) -> bool:
        """Delete a statement with its transactions and summary.

        Returns False when no statement with that id belongs to the user.
        """
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM transactions WHERE statement_id = ? AND user_id = ?",
                (statement_id, user_id),
            )
            conn.execute(
                "DELETE FROM statement_summaries WHERE statement_id = ? AND user_id = ?",
                (statement_id, user_id),
            )
            cur = conn.execute(
                "DELETE FROM statements WHERE id = ? AND user_id = ?",
                (statement_id, user_id),
            )
            return cur.rowcount == 1

    # ── Transactions ────────────────────────────────────────

    def replace_statement_transactions(
        self, statement_id: str, user_id: str, txns: list[Transaction],
    ):
        """Swap a statement's transaction set atomically.

        Existing rows for the statement are removed and the new batch
        inserted in one transaction, so either the whole batch is stored
        or the previous state is kept.
        """
        for t in txns:
            if t.statement_id != statement_id or t.user_id != user_id:
                raise ValueError(
                    f"Transaction {t.id} does not belong to statement {statement_id}"
                )
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM transactions WHERE statement_id = ? AND user_id = ?",
                (statement_id, user_id),
            )
            conn.executemany(
                "INSERT INTO transactions"
                " (id, statement_id, user_id, transaction_date, description,"
                "  amount, type, category, balance, currency, raw_data, created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                [
                    (t.id, t.statement_id, t.user_id, t.transaction_date,
                     t.description, t.amount, t.type, t.category, t.balance,
                     t.currency, t.raw_data, t.created_at)
                    for t in txns
                ],
            )

    def get_transactions_by_statement(
        self, statement_id: str, user_id: str
    ) -> list[Transaction]:
        rows = self._query(
            "SELECT * FROM transactions WHERE statement_id = ? AND user_id = ?"
            " ORDER BY transaction_date DESC, rowid",
            (statement_id, user_id),
        )
        return [self._row_to_transaction(r) for r in rows]

    def get_transactions_for_user(self, user_id: str) -> list[Transaction]:
        rows = self._query(
            "SELECT * FROM transactions WHERE user_id = ?"
            " ORDER BY transaction_date DESC, rowid",
            (user_id,),
        )
        return [self._row_to_transaction(r) for r in rows]

    # ── Statement summaries ─────────────────────────────────

    def upsert_statement_summary(self, summary: StatementSummary) -> StatementSummary:
        with self._transaction() as conn:
            conn.execute(
                "DELETE FROM statement_summaries WHERE statement_id = ? AND user_id = ?",
                (summary.statement_id, summary.user_id),
            )
            conn.execute(
                "INSERT INTO statement_summaries"
                " (id, statement_id, user_id, account_number, period_start,"
                "  period_end, opening_balance, total_paid_in, total_paid_out,"
                "  closing_balance, currency, created_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?)",
                (summary.id, summary.statement_id, summary.user_id,
                 summary.account_number, summary.period_start,
                 summary.period_end, summary.opening_balance,
                 summary.total_paid_in, summary.total_paid_out,
                 summary.closing_balance, summary.currency,
                 summary.created_at),
            )
        return summary

    def get_statement_summary(
        self, statement_id: str, user_id: str
    ) -> StatementSummary | None:
        row = self._query_one(
            "SELECT * FROM statement_summaries WHERE statement_id = ? AND user_id = ?",
            (statement_id, user_id),
        )
        return self._row_to_summary(row) if row else None

    # ── Insights cache ──────────────────────────────────────

    def get_latest_valid_insights(
        self, user_id: str, now_iso: str
    ) -> InsightsCacheEntry | None:
        """Newest cache row for the user whose expires_at is after now_iso."""
        row = self._query_one(
            "SELECT * FROM insights WHERE user_id = ? AND expires_at > ?"
            " ORDER BY generated_at DESC LIMIT 1",
            (user_id, now_iso),
        )
        return self._row_to_insights(row) if row else None

    def get_latest_insights(self, user_id: str) -> InsightsCacheEntry | None:
        """Newest cache row for the user regardless of expiry."""
        row = self._query_one(
            "SELECT * FROM insights WHERE user_id = ?"
            " ORDER BY generated_at DESC LIMIT 1",
            (user_id,),
        )
        return self._row_to_insights(row) if row else None

    def get_insights_entries(self, user_id: str) -> list[InsightsCacheEntry]:
        rows = self._query(
            "SELECT * FROM insights WHERE user_id = ? ORDER BY generated_at DESC",
            (user_id,),
        )
        return [self._row_to_insights(r) for r in rows]

    def insert_insights(self, entry: InsightsCacheEntry) -> InsightsCacheEntry:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO insights"
                " (id, user_id, insights_data, generated_at, expires_at)"
                " VALUES (?,?,?,?,?)",
                (entry.id, entry.user_id, _dump_json(entry.insights_data),
                 entry.generated_at, entry.expires_at),
            )
        return entry

    def replace_insights(self, entry: InsightsCacheEntry) -> InsightsCacheEntry:
        """Delete every cache row for the user and insert entry, atomically."""
        with self._transaction() as conn:
            conn.execute("DELETE FROM insights WHERE user_id = ?", (entry.user_id,))
            conn.execute(
                "INSERT INTO insights"
                " (id, user_id, insights_data, generated_at, expires_at)"
                " VALUES (?,?,?,?,?)",
                (entry.id, entry.user_id, _dump_json(entry.insights_data),
                 entry.generated_at, entry.expires_at),
            )
        return entry

    def delete_insights(self, user_id: str) -> int:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM insights WHERE user_id = ?", (user_id,))
            return cur.rowcount

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_statement(row: sqlite3.Row) -> Statement:
        return Statement(
            id=row["id"], user_id=row["user_id"],
            file_name=row["file_name"], storage_path=row["storage_path"],
            uploaded_at=row["uploaded_at"],
            processing_status=row["processing_status"],
            statement_type=row["statement_type"],
            currency=row["currency"],
            metadata=_load_json(row["metadata"]),
            error_message=row["error_message"],
            processed_at=row["processed_at"],
            processing_started_at=row["processing_started_at"],
        )

    @staticmethod
    def _row_to_transaction(row: sqlite3.Row) -> Transaction:
        return Transaction(
            id=row["id"], statement_id=row["statement_id"],
            user_id=row["user_id"],
            transaction_date=row["transaction_date"],
            description=row["description"], amount=row["amount"],
            type=row["type"], category=row["category"],
            balance=row["balance"], currency=row["currency"],
            raw_data=row["raw_data"], created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_summary(row: sqlite3.Row) -> StatementSummary:
        return StatementSummary(
            id=row["id"], statement_id=row["statement_id"],
            user_id=row["user_id"],
            account_number=row["account_number"],
            period_start=row["period_start"], period_end=row["period_end"],
            opening_balance=row["opening_balance"],
            total_paid_in=row["total_paid_in"],
            total_paid_out=row["total_paid_out"],
            closing_balance=row["closing_balance"],
            currency=row["currency"], created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_insights(row: sqlite3.Row) -> InsightsCacheEntry:
        return InsightsCacheEntry(
            id=row["id"], user_id=row["user_id"],
            insights_data=_load_json(row["insights_data"]),
            generated_at=row["generated_at"],
            expires_at=row["expires_at"],
        )


def _dump_json(value) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_json(text: str | None):
    if text is None:
        return None
    return json.loads(text)
