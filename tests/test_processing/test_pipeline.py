"""Tests for spendlens/processing/pipeline.py — upload, processing, deletion.

Covers:
- upload_statement() storage/record/dispatch ordering and failure cleanup
- process_statement() happy path, currency override, card metadata
- failure at each step recorded as "error" and never raised
- retry semantics (no duplicate transactions, terminal processed)
- delete_statement() cascade and user scoping
"""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from spendlens.database.models import to_iso
from spendlens.database.repository import MIGRATIONS_DIR, Repository
from spendlens.errors import (
    ExtractionServiceError,
    InvalidTransitionError,
    StatementInsertError,
    StatementNotFoundError,
    StorageWriteError,
    UnsupportedDocumentError,
)
from spendlens.extraction.client import ExtractionClient
from spendlens.extraction.currency import CurrencyPolicy
from spendlens.processing.dispatcher import PipelineDispatcher
from spendlens.processing.pipeline import DEFAULT_STALE_AFTER, StatementPipeline
from spendlens.storage.documents import LocalDocumentStore

PDF = b"%PDF-1.4\n...\n%%EOF\n"
NOW = datetime(2026, 3, 31, 9, 30, tzinfo=timezone.utc)


def _response(currency="USD", statement_type="bank", transactions=None, **summary) -> str:
    if transactions is None:
        transactions = [
            {"date": "2026-03-02", "description": "KROGER", "amount": -42.1,
             "category": "Groceries", "balance": 957.9},
            {"date": "2026-03-15", "description": "PAYROLL", "amount": 2500,
             "category": "Income", "balance": 3457.9},
            {"date": "2026-03-20", "description": "NETFLIX", "amount": -15.49,
             "category": "Entertainment"},
        ]
    return json.dumps({
        "summary": {
            "accountNumber": "****9876",
            "period": {"startDate": "2026-03-01", "endDate": "2026-03-31"},
            "openingBalance": 1000,
            "closingBalance": 3442.41,
            "currency": currency,
            "statementType": statement_type,
            **summary,
        },
        "transactions": transactions,
    })


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def store(tmp_path):
    return LocalDocumentStore(tmp_path / "store")


@pytest.fixture
def document_fn():
    return MagicMock(return_value=_response())


@pytest.fixture
def pipeline(repo, store, document_fn):
    return StatementPipeline(
        repo=repo,
        store=store,
        extraction=ExtractionClient(document_fn),
        currency_policy=CurrencyPolicy(),
        clock=lambda: NOW,
    )


# ── Upload ───────────────────────────────────────────────


class TestUpload:
    def test_stores_and_records(self, pipeline, repo, store):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)

        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "uploaded"
        assert found.file_name == "march.pdf"
        assert found.uploaded_at.startswith("2026-03-31T09:30:00")
        assert store.get(stmt.storage_path) == PDF

    def test_storage_path_layout(self, pipeline):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        epoch_ms = int(NOW.timestamp() * 1000)
        assert stmt.storage_path == f"statements/u1/{epoch_ms}_{stmt.id[:8]}_march.pdf"

    def test_same_file_same_millisecond(self, pipeline, repo):
        first = pipeline.upload_statement("u1", "march.pdf", PDF)
        second = pipeline.upload_statement("u1", "march.pdf", PDF)
        assert first.storage_path != second.storage_path
        assert len(repo.list_statements("u1")) == 2

    def test_unsupported_format(self, pipeline, repo, store):
        with pytest.raises(UnsupportedDocumentError):
            pipeline.upload_statement("u1", "export.csv", b"a,b\n")
        assert repo.list_statements("u1") == []
        assert not store.root.exists()

    def test_storage_failure_records_nothing(self, repo, document_fn):
        store = MagicMock()
        store.put.side_effect = OSError("disk full")
        pipeline = StatementPipeline(repo, store, ExtractionClient(document_fn))

        with pytest.raises(StorageWriteError, match="disk full"):
            pipeline.upload_statement("u1", "march.pdf", PDF)
        assert repo.list_statements("u1") == []

    def test_insert_failure_removes_document(self, pipeline, repo, store):
        with patch.object(
            repo, "insert_statement", side_effect=sqlite3.OperationalError("locked"),
        ):
            with pytest.raises(StatementInsertError):
                pipeline.upload_statement("u1", "march.pdf", PDF)

        # No orphaned bytes left behind
        assert list((store.root / "statements" / "u1").iterdir()) == []

    def test_dispatches_after_record(self, pipeline, repo):
        dispatcher = MagicMock()

        def check_recorded(statement_id, user_id):
            assert repo.get_statement(statement_id, user_id) is not None

        dispatcher.submit.side_effect = check_recorded
        pipeline.dispatcher = dispatcher

        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        dispatcher.submit.assert_called_once_with(stmt.id, "u1")

    def test_dispatcher_shut_down_keeps_upload(self, pipeline, repo):
        dispatcher = PipelineDispatcher(pipeline)
        dispatcher.shutdown()
        pipeline.dispatcher = dispatcher

        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)

        assert repo.get_statement(stmt.id, "u1").processing_status == "uploaded"
        assert not dispatcher.is_active(stmt.id)

    def test_image_upload(self, pipeline, document_fn):
        stmt = pipeline.upload_statement("u1", "receipt.PNG", b"\x89PNG....")
        pipeline.process_statement(stmt.id, "u1")
        assert document_fn.call_args[0][3] == "image/png"


# ── Processing ───────────────────────────────────────────


class TestProcess:
    def test_happy_path(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "processed"
        assert result.transaction_count == 3
        assert result.currency == "USD"

        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "processed"
        assert found.currency == "USD"
        assert found.statement_type == "bank"
        assert found.error_message is None
        assert found.processed_at is not None

        txns = repo.get_transactions_by_statement(stmt.id, "u1")
        assert len(txns) == 3
        by_desc = {t.description: t for t in txns}
        assert by_desc["KROGER"].type == "debit"
        assert by_desc["PAYROLL"].type == "credit"
        assert by_desc["NETFLIX"].balance is None
        assert {t.currency for t in txns} == {"USD"}

        assert document_fn.call_args[0][2] == PDF
        assert document_fn.call_args[0][3] == "application/pdf"

    def test_summary_persisted(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")

        summary = pipeline.get_statement_summary(stmt.id, "u1")
        assert summary.account_number == "****9876"
        assert summary.period_start == "2026-03-01"
        assert summary.opening_balance == 1000
        assert summary.currency == "USD"

    def test_japanese_file_name_forces_jpy(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "三井住友_2026年3月.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")

        assert result.currency == "JPY"
        assert repo.get_statement(stmt.id, "u1").currency == "JPY"
        txns = repo.get_transactions_by_statement(stmt.id, "u1")
        assert {t.currency for t in txns} == {"JPY"}

    def test_summary_currency_used(self, pipeline, repo, document_fn):
        document_fn.return_value = _response(currency="eur")
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        assert pipeline.process_statement(stmt.id, "u1").currency == "EUR"

    def test_card_bill_total_in_metadata(self, pipeline, repo, document_fn):
        document_fn.return_value = _response(
            currency="JPY",
            statement_type="credit_card",
            totalBillAmount=5000,
            transactions=[
                {"date": "2026-03-02", "description": "セブン-イレブン", "amount": -3000},
                {"date": "2026-03-03", "description": "AMAZON", "amount": -1500},
            ],
        )
        stmt = pipeline.upload_statement("u1", "card.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")

        found = repo.get_statement(stmt.id, "u1")
        assert found.statement_type == "credit_card"
        assert found.metadata["total_bill_amount"] == 5000
        assert found.metadata["bill_difference"] == 500
        # Informational only: no extra transaction for the bill
        assert len(repo.get_transactions_by_statement(stmt.id, "u1")) == 2

    def test_empty_statement_is_processed(self, pipeline, repo, document_fn):
        document_fn.return_value = _response(transactions=[])
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")
        assert result.status == "processed"
        assert result.transaction_count == 0


class TestProcessFailures:
    def test_service_error_recorded(self, pipeline, repo, document_fn):
        document_fn.side_effect = ExtractionServiceError("overloaded", status=529)
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)

        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        assert "status 529" in result.error_message
        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "error"
        assert "status 529" in found.error_message
        assert repo.get_transactions_by_statement(stmt.id, "u1") == []

    def test_unparseable_response(self, pipeline, repo, document_fn):
        document_fn.return_value = "I'm sorry, I can't help with that."
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")
        assert result.status == "error"
        assert "No JSON object" in result.error_message

    def test_empty_response(self, pipeline, repo, document_fn):
        document_fn.return_value = ""
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        assert pipeline.process_statement(stmt.id, "u1").status == "error"

    def test_malformed_transaction_inserts_nothing(self, pipeline, repo, document_fn):
        document_fn.return_value = _response(
            currency="GBP",
            transactions=[
                {"date": "2026-03-02", "description": "OK", "amount": -1},
                {"date": "someday", "description": "BAD", "amount": -2},
            ],
        )
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        assert "#1" in result.error_message
        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "error"
        # Currency was persisted before the failing step
        assert found.currency == "GBP"
        assert repo.get_transactions_by_statement(stmt.id, "u1") == []

    def test_insert_failure(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        with patch.object(
            repo, "replace_statement_transactions",
            side_effect=sqlite3.IntegrityError("constraint failed"),
        ):
            result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        assert "Could not store 3 transaction(s)" in result.error_message
        assert repo.get_statement(stmt.id, "u1").processing_status == "error"

    def test_missing_document(self, pipeline, repo, store, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        store.delete(stmt.storage_path)

        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        assert "Could not read stored document" in result.error_message
        document_fn.assert_not_called()

    def test_unexpected_exception_recorded(self, pipeline, repo, document_fn):
        document_fn.side_effect = RuntimeError()
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u1")
        assert result.status == "error"
        assert result.error_message == "RuntimeError"

    def test_database_error_before_claim_returned(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)

        with patch.object(
            repo, "get_statement",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        assert "database is locked" in result.error_message
        document_fn.assert_not_called()

    def test_database_error_during_claim_returned(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)

        with patch.object(
            repo, "claim_statement",
            side_effect=sqlite3.OperationalError("database is locked"),
        ):
            result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "error"
        document_fn.assert_not_called()
        assert repo.get_statement(stmt.id, "u1").processing_status == "uploaded"


class TestRetry:
    def test_retry_after_error(self, pipeline, repo, document_fn):
        document_fn.side_effect = ExtractionServiceError("timeout")
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")

        document_fn.side_effect = None
        result = pipeline.retry_statement(stmt.id, "u1")

        assert result.status == "processed"
        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "processed"
        assert found.error_message is None

    def test_retry_never_duplicates(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")
        # Force back to error as if a later step had failed
        repo.update_statement_status(stmt.id, "u1", "error", error_message="x")

        pipeline.retry_statement(stmt.id, "u1")

        assert len(repo.get_transactions_by_statement(stmt.id, "u1")) == 3

    def test_processed_is_terminal(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")

        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "skipped"
        assert document_fn.call_count == 1
        assert repo.get_statement(stmt.id, "u1").processing_status == "processed"

    def test_active_run_not_started_twice(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        repo.claim_statement(
            stmt.id, "u1", ("uploaded",), "processing", started_at=to_iso(NOW),
        )

        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "skipped"
        assert "processing" in result.error_message
        document_fn.assert_not_called()

    def test_unknown_statement(self, pipeline):
        result = pipeline.process_statement("missing", "u1")
        assert result.status == "skipped"

    def test_other_users_statement(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        result = pipeline.process_statement(stmt.id, "u2")
        assert result.status == "skipped"
        document_fn.assert_not_called()
        assert repo.get_statement(stmt.id, "u1").processing_status == "uploaded"


class TestAbandonedRuns:
    """A run that died after claiming leaves the row in "processing"."""

    def _abandon(self, repo, stmt, started):
        repo.claim_statement(
            stmt.id, "u1", ("uploaded",), "processing", started_at=to_iso(started),
        )

    def test_stale_claim_is_retried(self, pipeline, repo, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        self._abandon(repo, stmt, NOW - DEFAULT_STALE_AFTER - timedelta(minutes=1))

        result = pipeline.process_statement(stmt.id, "u1")

        assert result.status == "processed"
        assert document_fn.call_count == 1
        found = repo.get_statement(stmt.id, "u1")
        assert found.processing_status == "processed"
        assert found.processing_started_at == to_iso(NOW)

    def test_retry_and_delete_after_clock_passes_lease(self, repo, store, document_fn):
        now = [NOW]
        pipeline = StatementPipeline(
            repo=repo, store=store,
            extraction=ExtractionClient(document_fn),
            clock=lambda: now[0],
            stale_after=timedelta(minutes=10),
        )
        first = pipeline.upload_statement("u1", "march.pdf", PDF)
        second = pipeline.upload_statement("u1", "april.pdf", PDF)
        self._abandon(repo, first, NOW)
        self._abandon(repo, second, NOW)

        assert pipeline.process_statement(first.id, "u1").status == "skipped"
        with pytest.raises(InvalidTransitionError):
            pipeline.delete_statement(second.id, "u1")

        now[0] = NOW + timedelta(minutes=11)

        assert pipeline.process_statement(first.id, "u1").status == "processed"
        pipeline.delete_statement(second.id, "u1")
        assert repo.get_statement(second.id, "u1") is None
        assert not store.exists(second.storage_path)

    def test_fresh_claim_still_protected(self, pipeline, repo, store, document_fn):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        self._abandon(repo, stmt, NOW - timedelta(minutes=5))

        assert pipeline.process_statement(stmt.id, "u1").status == "skipped"
        with pytest.raises(InvalidTransitionError):
            pipeline.delete_statement(stmt.id, "u1")
        document_fn.assert_not_called()
        assert store.exists(stmt.storage_path)

    def test_unstamped_claim_is_stale(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        repo.update_statement_status(stmt.id, "u1", "processing")

        pipeline.delete_statement(stmt.id, "u1")

        assert repo.get_statement(stmt.id, "u1") is None


# ── Deletion and reads ───────────────────────────────────


class TestDelete:
    def test_cascades(self, pipeline, repo, store):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")

        deleted = pipeline.delete_statement(stmt.id, "u1")

        assert deleted.id == stmt.id
        assert repo.get_statement(stmt.id, "u1") is None
        assert repo.get_transactions_by_statement(stmt.id, "u1") == []
        assert repo.get_statement_summary(stmt.id, "u1") is None
        assert not store.exists(stmt.storage_path)

    def test_second_delete_is_not_found(self, pipeline):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.delete_statement(stmt.id, "u1")
        with pytest.raises(StatementNotFoundError):
            pipeline.delete_statement(stmt.id, "u1")

    def test_other_user_cannot_delete(self, pipeline, repo):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        with pytest.raises(StatementNotFoundError):
            pipeline.delete_statement(stmt.id, "u2")
        assert repo.get_statement(stmt.id, "u1") is not None

    def test_refused_while_processing(self, pipeline, repo, store):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        repo.claim_statement(
            stmt.id, "u1", ("uploaded",), "processing", started_at=to_iso(NOW),
        )

        with pytest.raises(InvalidTransitionError):
            pipeline.delete_statement(stmt.id, "u1")
        assert store.exists(stmt.storage_path)

    def test_missing_document_tolerated(self, pipeline, repo, store):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        store.delete(stmt.storage_path)
        pipeline.delete_statement(stmt.id, "u1")
        assert repo.get_statement(stmt.id, "u1") is None

    def test_error_statement_can_be_deleted(self, pipeline, repo, document_fn):
        document_fn.side_effect = ExtractionServiceError("down")
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")
        pipeline.delete_statement(stmt.id, "u1")
        assert pipeline.list_statements("u1") == []


class TestReads:
    def test_get_statement_missing(self, pipeline):
        with pytest.raises(StatementNotFoundError):
            pipeline.get_statement("missing", "u1")

    def test_user_transactions(self, pipeline):
        for name in ("jan.pdf", "feb.pdf"):
            stmt = pipeline.upload_statement("u1", name, PDF)
            pipeline.process_statement(stmt.id, "u1")
        assert len(pipeline.get_user_transactions("u1")) == 6
        assert pipeline.get_user_transactions("u2") == []

    def test_statement_transactions(self, pipeline):
        stmt = pipeline.upload_statement("u1", "march.pdf", PDF)
        pipeline.process_statement(stmt.id, "u1")
        txns = pipeline.get_statement_transactions(stmt.id, "u1")
        assert [t.transaction_date for t in txns] == [
            "2026-03-20", "2026-03-15", "2026-03-02",
        ]
