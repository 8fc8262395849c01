"""Statement pipeline: upload → processing → processed | error.

Orchestrates one statement from stored document to categorized
transactions:
  store → record → claim → extract → currency → normalize → insert → done

process_statement() never raises. Any failure after a statement has been
claimed is logged, recorded on the row (status "error" plus the error
message) and returned in ProcessResult. The row itself is kept so the run
can be inspected and retried. A database error while claiming leaves the
row untouched and is only returned.

Each claim is stamped with its start time. A claim older than stale_after
is taken to belong to a run that died (interrupted CLI, crashed daemon) and
may be taken over by a new run or cleared by a delete.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Callable
from uuid import uuid4

from spendlens.database.models import (
    Statement,
    StatementSummary,
    Transaction,
    to_iso,
    utc_now,
)
from spendlens.database.repository import Repository
from spendlens.errors import (
    InvalidTransitionError,
    StatementInsertError,
    StatementNotFoundError,
    StorageReadError,
    StorageWriteError,
    TransactionInsertError,
    UnsupportedDocumentError,
)
from spendlens.extraction.client import ExtractionClient
from spendlens.extraction.currency import CurrencyPolicy, infer_currency
from spendlens.extraction.normalizer import (
    build_statement_metadata,
    build_statement_summary,
    normalize,
    normalize_statement_type,
)
from spendlens.processing.states import (
    ERROR,
    PROCESSED,
    PROCESSING,
    RUNNABLE,
    check_transition,
)
from spendlens.storage.documents import (
    DocumentStore,
    build_storage_path,
    media_type_for,
)

if TYPE_CHECKING:
    from spendlens.processing.dispatcher import PipelineDispatcher

logger = logging.getLogger(__name__)

# A claim older than this is treated as abandoned (the run died mid-way)
DEFAULT_STALE_AFTER = timedelta(minutes=15)


@dataclass
class ProcessResult:
    """Outcome of one pipeline run."""
    statement_id: str
    status: str  # "processed", "error", "skipped"
    transaction_count: int = 0
    currency: str | None = None
    error_message: str | None = None


class StatementPipeline:
    """Own the lifecycle of statement records.

    Args:
        repo: Database repository.
        store: Document store holding the uploaded bytes.
        extraction: Client that turns a document into transactions.
        currency_policy: Currency inference settings.
        dispatcher: Optional PipelineDispatcher. When set, upload_statement()
            hands the new statement to it; otherwise the caller runs
            process_statement() itself.
        stale_after: Age after which a "processing" claim is considered
            abandoned, so the statement can be retried or deleted. Must be
            longer than any single extraction call.
    """

    def __init__(
        self,
        repo: Repository,
        store: DocumentStore,
        extraction: ExtractionClient,
        currency_policy: CurrencyPolicy = CurrencyPolicy(),
        dispatcher: PipelineDispatcher | None = None,
        clock: Callable[[], datetime] = utc_now,
        stale_after: timedelta = DEFAULT_STALE_AFTER,
    ):
        self.repo = repo
        self.store = store
        self.extraction = extraction
        self.currency_policy = currency_policy
        self.dispatcher = dispatcher
        self.clock = clock
        self.stale_after = stale_after

    # ── Upload ───────────────────────────────────────────────

    def upload_statement(self, user_id: str, file_name: str, data: bytes) -> Statement:
        """Store a document, record it as "uploaded" and dispatch processing.

        Raises:
            UnsupportedDocumentError: file type is not accepted.
            StorageWriteError: the bytes could not be stored; nothing recorded.
            StatementInsertError: the row could not be created; the stored
                document has been removed again.
        """
        if media_type_for(file_name) is None:
            raise UnsupportedDocumentError(file_name)

        now = self.clock()
        statement_id = str(uuid4())
        storage_path = build_storage_path(
            user_id, file_name, int(now.timestamp() * 1000), statement_id[:8],
        )

        try:
            self.store.put(storage_path, data)
        except (OSError, ValueError) as e:
            logger.error("Storing %s failed: %s", file_name, e)
            raise StorageWriteError(f"Could not store {file_name}: {e}") from e

        stmt = Statement(
            id=statement_id,
            user_id=user_id,
            file_name=file_name,
            storage_path=storage_path,
            uploaded_at=to_iso(now),
        )
        try:
            self.repo.insert_statement(stmt)
        except sqlite3.Error as e:
            logger.error("Recording statement for %s failed: %s", file_name, e)
            self._discard_document(storage_path)
            raise StatementInsertError(
                f"Could not record statement for {file_name}: {e}"
            ) from e

        logger.info("Uploaded %s as statement %s", file_name, stmt.id)

        if self.dispatcher is not None:
            try:
                self.dispatcher.submit(stmt.id, user_id)
            except RuntimeError:
                # Dispatcher already shut down; the upload itself stands
                logger.exception(
                    "Could not dispatch statement %s; it stays uploaded", stmt.id,
                )

        return stmt

    def _discard_document(self, storage_path: str) -> None:
        try:
            self.store.delete(storage_path)
        except (OSError, ValueError):
            logger.exception("Could not remove orphaned document %s", storage_path)

    # ── Processing ───────────────────────────────────────────

    def process_statement(self, statement_id: str, user_id: str) -> ProcessResult:
        """Run extraction for one statement.

        Starts only from "uploaded" or "error"; a statement that is already
        processing (another run is active) or processed is skipped without
        any change. A "processing" claim older than stale_after belongs to a
        run that died and is taken over.
        """
        now = self.clock()
        try:
            stmt = self.repo.get_statement(statement_id, user_id)
            if stmt is None:
                logger.warning("Statement %s not found for processing", statement_id)
                return ProcessResult(
                    statement_id=statement_id, status="skipped",
                    error_message="Statement not found",
                )

            claimed = self.repo.claim_statement(
                statement_id, user_id, RUNNABLE, PROCESSING,
                started_at=to_iso(now),
                stale_before=to_iso(now - self.stale_after),
            )
            if not claimed:
                current = self.repo.get_statement(statement_id, user_id)
                status = current.processing_status if current else "missing"
                logger.info(
                    "Statement %s not started: status is '%s'", statement_id, status,
                )
                return ProcessResult(
                    statement_id=statement_id, status="skipped",
                    error_message=f"Statement is {status}",
                )
        except sqlite3.Error as e:
            logger.exception("Could not claim statement %s", statement_id)
            return ProcessResult(
                statement_id=statement_id, status=ERROR,
                error_message=f"Database error: {e}",
            )

        if stmt.processing_status == PROCESSING:
            logger.warning(
                "Taking over abandoned run of statement %s (claimed %s)",
                statement_id, stmt.processing_started_at,
            )

        logger.info("Processing statement %s (%s)", statement_id, stmt.file_name)
        try:
            txns, currency = self._run(stmt)
        except Exception as e:
            logger.exception("Processing failed for statement %s", statement_id)
            self._mark_error(statement_id, user_id, str(e) or type(e).__name__)
            return ProcessResult(
                statement_id=statement_id, status=ERROR,
                error_message=str(e) or type(e).__name__,
            )

        logger.info(
            "Statement %s processed: %d transaction(s) in %s",
            statement_id, len(txns), currency,
        )
        return ProcessResult(
            statement_id=statement_id, status=PROCESSED,
            transaction_count=len(txns), currency=currency,
        )

    def retry_statement(self, statement_id: str, user_id: str) -> ProcessResult:
        """Re-run a statement that ended in "error"."""
        return self.process_statement(statement_id, user_id)

    def _run(self, stmt: Statement) -> tuple[list[Transaction], str]:
        try:
            data = self.store.get(stmt.storage_path)
        except (OSError, ValueError) as e:
            raise StorageReadError(
                f"Could not read stored document {stmt.storage_path}: {e}"
            ) from e

        media_type = media_type_for(stmt.file_name) or "application/pdf"
        extraction = self.extraction.extract_statement(data, media_type)

        currency = infer_currency(
            extraction.summary.currency, stmt.file_name, self.currency_policy,
        )
        statement_type = normalize_statement_type(extraction.summary.statement_type)

        # Persist what is known so far, visible even if a later step fails
        self.repo.update_statement_details(
            stmt.id, stmt.user_id,
            currency=currency, statement_type=statement_type,
        )
        self.repo.upsert_statement_summary(build_statement_summary(
            extraction.summary, stmt.id, stmt.user_id, currency,
        ))

        txns = normalize(extraction.transactions, stmt.id, stmt.user_id, currency)

        try:
            self.repo.replace_statement_transactions(stmt.id, stmt.user_id, txns)
        except sqlite3.Error as e:
            raise TransactionInsertError(
                f"Could not store {len(txns)} transaction(s): {e}"
            ) from e

        metadata = build_statement_metadata(extraction.summary, statement_type, txns)
        if metadata is not None:
            merged = dict(stmt.metadata or {})
            merged.update(metadata)
            self.repo.update_statement_details(stmt.id, stmt.user_id, metadata=merged)

        check_transition(PROCESSING, PROCESSED)
        self.repo.update_statement_status(
            stmt.id, stmt.user_id, PROCESSED,
            processed_at=to_iso(self.clock()), error_message=None,
        )
        return txns, currency

    def _mark_error(self, statement_id: str, user_id: str, message: str) -> None:
        check_transition(PROCESSING, ERROR)
        try:
            self.repo.update_statement_status(
                statement_id, user_id, ERROR, error_message=message,
            )
        except Exception:
            logger.exception("Could not record error status for %s", statement_id)

    # ── Deletion ─────────────────────────────────────────────

    def delete_statement(self, statement_id: str, user_id: str) -> Statement:
        """Delete a statement, its transactions and its stored document.

        Raises:
            StatementNotFoundError: no such statement for this user.
            InvalidTransitionError: the statement is being processed and
                its claim is not yet stale.
        """
        stmt = self.repo.get_statement(statement_id, user_id)
        if stmt is None:
            raise StatementNotFoundError(statement_id)
        if stmt.processing_status == PROCESSING:
            if not self._claim_is_stale(stmt):
                raise InvalidTransitionError(PROCESSING, "deleted")
            logger.warning(
                "Deleting statement %s with abandoned run (claimed %s)",
                statement_id, stmt.processing_started_at,
            )

        if not self.repo.delete_statement(statement_id, user_id):
            raise StatementNotFoundError(statement_id)

        try:
            if not self.store.delete(stmt.storage_path):
                logger.warning(
                    "Stored document %s was already missing", stmt.storage_path,
                )
        except (OSError, ValueError):
            logger.exception(
                "Statement %s deleted but its document could not be removed",
                statement_id,
            )

        logger.info("Deleted statement %s (%s)", statement_id, stmt.file_name)
        return stmt

    def _claim_is_stale(self, stmt: Statement) -> bool:
        if stmt.processing_started_at is None:
            return True
        return stmt.processing_started_at < to_iso(self.clock() - self.stale_after)

    # ── Reads ────────────────────────────────────────────────

    def list_statements(self, user_id: str) -> list[Statement]:
        return self.repo.list_statements(user_id)

    def get_statement(self, statement_id: str, user_id: str) -> Statement:
        stmt = self.repo.get_statement(statement_id, user_id)
        if stmt is None:
            raise StatementNotFoundError(statement_id)
        return stmt

    def get_statement_transactions(
        self, statement_id: str, user_id: str
    ) -> list[Transaction]:
        return self.repo.get_transactions_by_statement(statement_id, user_id)

    def get_statement_summary(
        self, statement_id: str, user_id: str
    ) -> StatementSummary | None:
        return self.repo.get_statement_summary(statement_id, user_id)

    def get_user_transactions(self, user_id: str) -> list[Transaction]:
        return self.repo.get_transactions_for_user(user_id)
