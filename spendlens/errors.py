"""Exception taxonomy for the statement pipeline and insights cache.

Pipeline errors are caught at the pipeline boundary and recorded on the
statement row. Insights errors propagate to whoever asked for insights.
"""

from __future__ import annotations


class SpendLensError(Exception):
    """Base class for all SpendLens errors."""


# ── Upload / storage ─────────────────────────────────────


class UnsupportedDocumentError(SpendLensError):
    """Raised when an uploaded file is not a supported document format."""

    def __init__(self, file_name: str):
        self.file_name = file_name
        super().__init__(f"Unsupported document format: {file_name}")


class StorageWriteError(SpendLensError):
    """Document bytes could not be persisted. No statement row exists."""


class StorageReadError(SpendLensError):
    """Stored document could not be read back for processing."""


class StatementInsertError(SpendLensError):
    """Statement row could not be created after a successful storage write."""


class StatementNotFoundError(SpendLensError):
    def __init__(self, statement_id: str):
        self.statement_id = statement_id
        super().__init__(f"Statement not found: {statement_id}")


class InvalidTransitionError(SpendLensError):
    """Raised when a statement status change is not allowed."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot move statement from '{current}' to '{target}'")


# ── Extraction ───────────────────────────────────────────


class ExtractionError(SpendLensError):
    """Base class for failures talking to the inference service."""


class ExtractionServiceError(ExtractionError):
    """The inference service call itself failed (non-success status, timeout)."""

    def __init__(self, message: str, status: int | None = None):
        self.status = status
        if status is not None:
            message = f"{message} (status {status})"
        super().__init__(message)


class ExtractionEmptyResponseError(ExtractionError):
    """The inference service returned no text at all."""


class ExtractionFormatError(ExtractionError):
    """The response did not contain a valid JSON object of the expected shape."""


# ── Transactions ─────────────────────────────────────────


class MalformedTransactionError(SpendLensError):
    """One or more extracted transactions failed shape validation."""

    def __init__(self, indices: list[int], reasons: dict[int, str] | None = None):
        self.indices = list(indices)
        self.reasons = dict(reasons or {})
        detail = ", ".join(
            f"#{i}: {self.reasons[i]}" if i in self.reasons else f"#{i}"
            for i in self.indices
        )
        super().__init__(f"Malformed extracted transaction(s): {detail}")


class TransactionInsertError(SpendLensError):
    """Bulk insert of a statement's transactions failed. Nothing was written."""


# ── Insights ─────────────────────────────────────────────


class NoTransactionDataError(SpendLensError):
    """Insights were requested for an empty transaction set."""

    def __init__(self, message: str = "No transaction data provided"):
        super().__init__(message)
