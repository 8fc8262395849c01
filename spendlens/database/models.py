"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly.
All primary keys are TEXT (UUID strings generated via uuid4()). Timestamps
are ISO-8601 strings in UTC. JSON columns (metadata, insights_data) are
dicts here and serialized by the repository.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4


def _new_id() -> str:
    return str(uuid4())


def to_iso(dt: datetime) -> str:
    """Render a datetime as a sortable UTC ISO string (fixed precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _now() -> str:
    return to_iso(utc_now())


@dataclass
class Statement:
    user_id: str
    file_name: str
    storage_path: str
    id: str = field(default_factory=_new_id)
    uploaded_at: str = field(default_factory=_now)
    processing_status: str = "uploaded"
    statement_type: str | None = None
    currency: str | None = None
    metadata: dict | None = None
    error_message: str | None = None
    processed_at: str | None = None
    processing_started_at: str | None = None


@dataclass
class Transaction:
    statement_id: str
    user_id: str
    transaction_date: str
    description: str
    amount: float
    type: str
    id: str = field(default_factory=_new_id)
    category: str | None = None
    balance: float | None = None
    currency: str | None = None
    raw_data: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class StatementSummary:
    statement_id: str
    user_id: str
    id: str = field(default_factory=_new_id)
    account_number: str | None = None
    period_start: str | None = None
    period_end: str | None = None
    opening_balance: float | None = None
    total_paid_in: float | None = None
    total_paid_out: float | None = None
    closing_balance: float | None = None
    currency: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class InsightsCacheEntry:
    user_id: str
    insights_data: dict
    generated_at: str
    expires_at: str
    id: str = field(default_factory=_new_id)
