"""Insights cache: one live entry per user, valid for a fixed window.

Reads ignore expired rows, so "no entry" covers both never-generated and
expired. Regeneration replaces the user's rows in a single DB transaction
and is serialised per user, so two rapid triggers cause at most one
external call and an older response can never overwrite a newer one.
"""

from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timedelta
from typing import Callable

from spendlens.database.models import (
    InsightsCacheEntry,
    Transaction,
    to_iso,
    utc_now,
)
from spendlens.database.repository import Repository
from spendlens.extraction.currency import DEFAULT_BASELINE_CURRENCY
from spendlens.insights.client import InsightsClient, InsightsPayload

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


def primary_currency(
    transactions: list[Transaction | dict],
    baseline: str = DEFAULT_BASELINE_CURRENCY,
) -> str:
    """Most frequent currency tag; untagged transactions count as baseline.

    Ties go to the currency encountered first in iteration order.
    """
    counts: Counter[str] = Counter()
    for t in transactions:
        tag = t.currency if isinstance(t, Transaction) else t.get("currency")
        counts[tag or baseline] += 1

    best = baseline
    best_count = 0
    # Counter preserves first-insertion order, so strict > keeps the earliest
    for currency, count in counts.items():
        if count > best_count:
            best, best_count = currency, count
    return best


class InsightsCacheManager:
    def __init__(
        self,
        repo: Repository,
        client: InsightsClient,
        ttl: timedelta = DEFAULT_TTL,
        baseline_currency: str = DEFAULT_BASELINE_CURRENCY,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repo = repo
        self.client = client
        self.ttl = ttl
        self.baseline_currency = baseline_currency
        self.clock = clock
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.Lock())

    def get_valid_insights(self, user_id: str) -> InsightsCacheEntry | None:
        """Newest unexpired entry for the user, or None."""
        return self.repo.get_latest_valid_insights(user_id, to_iso(self.clock()))

    def regenerate(
        self,
        user_id: str,
        transactions: list[Transaction | dict] | None = None,
    ) -> InsightsCacheEntry:
        """Generate fresh insights and make them the user's only cache entry.

        When transactions is None all of the user's stored transactions are
        used. A caller that had to wait for a concurrent regeneration gets
        that result instead of triggering another external call.

        Raises:
            NoTransactionDataError: the user has no transactions.
            ExtractionError: the insights call failed; the cache is untouched.
        """
        requested_at = to_iso(self.clock())
        lock = self._user_lock(user_id)

        with lock:
            latest = self.repo.get_latest_insights(user_id)
            if latest is not None and latest.generated_at > requested_at:
                logger.info(
                    "Insights for user %s regenerated while waiting, reusing entry %s",
                    user_id, latest.id,
                )
                return latest

            if transactions is None:
                transactions = self.repo.get_transactions_for_user(user_id)

            currency = primary_currency(transactions, self.baseline_currency)
            logger.info(
                "Detected primary currency %s for insights generation", currency,
            )

            payload: InsightsPayload = self.client.generate_insights(transactions)
            payload.currency = currency

            now = self.clock()
            entry = InsightsCacheEntry(
                user_id=user_id,
                insights_data=payload.to_dict(),
                generated_at=to_iso(now),
                expires_at=to_iso(now + self.ttl),
            )
            self.repo.replace_insights(entry)
            logger.info(
                "Stored insights for user %s (expires %s)", user_id, entry.expires_at,
            )
            return entry

    def get_or_generate(self, user_id: str) -> InsightsCacheEntry | None:
        """Cached insights if valid; otherwise regenerate when the user has
        transactions. Returns None for a user with no transactions.
        """
        cached = self.get_valid_insights(user_id)
        if cached is not None:
            return cached

        transactions = self.repo.get_transactions_for_user(user_id)
        if not transactions:
            return None
        return self.regenerate(user_id, transactions)
