"""Background dispatch of pipeline runs.

Uploads hand statement ids to a PipelineDispatcher, which runs
process_statement() on a small thread pool. A statement id that is already
queued or running is not submitted twice; the pipeline's own claim check
covers the cross-process case.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from spendlens.processing.pipeline import ProcessResult, StatementPipeline

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 2


class PipelineDispatcher:
    def __init__(self, pipeline: StatementPipeline, max_workers: int = DEFAULT_MAX_WORKERS):
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="spendlens-pipeline",
        )
        self._active: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, statement_id: str, user_id: str) -> Future | None:
        """Queue a run for statement_id. Returns None if one is already pending."""
        with self._lock:
            if statement_id in self._active:
                logger.info("Statement %s already queued, not resubmitting", statement_id)
                return None
            future = self._executor.submit(self._run, statement_id, user_id)
            self._active[statement_id] = future

        logger.debug("Dispatched statement %s", statement_id)
        return future

    def _run(self, statement_id: str, user_id: str) -> ProcessResult:
        try:
            return self.pipeline.process_statement(statement_id, user_id)
        finally:
            self._release(statement_id)

    def _release(self, statement_id: str) -> None:
        with self._lock:
            self._active.pop(statement_id, None)

    def is_active(self, statement_id: str) -> bool:
        with self._lock:
            return statement_id in self._active

    def wait(self, timeout: float | None = None) -> None:
        """Block until every run submitted so far has finished."""
        with self._lock:
            pending = list(self._active.values())
        if pending:
            wait_futures(pending, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
