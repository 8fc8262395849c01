"""File watcher: PollingObserver feeding dropped statements to the pipeline.

Watches a drop folder for new statement documents (.pdf and images), waits
for file stability (size+mtime stable), validates file completeness, then
uploads the document for the configured user:
  detect → stable → validate → upload → (dispatcher) process

Uses PollingObserver rather than native events so the watcher also works on
network shares and container volumes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEventHandler

from spendlens.errors import SpendLensError
from spendlens.storage.documents import SUPPORTED_MEDIA_TYPES

if TYPE_CHECKING:
    from spendlens.processing.pipeline import StatementPipeline

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = set(SUPPORTED_MEDIA_TYPES)

DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0
DEFAULT_POLL_INTERVAL = 30

# PDF trailer marker; searched for in the last few KB of the file
_PDF_EOF = b"%%EOF"
_PDF_TAIL_BYTES = 2048


@dataclass
class WatchResult:
    """Result of handing one dropped file to the pipeline."""
    file_name: str
    status: str  # "uploaded", "error"
    statement_id: str | None = None
    error_message: str | None = None


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            if time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """Post-stability validation: ensure file content is complete.

    - PDF files: must contain the %%EOF trailer near the end
    - Images: must be non-empty

    Raises:
        FileStabilityError: If file appears incomplete.
    """
    size = filepath.stat().st_size
    if size == 0:
        raise FileStabilityError(f"Empty file: {filepath}")

    if filepath.suffix.lower() == ".pdf":
        with open(filepath, "rb") as f:
            f.seek(max(0, size - _PDF_TAIL_BYTES))
            tail = f.read()
        if _PDF_EOF not in tail:
            raise FileStabilityError(
                f"PDF file missing %%EOF trailer: {filepath}"
            )


# ── File watcher ─────────────────────────────────────────


class StatementWatcher(FileSystemEventHandler):
    """Watch a drop folder for new statements using PollingObserver.

    Args:
        watch_dir: Directory to watch for new files.
        pipeline: StatementPipeline that uploads (and dispatches) documents.
        user_id: Owner of every statement dropped into watch_dir.
        stability_seconds: Seconds of stability before processing.
        check_interval: Seconds between stability checks.
        poll_interval: Seconds between directory scans.
    """

    def __init__(
        self,
        watch_dir: Path,
        pipeline: StatementPipeline,
        user_id: str,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        poll_interval: int = DEFAULT_POLL_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.user_id = user_id
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self.poll_interval = poll_interval
        self._observer = None

    def start(self) -> None:
        """Start watching the drop folder."""
        from watchdog.observers.polling import PollingObserver

        if not self.watch_dir.exists():
            self.watch_dir.mkdir(parents=True, exist_ok=True)

        self._observer = PollingObserver(timeout=self.poll_interval)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for new statements", self.watch_dir)

    def stop(self) -> None:
        """Stop watching."""
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        if event.is_directory:
            return

        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self.process_file(filepath)

    def process_file(self, filepath: Path) -> WatchResult:
        """Wait for stability, validate, then upload."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)

            stmt = self.pipeline.upload_statement(
                self.user_id, filepath.name, filepath.read_bytes(),
            )
            logger.info("Uploaded %s as statement %s", filepath.name, stmt.id)
            return WatchResult(
                file_name=filepath.name, status="uploaded", statement_id=stmt.id,
            )

        except FileStabilityError as e:
            logger.error("File validation failed: %s", e)
            return WatchResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
        except TimeoutError as e:
            logger.error("File stability timeout: %s", e)
            return WatchResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
        except (SpendLensError, OSError) as e:
            logger.exception("Upload failed for %s", filepath.name)
            return WatchResult(
                file_name=filepath.name, status="error", error_message=str(e),
            )
