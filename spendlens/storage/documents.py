"""Document store adapter: put/get/delete binary objects by path.

The pipeline only depends on the DocumentStore protocol. LocalDocumentStore
keeps the bytes under a root directory, which is what the CLI and watcher
use; a hosted blob store can be swapped in by implementing the same three
methods.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)

# Accepted upload formats -> media type sent to the inference service
SUPPORTED_MEDIA_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
    ".gif": "image/gif",
}


def media_type_for(file_name: str) -> str | None:
    """Return the media type for a file name, or None if unsupported."""
    return SUPPORTED_MEDIA_TYPES.get(PurePosixPath(file_name).suffix.lower())


def build_storage_path(
    user_id: str, file_name: str, epoch_ms: int, token: str,
) -> str:
    """statements/<user>/<epoch_ms>_<token>_<name>.

    The name is stripped of any directory part. token keeps two uploads of
    the same file in the same millisecond apart.
    """
    safe_name = PurePosixPath(file_name.replace("\\", "/")).name
    return f"statements/{user_id}/{epoch_ms}_{token}_{safe_name}"


class DocumentStore(Protocol):
    def put(self, path: str, data: bytes) -> None: ...

    def get(self, path: str) -> bytes: ...

    def delete(self, path: str) -> bool: ...


class LocalDocumentStore:
    """Filesystem-backed document store.

    Paths are POSIX-style keys relative to root. Keys that would resolve
    outside root are rejected with ValueError.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        root = self.root.resolve()
        target = (root / path).resolve()
        if root != target and root not in target.parents:
            raise ValueError(f"Storage path escapes store root: {path}")
        return target

    def put(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        # Write to a sibling temp file, then rename into place
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_name, target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug("Stored %d bytes at %s", len(data), path)

    def get(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def delete(self, path: str) -> bool:
        """Remove the object. Returns False if it did not exist."""
        target = self._resolve(path)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        return True

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()
