"""Addressable storage for raw PDF bytes.

A handle stays valid until released. Each acquisition gets its own blob,
so two documents with identical content never share a handle.
"""
from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path

from papertutor.config import BLOB_DIR

log = logging.getLogger(__name__)

_HANDLE_RE = re.compile(r"^[0-9a-f]{32}$")


class BlobNotFound(Exception):
    """Raised when a handle no longer resolves to stored bytes."""

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Byte source {handle!r} is no longer available")


class BlobStore:
    def __init__(self, root: Path = BLOB_DIR):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, handle: str) -> Path | None:
        if not _HANDLE_RE.match(handle):
            return None
        return self.root / f"{handle}.pdf"

    def acquire(self, data: bytes) -> str:
        handle = uuid.uuid4().hex
        (self.root / f"{handle}.pdf").write_bytes(data)
        log.debug("Acquired blob %s (%d bytes)", handle, len(data))
        return handle

    def exists(self, handle: str) -> bool:
        path = self._path(handle)
        return path is not None and path.exists()

    def read(self, handle: str) -> bytes:
        path = self._path(handle)
        if path is None or not path.exists():
            raise BlobNotFound(handle)
        return path.read_bytes()

    def release(self, handle: str) -> bool:
        """Delete the blob. Returns False if it was already gone."""
        path = self._path(handle)
        if path is None or not path.exists():
            return False
        path.unlink()
        log.debug("Released blob %s", handle)
        return True
