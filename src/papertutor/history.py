"""Recently viewed documents and their conversations.

At most `capacity` entries, unique by document id, newest first. Capacity is
enforced on every save; evicted entries are gone for good.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from papertutor.blobs import BlobNotFound, BlobStore
from papertutor.config import HISTORY_CAPACITY
from papertutor.ingest import UnsupportedFormat, parse_pdf
from papertutor.models import Document, HistoryEntry, Message
from papertutor.pdf_utils import download_pdf
from papertutor.store import LocalStorage

log = logging.getLogger(__name__)

HISTORY_RECORD = "pdf_history"


class HistoryReplayFailed(Exception):
    """Raised when a history entry cannot be reopened."""

    def __init__(self, history_id: str, reason: str):
        self.history_id = history_id
        self.reason = reason
        super().__init__(f"Could not reopen {history_id}: {reason}")


@dataclass
class Snapshot:
    document: Document
    messages: list[Message]
    current_page: int


class HistoryStore:
    def __init__(
        self,
        storage: LocalStorage,
        blobs: BlobStore,
        capacity: int = HISTORY_CAPACITY,
    ):
        self._storage = storage
        self._blobs = blobs
        self.capacity = capacity
        self._lock = asyncio.Lock()

    def entries(self) -> list[HistoryEntry]:
        raw = self._storage.get(HISTORY_RECORD, []) or []
        return [HistoryEntry.model_validate(e) for e in raw]

    def _write(self, entries: Iterable[HistoryEntry]) -> None:
        self._storage.set(HISTORY_RECORD, [e.model_dump(mode="json") for e in entries])

    def get(self, history_id: str) -> HistoryEntry | None:
        for entry in self.entries():
            if entry.id == history_id:
                return entry
        return None

    def references(self, handle: str) -> bool:
        return any(e.source == handle for e in self.entries())

    async def save_snapshot(
        self,
        document: Document,
        current_page: int | None,
        messages: Iterable[Message],
        viewed_at: datetime | None = None,
    ) -> list[HistoryEntry]:
        """Upsert the document's entry and trim to capacity.

        Returns the entries evicted by this save.
        """
        entry = HistoryEntry(
            id=document.id,
            name=document.name,
            total_pages=document.total_pages,
            last_viewed=viewed_at or datetime.now(timezone.utc),
            current_page=current_page,
            source=document.source,
            origin_url=document.origin_url,
            messages=list(messages),
        )
        async with self._lock:
            # Ties keep the new entry first: list.sort is stable under reverse=True
            entries = [entry, *(e for e in self.entries() if e.id != document.id)]
            entries.sort(key=lambda e: e.last_viewed, reverse=True)
            kept, evicted = entries[: self.capacity], entries[self.capacity :]
            self._write(kept)
        for old in evicted:
            log.info("Evicted '%s' (%s) from history", old.name, old.id)
        return evicted

    async def _fetch(self, entry: HistoryEntry) -> tuple[bytes, str]:
        try:
            return self._blobs.read(entry.source), entry.source
        except BlobNotFound:
            if not entry.origin_url:
                raise
        log.info("Blob for %s is gone, re-downloading %s", entry.id, entry.origin_url)
        raw = await download_pdf(entry.origin_url)
        return raw, self._blobs.acquire(raw)

    async def _set_source(self, history_id: str, source: str) -> None:
        async with self._lock:
            self._write(
                e.model_copy(update={"source": source}) if e.id == history_id else e
                for e in self.entries()
            )

    async def load_snapshot(self, history_id: str) -> Snapshot:
        """Re-ingest a historical document and restore its conversation and page.

        Raises:
            HistoryReplayFailed: If the entry is unknown or its bytes cannot be
                read and parsed. History is left unchanged.
        """
        entry = self.get(history_id)
        if entry is None:
            raise HistoryReplayFailed(history_id, "not in history")

        try:
            raw, source = await self._fetch(entry)
        except (BlobNotFound, httpx.HTTPError) as e:
            raise HistoryReplayFailed(history_id, str(e)) from e

        try:
            pages = await asyncio.to_thread(parse_pdf, raw, entry.name)
        except UnsupportedFormat as e:
            if source != entry.source:
                self._blobs.release(source)
            raise HistoryReplayFailed(history_id, str(e)) from e

        if source != entry.source:
            await self._set_source(history_id, source)

        document = Document(
            id=entry.id,
            name=entry.name,
            total_pages=len(pages),
            pages=tuple(pages),
            source=source,
            origin_url=entry.origin_url,
        )
        current_page = min(max(entry.current_page or 1, 1), document.total_pages)
        return Snapshot(document=document, messages=list(entry.messages), current_page=current_page)

    async def remove(self, history_id: str) -> HistoryEntry | None:
        async with self._lock:
            entries = self.entries()
            removed = next((e for e in entries if e.id == history_id), None)
            if removed is not None:
                self._write(e for e in entries if e.id != history_id)
        return removed

    async def clear(self) -> list[HistoryEntry]:
        async with self._lock:
            entries = self.entries()
            self._write([])
        return entries
