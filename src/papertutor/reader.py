"""The reading session: ties ingestion, rendering, chat and history together.

Whenever the current document is replaced or closed, its state is first
saved to history. Blob handles are released once neither the session nor
any history entry refers to them.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable

from papertutor.blobs import BlobStore
from papertutor.config import (
    HISTORY_CAPACITY,
    RENDER_CACHE_SIZE,
    THUMBNAIL_CACHE_SIZE,
    THUMBNAIL_CONCURRENCY,
    THUMBNAIL_SCALE,
    VIEWER_SCALE,
)
from papertutor.conversation import Conversation
from papertutor.history import HistoryStore
from papertutor.ingest import ingest, ingest_url
from papertutor.llm import ChatBackend
from papertutor.models import Document, HistoryEntry, Message, RenderedPage
from papertutor.page_cache import PageRenderer, RenderCache, RenderFailure
from papertutor.preferences import Preferences
from papertutor.session import Session
from papertutor.store import LocalStorage

log = logging.getLogger(__name__)


class NoDocumentOpen(Exception):
    """Raised by page and explanation operations while on the upload screen."""

    def __init__(self) -> None:
        super().__init__("No document is open")


class PageNotFound(Exception):
    def __init__(self, page_number: int, total_pages: int):
        self.page_number = page_number
        self.total_pages = total_pages
        super().__init__(f"Page {page_number} is outside 1..{total_pages}")


class Reader:
    def __init__(
        self,
        storage: LocalStorage,
        blobs: BlobStore,
        *,
        backend: ChatBackend | None = None,
        renderer: PageRenderer | None = None,
        cache_size: int = RENDER_CACHE_SIZE,
        thumbnail_cache_size: int = THUMBNAIL_CACHE_SIZE,
        history_capacity: int = HISTORY_CAPACITY,
    ):
        self.blobs = blobs
        self.preferences = Preferences(storage)
        self.session = Session()
        self.cache = RenderCache(renderer, capacity=cache_size)
        # Thumbnails are cached apart from viewer pages, bound to the same document
        self.thumbnail_cache = RenderCache(renderer, capacity=thumbnail_cache_size)
        self._thumbnail_slots = asyncio.Semaphore(THUMBNAIL_CONCURRENCY)
        self.conversation = Conversation(backend or ChatBackend(), self.preferences)
        self.history = HistoryStore(storage, blobs, capacity=history_capacity)

    @property
    def document(self) -> Document | None:
        return self.session.document

    @property
    def current_page(self) -> int | None:
        return self.session.current_page

    def _require_document(self) -> Document:
        if self.session.document is None:
            raise NoDocumentOpen()
        return self.session.document

    def _release_if_unused(self, handle: str) -> None:
        current = self.session.document
        if current is not None and current.source == handle:
            return
        if self.history.references(handle):
            return
        self.blobs.release(handle)

    async def _snapshot_current(self) -> list[HistoryEntry]:
        """Save the open document to history. Returns the entries it pushed out.

        Evicted handles are released by the caller once the session holds its
        next document, which may be the evicted entry itself.
        """
        doc = self.session.document
        if doc is None:
            return []
        return await self.history.save_snapshot(
            doc, self.session.current_page, self.conversation.messages
        )

    async def _switch_to(
        self,
        doc: Document,
        raw: bytes,
        messages: Iterable[Message] = (),
        current_page: int = 1,
    ) -> Document:
        evicted = await self._snapshot_current()
        previous = self.session.document
        adopted = self.session.set_document(doc)
        self.session.set_current_page(current_page)
        self.cache.bind(adopted.id, raw)
        self.thumbnail_cache.bind(adopted.id, raw)
        self.conversation.replace_messages(messages)
        for entry in evicted:
            self._release_if_unused(entry.source)
        if previous is not None and previous.source != adopted.source:
            self._release_if_unused(previous.source)
        log.info("Opened '%s' (%s)", adopted.name, adopted.id)
        return adopted

    # -- documents ------------------------------------------------------------

    async def open_document(self, raw: bytes, file_name: str) -> Document:
        """Ingest an upload and make it current.

        Raises:
            UnsupportedFormat: Nothing changes in the session.
        """
        doc = await asyncio.to_thread(ingest, raw, file_name, self.blobs)
        return await self._switch_to(doc, raw)

    async def open_url(self, url: str) -> Document:
        doc = await ingest_url(url, self.blobs)
        return await self._switch_to(doc, self.blobs.read(doc.source))

    async def restore(self, history_id: str) -> Document:
        """Reopen a history entry with its messages and last page.

        Raises:
            HistoryReplayFailed: The session and history are left as they were.
        """
        current = self.session.document
        if current is not None and current.id == history_id:
            return current
        snapshot = await self.history.load_snapshot(history_id)
        raw = self.blobs.read(snapshot.document.source)
        return await self._switch_to(
            snapshot.document, raw, snapshot.messages, snapshot.current_page
        )

    async def close_document(self) -> None:
        """Save the current document to history and return to the upload screen."""
        doc = self.session.document
        if doc is None:
            return
        evicted = await self._snapshot_current()
        self.session.clear_document()
        self.cache.unbind()
        self.thumbnail_cache.unbind()
        self.conversation.clear()
        for entry in evicted:
            self._release_if_unused(entry.source)
        self._release_if_unused(doc.source)

    async def clear_history(self) -> int:
        removed = await self.history.clear()
        for entry in removed:
            self._release_if_unused(entry.source)
        return len(removed)

    def history_entries(self) -> list[HistoryEntry]:
        return self.history.entries()

    # -- pages ----------------------------------------------------------------

    def go_to_page(self, page_number: int) -> int:
        self._require_document()
        return self.session.set_current_page(page_number)

    def page_text(self, page_number: int) -> str:
        doc = self._require_document()
        page = doc.page(page_number)
        if page is None:
            raise PageNotFound(page_number, doc.total_pages)
        return page.text

    async def page_image(self, page_number: int, thumbnail: bool = False) -> RenderedPage | None:
        """Render a page for display. Returns None if the document changed meanwhile.

        Raises:
            RenderFailure: Only this page is affected; asking again retries.
        """
        doc = self._require_document()
        if doc.page(page_number) is None:
            raise PageNotFound(page_number, doc.total_pages)
        if thumbnail:
            image = await self.thumbnail_cache.get_or_render(doc.id, page_number, THUMBNAIL_SCALE)
        else:
            image = await self.cache.get_or_render(doc.id, page_number, VIEWER_SCALE)
        current = self.session.document
        if current is None or current.id != doc.id:
            return None
        return image

    async def _thumbnail(self, page_number: int) -> RenderedPage | None:
        async with self._thumbnail_slots:
            return await self.page_image(page_number, thumbnail=True)

    async def thumbnails(self) -> dict[int, RenderedPage | None]:
        """Render every thumbnail. Pages that fail map to None."""
        doc = self._require_document()
        numbers = range(1, doc.total_pages + 1)
        results = await asyncio.gather(
            *(self._thumbnail(n) for n in numbers),
            return_exceptions=True,
        )
        thumbs: dict[int, RenderedPage | None] = {}
        for n, result in zip(numbers, results):
            if isinstance(result, RenderFailure):
                thumbs[n] = None
            elif isinstance(result, BaseException):
                raise result
            else:
                thumbs[n] = result
        return thumbs

    # -- chat -----------------------------------------------------------------

    async def ask(self, text: str) -> list[Message]:
        return await self.conversation.submit_user_message(text)

    async def explain_current_page(self) -> list[Message]:
        self._require_document()
        page_number = self.session.current_page or 1
        return await self.conversation.explain_page(self.page_text(page_number), page_number)

    def clear_messages(self) -> None:
        self.conversation.clear()
