"""Bounded cache of rendered page bitmaps for the open document.

Keyed by (document_id, page_number, scale), so thumbnails never stand in
for full-size pages. Owned by the Reader, bound to one document at a time,
and flushed whenever that document changes. Concurrent requests for the
same uncached key share one render.
"""
from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from typing import Protocol

from papertutor.config import RENDER_CACHE_SIZE
from papertutor.models import RenderedPage
from papertutor.pdf_utils import render_page_png

log = logging.getLogger(__name__)

CacheKey = tuple[str, int, float]


class RenderFailure(Exception):
    """Raised when a single page cannot be rendered. The slot stays empty."""

    def __init__(self, document_id: str, page_number: int, reason: str):
        self.document_id = document_id
        self.page_number = page_number
        self.reason = reason
        super().__init__(f"Could not render page {page_number} of {document_id}: {reason}")


class PageRenderer(Protocol):
    def render(self, source: bytes, page_number: int, scale: float) -> tuple[int, int, bytes]:
        """Return (width, height, png_bytes) for one page."""
        ...


class PyMuPDFRenderer:
    def render(self, source: bytes, page_number: int, scale: float) -> tuple[int, int, bytes]:
        return render_page_png(source, page_number, scale)


class RenderCache:
    def __init__(
        self,
        renderer: PageRenderer | None = None,
        capacity: int = RENDER_CACHE_SIZE,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._renderer = renderer or PyMuPDFRenderer()
        self._entries: OrderedDict[CacheKey, RenderedPage] = OrderedDict()
        self._inflight: dict[CacheKey, asyncio.Task[RenderedPage]] = {}
        self._document_id: str | None = None
        self._source: bytes | None = None
        # Bumped on every flush; renders started before a flush never commit
        self._generation = 0

    @property
    def document_id(self) -> str | None:
        return self._document_id

    def bind(self, document_id: str, source: bytes) -> None:
        """Make `document_id` the document pages are rendered from."""
        if document_id != self._document_id:
            cleared = self.clear()
            log.debug("Render cache rebound to %s (%d entries flushed)", document_id, cleared)
        self._document_id = document_id
        self._source = source

    def unbind(self) -> None:
        self.clear()
        self._document_id = None
        self._source = None

    def clear(self) -> int:
        """Drop every entry and orphan in-flight renders. Returns entries dropped."""
        count = len(self._entries)
        self._entries.clear()
        self._inflight.clear()
        self._generation += 1
        return count

    def size(self) -> int:
        return len(self._entries)

    def get(self, document_id: str, page_number: int, scale: float) -> RenderedPage | None:
        key = (document_id, page_number, float(scale))
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry

    async def get_or_render(
        self, document_id: str, page_number: int, scale: float
    ) -> RenderedPage:
        """Return the cached bitmap, rendering it first on a miss.

        Raises:
            RenderFailure: If the document is not the bound one or rendering fails.
        """
        if document_id != self._document_id or self._source is None:
            raise RenderFailure(document_id, page_number, "document is not open")

        cached = self.get(document_id, page_number, scale)
        if cached is not None:
            return cached

        key = (document_id, page_number, float(scale))
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._render(key, self._source, self._generation))
            self._inflight[key] = task
        # One caller giving up must not cancel the render for the others
        return await asyncio.shield(task)

    async def _render(self, key: CacheKey, source: bytes, generation: int) -> RenderedPage:
        document_id, page_number, scale = key
        try:
            width, height, png = await asyncio.to_thread(
                self._renderer.render, source, page_number, scale
            )
        except Exception as e:
            log.warning("Failed to render page %d of %s: %s", page_number, document_id, e)
            raise RenderFailure(document_id, page_number, str(e)) from e
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

        page = RenderedPage(
            document_id=document_id,
            page_number=page_number,
            scale=scale,
            width=width,
            height=height,
            png=png,
        )
        if generation != self._generation:
            log.debug("Dropping stale render of page %d of %s", page_number, document_id)
            return page

        self._entries[key] = page
        self._entries.move_to_end(key)
        while len(self._entries) > self.capacity:
            evicted, _ = self._entries.popitem(last=False)
            log.debug("Evicted %s from render cache", evicted)
        return page
