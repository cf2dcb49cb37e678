"""Shared fixtures: real PDFs built with PyMuPDF, fake backend and renderer."""
from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable, Sequence
from pathlib import Path

import fitz
import pytest

from papertutor.blobs import BlobStore
from papertutor.llm import CompletionFailure
from papertutor.models import ModelInfo
from papertutor.store import LocalStorage

VALID_KEY = "sk-" + "a" * 60


def build_pdf(texts: Sequence[str]) -> bytes:
    doc = fitz.open()
    for text in texts:
        page = doc.new_page(width=300, height=300)
        if text:
            page.insert_text((36, 72), text)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def make_pdf() -> Callable[..., bytes]:
    return build_pdf


@pytest.fixture
def storage(tmp_path: Path) -> LocalStorage:
    return LocalStorage(tmp_path / "storage.json")


@pytest.fixture
def blobs(tmp_path: Path) -> BlobStore:
    return BlobStore(tmp_path / "blobs")


class FakeBackend:
    """Stands in for ChatBackend; records every completion request."""

    def __init__(self, reply: str = "Here is the explanation.", error: str | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []
        self.delays: list[float] = []
        self.on_call: Callable[[], None] | None = None
        self.models: list[ModelInfo] | None = []
        self.connection_ok = True

    async def complete(self, credential, system_prompt, turns, model_id):
        self.calls.append(
            {
                "credential": credential,
                "system_prompt": system_prompt,
                "turns": list(turns),
                "model": model_id,
            }
        )
        if self.on_call is not None:
            self.on_call()
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        if self.error is not None:
            raise CompletionFailure(self.error)
        return f"{self.reply} #{len(self.calls)}"

    async def test_connection(self, credential, model_id):
        return self.connection_ok

    async def list_models(self, credential):
        if self.models is None:
            raise CompletionFailure("Invalid API key. Please check your OpenAI API key.")
        return list(self.models)


class FakeRenderer:
    """Counts renders and peak concurrency; pages in `failing` raise, `gate` blocks until set."""

    def __init__(self):
        self.calls: list[tuple[int, float]] = []
        self.failing: set[int] = set()
        self.gate: threading.Event | None = None
        self.delay = 0.0
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def render(self, source: bytes, page_number: int, scale: float) -> tuple[int, int, bytes]:
        with self._lock:
            self.calls.append((page_number, scale))
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            if self.gate is not None:
                self.gate.wait(timeout=5)
            if self.delay:
                time.sleep(self.delay)
            if page_number in self.failing:
                raise RuntimeError(f"broken page {page_number}")
        finally:
            with self._lock:
                self.active -= 1
        size = int(100 * scale)
        return size, size, f"png:{page_number}:{scale}".encode()


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()
