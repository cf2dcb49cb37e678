from __future__ import annotations

import asyncio
import threading

import pytest
from pydantic import ValidationError

from papertutor import ingest as ingest_module
from papertutor.ingest import UnsupportedFormat, ingest, ingest_url, parse_pdf
from papertutor.models import Document, Page


def test_ingest_pages_are_contiguous_and_counted(make_pdf, blobs) -> None:
    raw = make_pdf(["First page", "Second page", "Third page"])

    doc = ingest(raw, "a.pdf", blobs)

    assert doc.name == "a.pdf"
    assert doc.total_pages == 3
    assert len(doc.pages) == doc.total_pages
    assert [p.page_number for p in doc.pages] == [1, 2, 3]


def test_ingest_extracts_single_spaced_text(make_pdf, blobs) -> None:
    raw = make_pdf(["Hello   world", ""])

    doc = ingest(raw, "text.pdf", blobs)

    assert doc.pages[0].text == "Hello world"
    assert doc.pages[1].text == ""


def test_ingest_assigns_fresh_ids_for_identical_content(make_pdf, blobs) -> None:
    raw = make_pdf(["same"])

    first = ingest(raw, "same.pdf", blobs)
    second = ingest(raw, "same.pdf", blobs)

    assert first.id != second.id
    assert first.source != second.source
    assert blobs.read(first.source) == raw


@pytest.mark.parametrize("raw", [b"", b"definitely not a pdf"])
def test_ingest_rejects_non_pdf_bytes(raw, blobs) -> None:
    with pytest.raises(UnsupportedFormat):
        ingest(raw, "notes.txt", blobs)
    assert list(blobs.root.iterdir()) == []


def test_parse_pdf_does_not_touch_blobs(make_pdf) -> None:
    pages = parse_pdf(make_pdf(["one", "two"]), "x.pdf")
    assert [p.page_number for p in pages] == [1, 2]


def test_document_rejects_page_gaps() -> None:
    with pytest.raises(ValidationError):
        Document(
            name="bad.pdf",
            total_pages=2,
            pages=(Page(page_number=1), Page(page_number=3)),
            source="x",
        )
    with pytest.raises(ValidationError):
        Document(name="bad.pdf", total_pages=3, pages=(Page(page_number=1),), source="x")


def test_ingest_url_records_origin(monkeypatch, make_pdf, blobs) -> None:
    raw = make_pdf(["remote"])

    async def fake_download(url: str) -> bytes:
        return raw

    monkeypatch.setattr(ingest_module, "download_pdf", fake_download)

    doc = asyncio.run(ingest_url("https://example.org/papers/My%20Paper.pdf", blobs))

    assert doc.name == "My Paper.pdf"
    assert doc.origin_url == "https://example.org/papers/My%20Paper.pdf"
    assert doc.pages[0].text == "remote"


def test_ingest_url_parses_off_the_event_loop(monkeypatch, make_pdf, blobs) -> None:
    raw = make_pdf(["remote"])
    parsed_on: list[int] = []
    extract = ingest_module.extract_page_texts

    async def fake_download(url: str) -> bytes:
        return raw

    def tracking_extract(pdf_bytes: bytes) -> list[str]:
        parsed_on.append(threading.get_ident())
        return extract(pdf_bytes)

    monkeypatch.setattr(ingest_module, "download_pdf", fake_download)
    monkeypatch.setattr(ingest_module, "extract_page_texts", tracking_extract)

    asyncio.run(ingest_url("https://example.org/a.pdf", blobs))

    assert parsed_on and parsed_on[0] != threading.get_ident()
