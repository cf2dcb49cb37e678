from __future__ import annotations

import asyncio
import logging
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

import httpx
from pypdf.errors import PdfReadError

from papertutor.blobs import BlobStore
from papertutor.models import Document, Page
from papertutor.pdf_utils import download_pdf, extract_page_texts

log = logging.getLogger(__name__)


class UnsupportedFormat(Exception):
    """Raised when the uploaded bytes cannot be parsed as a PDF."""

    def __init__(self, file_name: str, reason: str):
        self.file_name = file_name
        self.reason = reason
        super().__init__(f"Could not read '{file_name}' as a PDF: {reason}")


def parse_pdf(raw: bytes, file_name: str) -> list[Page]:
    """Extract one Page per PDF page.

    Raises:
        UnsupportedFormat: If the bytes are empty or not a readable PDF.
    """
    if not raw:
        raise UnsupportedFormat(file_name, "file is empty")
    if b"%PDF-" not in raw[:1024]:
        raise UnsupportedFormat(file_name, "missing PDF header")
    try:
        texts = extract_page_texts(raw)
    except PdfReadError as e:
        raise UnsupportedFormat(file_name, str(e)) from e
    if not texts:
        raise UnsupportedFormat(file_name, "document has no pages")
    return [Page(page_number=i, text=text) for i, text in enumerate(texts, start=1)]


def ingest(
    raw: bytes,
    file_name: str,
    blobs: BlobStore,
    origin_url: str | None = None,
) -> Document:
    """Turn raw PDF bytes into a Document with a fresh identity.

    The bytes are kept in `blobs` under a new handle, which the caller must
    release once the document is no longer needed.

    Raises:
        UnsupportedFormat: If the bytes cannot be parsed.
    """
    pages = parse_pdf(raw, file_name)
    handle = blobs.acquire(raw)
    doc = Document(
        name=file_name,
        total_pages=len(pages),
        pages=tuple(pages),
        source=handle,
        origin_url=origin_url,
    )
    log.info("Ingested '%s' as %s (%d pages)", file_name, doc.id, doc.total_pages)
    return doc


def _name_from_url(url: str) -> str:
    name = PurePosixPath(unquote(urlparse(url).path)).name
    return name or "document.pdf"


async def ingest_url(url: str, blobs: BlobStore) -> Document:
    """Download a PDF and ingest it, remembering where it came from.

    Raises:
        UnsupportedFormat: If the download fails or is not a PDF.
    """
    name = _name_from_url(url)
    try:
        raw = await download_pdf(url)
    except httpx.HTTPError as e:
        raise UnsupportedFormat(name, f"download failed: {e}") from e
    return await asyncio.to_thread(ingest, raw, name, blobs, origin_url=url)
