from __future__ import annotations

import io

import fitz  # PyMuPDF
import httpx
from pypdf import PdfReader

from papertutor.config import REQUEST_TIMEOUT


async def download_pdf(url: str) -> bytes:
    """Download PDF bytes from a URL."""
    async with httpx.AsyncClient(follow_redirects=True, timeout=REQUEST_TIMEOUT) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.content


def extract_page_texts(pdf_bytes: bytes) -> list[str]:
    """Return the flattened text of every page, in page order.

    Text runs are joined with single spaces and trimmed.
    """
    reader = PdfReader(io.BytesIO(pdf_bytes))
    return [" ".join((page.extract_text() or "").split()) for page in reader.pages]


def render_page_png(pdf_bytes: bytes, page_number: int, scale: float) -> tuple[int, int, bytes]:
    """Rasterise page `page_number` (1-indexed) at `scale`.

    Returns (width, height, png_bytes).
    """
    with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
        if not 1 <= page_number <= doc.page_count:
            raise IndexError(f"page {page_number} out of range 1..{doc.page_count}")
        pix = doc[page_number - 1].get_pixmap(matrix=fitz.Matrix(scale, scale))
        return pix.width, pix.height, pix.tobytes("png")
