"""
PDF page access via PyMuPDF (fitz)
═══════════════════════════════════

Two operations, both blocking and therefore run in the default thread
executor:

  read_text()     native text layer, one PageText per page
  render_pages()  each page rasterised to PNG for the vision path

PyMuPDF cannot OCR image-only pages; those come back with empty text. The
time estimator treats a near-empty text layer as a scanned document.

Thread-safety: fitz.open() returns an independent document object per call,
so concurrent jobs never share state.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from app.jobs.exceptions import DocumentError

logger = logging.getLogger(__name__)

# Render scale for the vision path. 2.0 ≈ 144 dpi, legible for small print
RENDER_ZOOM = 2.0

# Below this many characters per page the text layer is treated as missing
MIN_CHARS_PER_PAGE_THRESHOLD = 50


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class PageText:
    """
    page_number : 1-based page index
    text        : raw extracted text (may be empty for image-only pages)
    """
    page_number: int
    text:        str


@dataclass
class DocumentText:
    pages:      list[PageText]
    elapsed_ms: float = 0.0

    @property
    def page_count(self) -> int:
        return len(self.pages)

    @property
    def total_chars(self) -> int:
        return sum(len(p.text) for p in self.pages)

    @property
    def full_text(self) -> str:
        return "\n\n".join(p.text for p in self.pages if p.text.strip())

    def is_likely_scanned(self) -> bool:
        if not self.pages:
            return True
        return self.total_chars / len(self.pages) < MIN_CHARS_PER_PAGE_THRESHOLD


@dataclass
class PageImage:
    page_number: int
    png:         bytes
    mime_type:   str = "image/png"


# ---------------------------------------------------------------------------
# PyMuPDF reader
# ---------------------------------------------------------------------------

class PyMuPDFReader:
    """Reads PDF bytes. Never takes a file path, so jobs stay stateless."""

    def __init__(self, zoom: float = RENDER_ZOOM) -> None:
        self._zoom = zoom

    async def read_text(self, pdf_bytes: bytes) -> DocumentText:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()
        result = await loop.run_in_executor(None, self._read_text_sync, pdf_bytes)
        result.elapsed_ms = (time.monotonic() - t0) * 1000
        logger.info(
            "PyMuPDF text | pages=%d total_chars=%d elapsed_ms=%.0f",
            result.page_count, result.total_chars, result.elapsed_ms,
        )
        return result

    async def render_pages(self, pdf_bytes: bytes) -> list[PageImage]:
        loop = asyncio.get_event_loop()
        t0 = time.monotonic()
        images = await loop.run_in_executor(None, self._render_sync, pdf_bytes)
        logger.info(
            "PyMuPDF render | pages=%d zoom=%.1f elapsed_ms=%.0f",
            len(images), self._zoom, (time.monotonic() - t0) * 1000,
        )
        if not images:
            raise DocumentError(
                "No images extracted from PDF - the PDF might be corrupted "
                "or contain no convertible pages"
            )
        return images

    # ------------------------------------------------------------------
    # Blocking helpers: run in thread executor
    # ------------------------------------------------------------------

    def _read_text_sync(self, pdf_bytes: bytes) -> DocumentText:
        pages: list[PageText] = []
        with self._open(pdf_bytes) as doc:
            for page_num, page in enumerate(doc, start=1):
                raw = page.get_text("text") or ""
                pages.append(PageText(page_number=page_num, text=raw.strip()))
        return DocumentText(pages=pages)

    def _render_sync(self, pdf_bytes: bytes) -> list[PageImage]:
        import fitz

        images: list[PageImage] = []
        matrix = fitz.Matrix(self._zoom, self._zoom)
        with self._open(pdf_bytes) as doc:
            for page_num, page in enumerate(doc, start=1):
                pix = page.get_pixmap(matrix=matrix)
                images.append(PageImage(page_number=page_num, png=pix.tobytes("png")))
        return images

    @staticmethod
    def _open(pdf_bytes: bytes):
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        try:
            return fitz.open(stream=pdf_bytes, filetype="pdf")
        except Exception as exc:
            raise DocumentError(f"Could not open PDF: {exc}") from exc
