"""
Time Estimator: projected processing duration for an uploaded document.

Side-effect free: the same bytes always produce the same estimate. The
client uses the breakdown to interpolate a smooth percentage between the
sparse progress frames it receives from the server.

Model (seconds):
  ocr                  per page; cheap when a text layer exists, expensive
                       when the page has to be OCR'd
  metadata_extraction  fixed LLM call plus a small per-character term
  items_extraction     dominated by line-item volume, so per-character
"""

from __future__ import annotations

import logging

from app.jobs.exceptions import DocumentError
from app.processing.ocr import DocumentText, PageText, PyMuPDFReader
from app.schemas.jobs import TimeBreakdown, TimeEstimate

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF"

OCR_SECONDS_PER_TEXT_PAGE    = 0.5
OCR_SECONDS_PER_SCANNED_PAGE = 6.0
METADATA_BASE_SECONDS        = 8.0
METADATA_SECONDS_PER_KCHAR   = 0.5
ITEMS_BASE_SECONDS           = 5.0
ITEMS_SECONDS_PER_KCHAR      = 2.5

NOTE_TEXT_LAYER = "Estimate based on the document's text layer; actual time depends on service load."
NOTE_SCANNED    = (
    "Little or no embedded text found; the document will be OCR'd, "
    "so processing may take longer."
)


class TimeEstimator:
    def __init__(self, reader: PyMuPDFReader | None = None) -> None:
        self._reader = reader or PyMuPDFReader()

    async def estimate(self, document: bytes) -> TimeEstimate:
        if not document:
            raise DocumentError("Uploaded file is empty")

        is_pdf  = document.startswith(PDF_MAGIC)
        text    = await self._read(document, is_pdf)
        scanned = is_pdf and text.is_likely_scanned()

        char_count = text.total_chars
        page_count = max(text.page_count, 1)
        kchars     = char_count / 1000

        per_page = OCR_SECONDS_PER_SCANNED_PAGE if scanned else OCR_SECONDS_PER_TEXT_PAGE
        breakdown = TimeBreakdown(
            ocr=round(page_count * per_page, 1),
            metadata_extraction=round(METADATA_BASE_SECONDS + kchars * METADATA_SECONDS_PER_KCHAR, 1),
            items_extraction=round(ITEMS_BASE_SECONDS + kchars * ITEMS_SECONDS_PER_KCHAR, 1),
        )
        total = round(breakdown.ocr + breakdown.metadata_extraction + breakdown.items_extraction, 1)

        logger.info(
            "Time estimate | pages=%d chars=%d scanned=%s total_s=%.1f",
            page_count, char_count, scanned, total,
        )
        return TimeEstimate(
            char_count=char_count,
            page_count=page_count,
            estimated_time_seconds=total,
            breakdown=breakdown,
            note=NOTE_SCANNED if scanned else NOTE_TEXT_LAYER,
        )

    async def _read(self, document: bytes, is_pdf: bool) -> DocumentText:
        if is_pdf:
            return await self._reader.read_text(document)

        # Plain-text exports skip PyMuPDF entirely
        try:
            decoded = document.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DocumentError("Unsupported document type: expected a PDF or UTF-8 text file") from exc
        return DocumentText(pages=[PageText(page_number=1, text=decoded.strip())])
