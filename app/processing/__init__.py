"""
Document Processing Package
════════════════════════════

Turns an uploaded invoice into the structured extraction payload.

Modules
───────
  ocr.py        PyMuPDF text layer extraction and page rendering
  assistant.py  OpenAI extraction: Assistants file_search (text) or vision (image)
  parsing.py    strict JSON extraction from model output, date normalization
  prompts.py    extraction instructions sent to the model

Every component is stateless apart from its injected clients.
"""

from app.processing.assistant import InvoiceExtractor
from app.processing.ocr import DocumentText, PyMuPDFReader
from app.processing.parsing import extract_invoice_json, normalize_dates

__all__ = [
    "InvoiceExtractor",
    "DocumentText",
    "PyMuPDFReader",
    "extract_invoice_json",
    "normalize_dates",
]
