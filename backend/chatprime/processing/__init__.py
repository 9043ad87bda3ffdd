"""
Document Processing Package
════════════════════════════

Turns uploaded attachments into bounded text excerpts for prompt enrichment.

Modules
───────
  formats.py    One extraction strategy per document format (text, PDF, OCR, DOCX, XLSX)
  extractor.py  Registry that dispatches by mimetype rule and applies the
                soft-failure + truncation policy

Design principles
─────────────────
  • Extraction failure never aborts a request; it degrades to placeholder text.
  • Blocking parsers run in the thread executor, never on the event loop.
"""

from chatprime.processing.extractor import (
    DocumentExtractor,
    ExtractedDocument,
    FormatCategory,
    mimetype_matcher,
)

__all__ = [
    "DocumentExtractor",
    "ExtractedDocument",
    "FormatCategory",
    "mimetype_matcher",
]
