"""
Format Strategies  —  Text Extraction per Document Type
═══════════════════════════════════════════════════════

Design: Strategy + Registry
───────────────────────────
Each supported document category has one extractor class exposing the same
async `extract(data) -> str` capability:

  PlainTextExtractor    text/plain, text/markdown   stdlib decode (utf-8 → latin-1)
  PdfExtractor          application/pdf             PyMuPDF, pypdf as fallback
  ImageOcrExtractor     image/*                     Tesseract OCR via pytesseract
  DocxExtractor         Word (.docx)                python-docx
  SpreadsheetExtractor  Excel (.xlsx / .xls)        pandas → one CSV block per sheet

Contract for every strategy:
  - Accept raw bytes (never a file path)
  - Return the FULL extracted text; truncation is the caller's job
  - Raise ExtractionError on any parse failure; the DocumentExtractor turns
    that into placeholder text so one bad file never aborts a request
  - Run blocking parsers in the default thread executor so the event loop
    keeps serving other in-flight requests

OCR is the CPU-heavy path and additionally runs under a timeout.
"""

from __future__ import annotations

import asyncio
import io
import logging
import time
from abc import ABC, abstractmethod

from chatprime.core.errors import ExtractionError

logger = logging.getLogger(__name__)

# Default wall-clock ceiling for a single blocking parse (seconds)
DEFAULT_TIMEOUT_SECONDS = 120.0


# ---------------------------------------------------------------------------
# Abstract strategy
# ---------------------------------------------------------------------------

class BaseFormatExtractor(ABC):
    """
    Abstract base for per-format extraction strategies.

    Subclasses implement `_extract_sync`, which runs in a worker thread.
    """

    #: Human-readable kind used in "[No text found in <kind>]" placeholders
    kind: str = "file"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> None:
        self._timeout = timeout

    @property
    @abstractmethod
    def strategy_name(self) -> str:
        """Unique name for logging."""

    async def extract(self, data: bytes) -> str:
        loop = asyncio.get_running_loop()
        t0   = time.monotonic()

        try:
            text = await asyncio.wait_for(
                loop.run_in_executor(None, self._extract_sync, data),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ExtractionError(
                f"{self.strategy_name} timed out after {self._timeout:.0f}s"
            ) from exc
        except ExtractionError:
            raise
        except Exception as exc:
            raise ExtractionError(f"{self.strategy_name} failed: {exc}") from exc

        logger.debug(
            "%s | bytes=%d chars=%d elapsed_ms=%.0f",
            self.strategy_name, len(data), len(text), (time.monotonic() - t0) * 1000,
        )
        return text

    @abstractmethod
    def _extract_sync(self, data: bytes) -> str:
        """Blocking extraction — runs in thread executor."""


# ---------------------------------------------------------------------------
# Plain text
# ---------------------------------------------------------------------------

class PlainTextExtractor(BaseFormatExtractor):
    kind = "text file"

    @property
    def strategy_name(self) -> str:
        return "plaintext"

    async def extract(self, data: bytes) -> str:
        # decoded inline, no executor
        return self._extract_sync(data)

    def _extract_sync(self, data: bytes) -> str:
        try:
            return data.decode("utf-8")
        except UnicodeDecodeError:
            return data.decode("latin-1", errors="replace")


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfExtractor(BaseFormatExtractor):
    """
    Native PDF text layer via PyMuPDF (fitz); pypdf is tried if fitz cannot
    open the document. Scanned PDFs come back empty (no OCR on this path).
    """

    kind = "PDF"

    @property
    def strategy_name(self) -> str:
        return "pdf"

    def _extract_sync(self, data: bytes) -> str:
        try:
            return self._extract_pymupdf(data)
        except Exception as exc:
            logger.warning("PyMuPDF extraction failed, trying pypdf: %s", exc)
            return self._extract_pypdf(data)

    @staticmethod
    def _extract_pymupdf(data: bytes) -> str:
        import fitz  # PyMuPDF; imported here to avoid module-level import cost

        with fitz.open(stream=data, filetype="pdf") as doc:
            pages = [(page.get_text("text") or "").strip() for page in doc]
        return "\n\n".join(p for p in pages if p)

    @staticmethod
    def _extract_pypdf(data: bytes) -> str:
        from pypdf import PdfReader

        reader = PdfReader(io.BytesIO(data))
        pages  = [(page.extract_text() or "").strip() for page in reader.pages]
        return "\n\n".join(p for p in pages if p)


# ---------------------------------------------------------------------------
# Images (OCR)
# ---------------------------------------------------------------------------

class ImageOcrExtractor(BaseFormatExtractor):
    """
    Tesseract OCR (English). Requires the tesseract binary in the container.
    """

    kind = "image"

    def __init__(self, timeout: float = DEFAULT_TIMEOUT_SECONDS, lang: str = "eng") -> None:
        super().__init__(timeout=timeout)
        self._lang = lang

    @property
    def strategy_name(self) -> str:
        return "tesseract"

    def _extract_sync(self, data: bytes) -> str:
        import pytesseract
        from PIL import Image

        with Image.open(io.BytesIO(data)) as img:
            return pytesseract.image_to_string(img, lang=self._lang).strip()


# ---------------------------------------------------------------------------
# Word documents
# ---------------------------------------------------------------------------

class DocxExtractor(BaseFormatExtractor):
    kind = "Word document"

    @property
    def strategy_name(self) -> str:
        return "docx"

    def _extract_sync(self, data: bytes) -> str:
        import docx

        document = docx.Document(io.BytesIO(data))
        return "\n".join(p.text for p in document.paragraphs if p.text.strip())


# ---------------------------------------------------------------------------
# Spreadsheets
# ---------------------------------------------------------------------------

class SpreadsheetExtractor(BaseFormatExtractor):
    """
    Every sheet is serialised to CSV (raw rows, no index) and the blocks are
    concatenated in workbook order.
    """

    kind = "Excel file"

    @property
    def strategy_name(self) -> str:
        return "spreadsheet"

    def _extract_sync(self, data: bytes) -> str:
        import pandas as pd

        sheets = pd.read_excel(io.BytesIO(data), sheet_name=None, header=None)
        blocks = [
            frame.to_csv(index=False, header=False)
            for frame in sheets.values()
        ]
        return "\n".join(b for b in blocks if b.strip())
