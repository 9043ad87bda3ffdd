"""
Document Extractor
══════════════════

Turns an uploaded file's bytes + declared mimetype into a bounded text
excerpt for prompt enrichment.

Dispatch is an ordered registry of mimetype rules, not a branch chain:

  mimetype ──► first matching rule ──► registered extractor

  text/plain, text/markdown, text/csv     → text         PlainTextExtractor
  image/*                                 → image        ImageOcrExtractor
  *pdf*                                   → pdf          PdfExtractor
  *word*                                  → word         DocxExtractor
  *excel* / *spreadsheetml*               → spreadsheet  SpreadsheetExtractor

A rule is an exact mimetype ("text/plain"), a family wildcard ("image/*"),
a bare substring ("pdf"), a collection of those, or any callable taking
the normalised mimetype. Adding a format is one register() call:

    extractor.register("rtf", RtfExtractor())            # matches *rtf*
    extractor.register("odt", OdtExtractor(), match="application/vnd.oasis.opendocument.text")

Failure policy (soft): an unsupported type, a parse error, or an OCR
timeout yields placeholder text for that file. extract() never raises, so
one bad attachment cannot abort the enclosing request.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Sequence, Union

from chatprime.core.errors import ExtractionError
from chatprime.processing.formats import (
    DEFAULT_TIMEOUT_SECONDS,
    BaseFormatExtractor,
    DocxExtractor,
    ImageOcrExtractor,
    PdfExtractor,
    PlainTextExtractor,
    SpreadsheetExtractor,
)
from chatprime.storage.uploads import IngestionStatus, UploadedFile, UploadStore

logger = logging.getLogger(__name__)

FAILED_PLACEHOLDER = "[Failed to extract text]"

DEFAULT_EXCERPT_CHARS = 2_000

MimeMatcher = Callable[[str], bool]
MimeRule    = Union[str, Iterable[str], MimeMatcher]


# ---------------------------------------------------------------------------
# Categories and matching rules
# ---------------------------------------------------------------------------

class FormatCategory(str, Enum):
    """Names of the built-in registrations."""
    TEXT        = "text"
    PDF         = "pdf"
    IMAGE       = "image"
    WORD        = "word"
    SPREADSHEET = "spreadsheet"


def normalize_mimetype(mimetype: str | None) -> str:
    return (mimetype or "").split(";", 1)[0].strip().lower()


def _pattern_matcher(pattern: str) -> MimeMatcher:
    pattern = pattern.strip().lower()
    if pattern.endswith("/*"):
        family = pattern[:-1]
        return lambda mt: mt.startswith(family)
    if "/" in pattern:
        return lambda mt: mt == pattern
    return lambda mt: pattern in mt


def mimetype_matcher(rule: MimeRule) -> MimeMatcher:
    """Compile a registration rule into a predicate over normalised mimetypes."""
    if callable(rule):
        return rule
    if isinstance(rule, str):
        return _pattern_matcher(rule)
    matchers = [_pattern_matcher(p) for p in rule]
    return lambda mt: any(m(mt) for m in matchers)


_BUILTIN_RULES: tuple[tuple[FormatCategory, MimeRule], ...] = (
    (FormatCategory.TEXT,        ("text/plain", "text/markdown", "text/csv")),
    (FormatCategory.IMAGE,       "image/*"),
    (FormatCategory.PDF,         "pdf"),
    (FormatCategory.WORD,        "word"),
    (FormatCategory.SPREADSHEET, ("excel", "spreadsheetml")),
)


@dataclass
class _Registration:
    name:      str
    matches:   MimeMatcher
    extractor: BaseFormatExtractor


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExtractedDocument:
    """
    Derived, immutable excerpt of one uploaded file.

    source_file_id : UploadedFile.id the excerpt came from
    source_name    : original filename, shown to the model as "[File: name]"
    text_excerpt   : at most `excerpt_chars` characters
    truncated      : True if the full text was longer than the excerpt
    """
    source_file_id: str
    source_name:    str
    text_excerpt:   str
    truncated:      bool


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class DocumentExtractor:
    """
    Registry-backed extractor.

    Usage:
        extractor = DocumentExtractor()
        text, truncated = await extractor.extract(data, "application/pdf")
        docs = await extractor.ingest(files, store)
    """

    def __init__(
        self,
        excerpt_chars: int   = DEFAULT_EXCERPT_CHARS,
        ocr_timeout:   float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._excerpt_chars = excerpt_chars
        self._registry: list[_Registration] = []

        builtins: dict[FormatCategory, BaseFormatExtractor] = {
            FormatCategory.TEXT:        PlainTextExtractor(),
            FormatCategory.PDF:         PdfExtractor(),
            FormatCategory.IMAGE:       ImageOcrExtractor(timeout=ocr_timeout),
            FormatCategory.WORD:        DocxExtractor(),
            FormatCategory.SPREADSHEET: SpreadsheetExtractor(),
        }
        for category, rule in _BUILTIN_RULES:
            self.register(category.value, builtins[category], match=rule)

    def register(
        self,
        name:      str,
        extractor: BaseFormatExtractor,
        match:     MimeRule | None = None,
    ) -> None:
        """
        Register an extractor under `name`.

        Re-registering an existing name swaps its extractor (and its rule, if
        one is given) in place, keeping its position. A new name is appended;
        rules are tried in registration order. Without `match`, the name
        itself is used as a substring rule.
        """
        name = str(getattr(name, "value", name))
        for entry in self._registry:
            if entry.name == name:
                entry.extractor = extractor
                if match is not None:
                    entry.matches = mimetype_matcher(match)
                return
        self._registry.append(_Registration(name, mimetype_matcher(match or name), extractor))

    def categorize(self, mimetype: str) -> str | None:
        """Name of the first registration matching `mimetype` (None = unsupported)."""
        entry = self._lookup(mimetype)
        return entry.name if entry else None

    def _lookup(self, mimetype: str) -> _Registration | None:
        mt = normalize_mimetype(mimetype)
        if not mt:
            return None
        return next((e for e in self._registry if e.matches(mt)), None)

    async def extract(self, data: bytes, mimetype: str) -> tuple[str, bool]:
        """
        Return (excerpt, truncated). Never raises.
        """
        text, truncated, _ = await self._run(data, mimetype)
        return text, truncated

    async def extract_file(self, f: UploadedFile, data: bytes) -> tuple[str, bool]:
        """extract() for a stored upload; records the outcome on f.status."""
        text, truncated, f.status = await self._run(data, f.mimetype)
        return text, truncated

    async def _run(self, data: bytes, mimetype: str) -> tuple[str, bool, IngestionStatus]:
        entry = self._lookup(mimetype)
        if entry is None:
            logger.info("DocumentExtractor | unsupported mimetype=%s", mimetype)
            return f"[Unsupported file type: {mimetype}]", False, IngestionStatus.FAILED

        extractor = entry.extractor
        try:
            text = await extractor.extract(data)
        except ExtractionError as exc:
            logger.warning(
                "DocumentExtractor | extraction failed mimetype=%s strategy=%s: %s",
                mimetype, extractor.strategy_name, exc,
            )
            return FAILED_PLACEHOLDER, False, IngestionStatus.FAILED

        if not text.strip():
            return f"[No text found in {extractor.kind}]", False, IngestionStatus.EXTRACTED

        truncated = len(text) > self._excerpt_chars
        return text[: self._excerpt_chars], truncated, IngestionStatus.EXTRACTED

    async def ingest(
        self,
        files: Sequence[UploadedFile],
        store: UploadStore,
    ) -> list[ExtractedDocument]:
        """
        Extract every file in attachment order, updating each file's status.
        A file that cannot even be read still gets a placeholder entry.
        """
        documents: list[ExtractedDocument] = []

        for f in files:
            try:
                data = await store.read(f)
            except OSError as exc:
                logger.error("DocumentExtractor | cannot read id=%s: %s", f.id, exc)
                f.status = IngestionStatus.FAILED
                documents.append(ExtractedDocument(f.id, f.original_name, FAILED_PLACEHOLDER, False))
                continue

            text, truncated = await self.extract_file(f, data)
            documents.append(ExtractedDocument(f.id, f.original_name, text, truncated))

        logger.info(
            "DocumentExtractor | ingested files=%d failed=%d",
            len(files), sum(1 for f in files if f.status == IngestionStatus.FAILED),
        )
        return documents
