"""
Prompt Assembler — document context merge + character-budget truncation.

Responsibilities:
  1. Render extracted documents as "[File: <name>]\\n<excerpt>" blocks.
  2. Attach them to the most recent user message:
       text models   → appended as "Files attached:" context text
       vision models → the message becomes a multipart body: one text part
                       (original text + document context) followed by one
                       image_url part per image attachment, in attachment order
  3. Truncate the sequence to the character budget, newest first.

Truncation walk:

  messages:  [m0, m1, m2, m3]          budget = B
  walk:       m3 → m2 → m1 → m0         (running total of content length)
  stop BEFORE the first message that would push the total over B.

  The result is always a suffix of the input, so order is preserved and the
  operation is idempotent. A newest message that alone exceeds B yields an
  empty list; the caller decides what to do with that.

The assembler never mutates its input; it works on copies.
"""

from __future__ import annotations

import logging
from typing import Sequence

from chatprime.processing.extractor import ExtractedDocument
from chatprime.schemas.chat import ContentPart, ImageURL, Message, Role

logger = logging.getLogger(__name__)


def format_documents(documents: Sequence[ExtractedDocument]) -> str:
    """Render excerpts as blank-line separated "[File: name]" blocks."""
    return "\n\n".join(
        f"[File: {d.source_name}]\n{d.text_excerpt or 'No text extracted'}"
        for d in documents
    )


def truncate_messages(messages: Sequence[Message], budget: int) -> list[Message]:
    """Keep the longest suffix of `messages` whose total content length fits `budget`."""
    total = 0
    start = len(messages)
    for i in range(len(messages) - 1, -1, -1):
        total += messages[i].text_length
        if total > budget:
            break
        start = i
    return list(messages[start:])


def _last_user_index(messages: Sequence[Message]) -> int | None:
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == Role.USER:
            return i
    return None


def _text_of(message: Message) -> str:
    if isinstance(message.content, str):
        return message.content
    return "".join(p.text or "" for p in message.content if p.type == "text")


class PromptAssembler:
    """
    Usage::

        assembler = PromptAssembler(budget=8_000)
        outgoing  = assembler.assemble(body.messages, documents, image_urls, vision=True)
    """

    def __init__(self, budget: int = 8_000) -> None:
        self._budget = budget

    @property
    def budget(self) -> int:
        return self._budget

    def assemble(
        self,
        messages:   Sequence[Message],
        documents:  Sequence[ExtractedDocument] = (),
        image_refs: Sequence[str]               = (),
        *,
        vision: bool       = False,
        budget: int | None = None,
    ) -> list[Message]:
        merged = [m.model_copy(deep=True) for m in messages]

        if documents or (vision and image_refs):
            idx = _last_user_index(merged)
            if idx is None:
                logger.warning(
                    "PromptAssembler | no user message; dropping context for %d document(s)",
                    len(documents),
                )
            else:
                merged[idx] = self._enrich(merged[idx], documents, image_refs, vision)

        limit  = self._budget if budget is None else budget
        result = truncate_messages(merged, limit)
        if len(result) < len(merged):
            logger.info(
                "PromptAssembler | truncated messages=%d→%d budget=%d",
                len(merged), len(result), limit,
            )
        return result

    @staticmethod
    def _enrich(
        message:    Message,
        documents:  Sequence[ExtractedDocument],
        image_refs: Sequence[str],
        vision:     bool,
    ) -> Message:
        context = format_documents(documents)

        if vision and image_refs:
            text  = _text_of(message) + (f"\n\n{context}" if context else "")
            parts = [ContentPart(type="text", text=text)]
            if isinstance(message.content, list):
                # keep any image parts the client already sent, ahead of attachments
                parts.extend(p for p in message.content if p.type == "image_url")
            parts.extend(
                ContentPart(type="image_url", image_url=ImageURL(url=url))
                for url in image_refs
            )
            return message.model_copy(update={"content": parts})

        if not context:
            return message

        suffix = f"\n\nFiles attached:\n{context}"
        if isinstance(message.content, str):
            return message.model_copy(update={"content": message.content + suffix})

        # Already multipart: extend the first text part, or add one.
        parts = [p.model_copy() for p in message.content]
        for i, p in enumerate(parts):
            if p.type == "text":
                parts[i] = p.model_copy(update={"text": (p.text or "") + suffix})
                break
        else:
            parts.insert(0, ContentPart(type="text", text=suffix.lstrip()))
        return message.model_copy(update={"content": parts})
