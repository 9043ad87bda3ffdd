"""
Unit Tests — PromptAssembler + truncate_messages
═════════════════════════════════════════════════
Coverage targets:
  ✅ Under budget → identity
  ✅ Truncation keeps the longest fitting suffix, order preserved
  ✅ Truncation is idempotent
  ✅ Oversized newest message → empty result
  ✅ Text models get "Files attached:" context on the last user message
  ✅ Vision models get [text, image_url...] parts in attachment order
  ✅ Input messages are never mutated
"""

from __future__ import annotations

import pytest

from chatprime.llm.prompt import PromptAssembler, format_documents, truncate_messages
from chatprime.processing.extractor import ExtractedDocument
from chatprime.schemas.chat import ContentPart, ImageURL, Message, Role


def _msg(role: str, text: str) -> Message:
    return Message(role=Role(role), content=text)


def _doc(name: str, excerpt: str) -> ExtractedDocument:
    return ExtractedDocument(source_file_id=f"id-{name}", source_name=name, text_excerpt=excerpt, truncated=False)


# ─────────────────────────────────────────────────────────────────────────────
# Truncation
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestTruncation:

    def test_under_budget_is_identity(self):
        messages = [_msg("system", "be brief"), _msg("user", "hello")]
        assert truncate_messages(messages, 100) == messages

    def test_keeps_longest_fitting_suffix(self):
        messages = [_msg("user", "a" * 50), _msg("assistant", "b" * 30), _msg("user", "c" * 40)]
        result = truncate_messages(messages, 75)
        assert result == messages[1:]

    def test_truncation_is_idempotent(self):
        messages = [_msg("user", "a" * 50), _msg("assistant", "b" * 30), _msg("user", "c" * 40)]
        once = truncate_messages(messages, 75)
        assert truncate_messages(once, 75) == once

    def test_oversized_newest_message_yields_empty(self):
        messages = [_msg("user", "short"), _msg("user", "x" * 101)]
        assert truncate_messages(messages, 100) == []

    def test_exact_budget_fits(self):
        messages = [_msg("user", "x" * 100)]
        assert truncate_messages(messages, 100) == messages


# ─────────────────────────────────────────────────────────────────────────────
# Document merge
# ─────────────────────────────────────────────────────────────────────────────

@pytest.mark.unit
class TestPromptAssembler:

    def test_format_documents_blocks(self):
        text = format_documents([_doc("a.txt", "alpha"), _doc("b.pdf", "")])
        assert text == "[File: a.txt]\nalpha\n\n[File: b.pdf]\nNo text extracted"

    def test_text_model_appends_context_to_last_user_message(self):
        messages = [_msg("user", "first"), _msg("assistant", "ok"), _msg("user", "summarise")]
        result = PromptAssembler(budget=8_000).assemble(messages, [_doc("notes.txt", "revenue up")])

        assert result[-1].content == "summarise\n\nFiles attached:\n[File: notes.txt]\nrevenue up"
        assert result[0].content == "first"

    def test_input_is_not_mutated(self):
        messages = [_msg("user", "summarise")]
        PromptAssembler().assemble(messages, [_doc("notes.txt", "revenue up")])
        assert messages[0].content == "summarise"

    def test_vision_restructures_into_parts_in_attachment_order(self):
        messages = [_msg("user", "what is in these?")]
        result = PromptAssembler().assemble(
            messages,
            [_doc("one.png", "sign text")],
            ["http://h/uploads/1.png", "http://h/uploads/2.png"],
            vision=True,
        )

        parts = result[-1].content
        assert isinstance(parts, list)
        assert parts[0].type == "text"
        assert parts[0].text == "what is in these?\n\n[File: one.png]\nsign text"
        assert [p.image_url.url for p in parts[1:]] == ["http://h/uploads/1.png", "http://h/uploads/2.png"]

    def test_vision_keeps_client_image_parts_before_attachments(self):
        existing = Message(
            role=Role.USER,
            content=[
                ContentPart(type="text", text="compare"),
                ContentPart(type="image_url", image_url=ImageURL(url="http://client/img.png")),
            ],
        )
        result = PromptAssembler().assemble([existing], [], ["http://h/uploads/a.png"], vision=True)

        urls = [p.image_url.url for p in result[-1].content if p.type == "image_url"]
        assert urls == ["http://client/img.png", "http://h/uploads/a.png"]

    def test_image_refs_ignored_for_text_model(self):
        result = PromptAssembler().assemble([_msg("user", "hi")], [], ["http://h/uploads/a.png"], vision=False)
        assert result[-1].content == "hi"

    def test_no_user_message_leaves_messages_unchanged(self):
        messages = [_msg("system", "rules")]
        result = PromptAssembler().assemble(messages, [_doc("a.txt", "alpha")])
        assert result == messages

    def test_truncation_applies_after_enrichment(self):
        messages = [_msg("user", "old " * 10), _msg("user", "new")]
        result = PromptAssembler(budget=60).assemble(messages, [_doc("a.txt", "x" * 20)])
        assert len(result) == 1
        assert result[0].content.startswith("new\n\nFiles attached:")
