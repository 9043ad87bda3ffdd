"""
Unit Tests — ModelSelector
══════════════════════════
Priority order: explicit alias → images → large prompt → default.
"""

from __future__ import annotations

import pytest

from chatprime.llm.router import (
    DEFAULT_MODEL,
    HIGH_CAPACITY_MODEL,
    VISION_MODEL,
    ModelSelector,
    is_vision_model,
    registered_models,
)
from chatprime.schemas.chat import ContentPart, ImageURL, Message, Role


def _user(text: str) -> Message:
    return Message(role=Role.USER, content=text)


@pytest.fixture
def selector() -> ModelSelector:
    return ModelSelector(large_prompt_threshold=100)


@pytest.mark.unit
class TestModelSelector:

    def test_default_for_small_text_prompt(self, selector):
        assert selector.select(None, [_user("hi")]) == DEFAULT_MODEL

    def test_large_prompt_selects_high_capacity(self, selector):
        assert selector.select(None, [_user("x" * 60), _user("y" * 60)]) == HIGH_CAPACITY_MODEL

    def test_threshold_is_exclusive(self, selector):
        assert selector.select(None, [_user("x" * 100)]) == DEFAULT_MODEL

    def test_image_attachment_selects_vision(self, selector):
        assert selector.select(None, [_user("what is this")], has_image_attachments=True) == VISION_MODEL

    def test_image_part_in_messages_selects_vision(self, selector):
        msg = Message(
            role=Role.USER,
            content=[ContentPart(type="image_url", image_url=ImageURL(url="http://x/a.png"))],
        )
        assert selector.select(None, [msg]) == VISION_MODEL

    def test_images_beat_large_prompt(self, selector):
        assert selector.select(None, [_user("x" * 500)], has_image_attachments=True) == VISION_MODEL

    @pytest.mark.parametrize("name,expected", [
        ("gpt-4",         HIGH_CAPACITY_MODEL),
        ("GPT4",          HIGH_CAPACITY_MODEL),
        ("vision",        VISION_MODEL),
        ("gpt-3.5",       DEFAULT_MODEL),
        ("no-such-model", DEFAULT_MODEL),
    ])
    def test_explicit_model_resolves_alias(self, selector, name, expected):
        assert selector.select(name, [_user("hi")]) == expected

    def test_explicit_model_wins_over_images(self, selector):
        assert selector.select("gpt-4", [_user("hi")], has_image_attachments=True) == HIGH_CAPACITY_MODEL

    def test_vision_flag_comes_from_catalogue(self):
        assert is_vision_model(VISION_MODEL)
        assert not is_vision_model(DEFAULT_MODEL)
        assert not is_vision_model("unknown")

    def test_registered_models_cover_selection_targets(self):
        ids = {s.model_id for s in registered_models()}
        assert {DEFAULT_MODEL, HIGH_CAPACITY_MODEL, VISION_MODEL} <= ids
