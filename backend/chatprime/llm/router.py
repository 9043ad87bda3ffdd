"""
Model Selector — Upstream Model Choice by Override / Images / Prompt Size

The selector answers: "Which upstream model should serve this request?"

Policy, in priority order:

  1. Explicit model    → resolved through the alias table to a canonical id.
                         Unknown names fall back to the default model.
  2. Image content     → any image_url part in the messages, or any image
                         attachment, selects the vision-capable model.
  3. Large prompt      → aggregate text length above the threshold selects
                         the higher-capacity model.
  4. Otherwise         → the default model.

Design principles:
  - Pure Python (no I/O, no network) — fast and testable.
  - The catalogue of ModelSpecs also backs the /v1/models fallback list.

Adding a new model:
  Add a ModelSpec to _REGISTERED_MODELS and its aliases to _ALIASES.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from chatprime.schemas.chat import Message

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ModelSpec: metadata for each registered model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ModelSpec:
    """
    Static metadata for one upstream model.

    supports_vision:  accepts image_url content parts
    context_window:   maximum total tokens (input + output)
    """
    model_id:        str
    context_window:  int
    supports_vision: bool = False


DEFAULT_MODEL       = "gpt-3.5-turbo"
HIGH_CAPACITY_MODEL = "gpt-4"
VISION_MODEL        = "gpt-4-vision-preview"

_REGISTERED_MODELS: list[ModelSpec] = [
    ModelSpec(model_id=HIGH_CAPACITY_MODEL, context_window=8_192),
    ModelSpec(model_id=VISION_MODEL,        context_window=128_000, supports_vision=True),
    ModelSpec(model_id=DEFAULT_MODEL,       context_window=16_385),
]

_SPECS_BY_ID: dict[str, ModelSpec] = {s.model_id: s for s in _REGISTERED_MODELS}

# Client-facing names → canonical upstream ids (keys are lower-case)
_ALIASES: dict[str, str] = {
    "gpt-4":                HIGH_CAPACITY_MODEL,
    "gpt4":                 HIGH_CAPACITY_MODEL,
    "gpt-4-vision":         VISION_MODEL,
    "gpt-4-vision-preview": VISION_MODEL,
    "vision":               VISION_MODEL,
    "gpt-3.5":              DEFAULT_MODEL,
    "gpt-3.5-turbo":        DEFAULT_MODEL,
    "gpt35":                DEFAULT_MODEL,
    "default":              DEFAULT_MODEL,
}


def registered_models() -> list[ModelSpec]:
    return list(_REGISTERED_MODELS)


def is_vision_model(model_id: str) -> bool:
    spec = _SPECS_BY_ID.get(model_id)
    return bool(spec and spec.supports_vision)


# ---------------------------------------------------------------------------
# ModelSelector
# ---------------------------------------------------------------------------

class ModelSelector:
    """
    Pure-Python selection logic.

    Usage::

        selector = ModelSelector(large_prompt_threshold=8_000)
        model_id = selector.select(body.model, body.messages, has_image_attachments=True)
    """

    def __init__(self, large_prompt_threshold: int = 8_000) -> None:
        self._threshold = large_prompt_threshold

    @staticmethod
    def resolve_alias(name: str) -> str:
        canonical = _ALIASES.get(name.strip().lower())
        if canonical is None:
            logger.info("ModelSelector | unknown model alias=%r → %s", name, DEFAULT_MODEL)
            return DEFAULT_MODEL
        return canonical

    def select(
        self,
        explicit_model:        str | None,
        messages:              Sequence[Message],
        has_image_attachments: bool = False,
    ) -> str:
        if explicit_model:
            selected, reason = self.resolve_alias(explicit_model), "explicit"
        elif has_image_attachments or any(m.has_image for m in messages):
            selected, reason = VISION_MODEL, "images"
        elif sum(m.text_length for m in messages) > self._threshold:
            selected, reason = HIGH_CAPACITY_MODEL, "large_prompt"
        else:
            selected, reason = DEFAULT_MODEL, "default"

        logger.debug("ModelSelector | selected model_id=%s reason=%s", selected, reason)
        return selected
