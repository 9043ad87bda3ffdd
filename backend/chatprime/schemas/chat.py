"""
Gateway — Pydantic Request/Response Schemas

Covers the OpenAI-compatible surface the gateway understands:
  - POST /v1/chat/completions   (ChatRequest)
  - POST /v1/completions        (CompletionRequest, legacy)
  - POST /v1/moderations        (ModerationRequest / ModerationBypass)
  - Structured error bodies shared by every route

Design decisions:
  - Range limits on temperature / max_tokens are NOT enforced here; the
    orchestrator clamps them so that out-of-range input is normalised
    instead of rejected. NaN and infinite temperatures are rejected.
  - Unknown fields are kept (extra="allow") on the request, on each message
    and on each content part, and forwarded upstream.
  - An empty `messages` list is accepted by the schema and rejected by the
    orchestrator, so JSON and multipart requests fail the same way.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

class Role(str, Enum):
    SYSTEM    = "system"
    USER      = "user"
    ASSISTANT = "assistant"


class ImageURL(BaseModel):
    url:    str
    detail: str | None = None


class ContentPart(BaseModel):
    """One element of a multipart (vision) message body."""
    model_config = ConfigDict(extra="allow")

    type:      Literal["text", "image_url"]
    text:      str | None      = None
    image_url: ImageURL | None = None


class Message(BaseModel):
    """
    A single chat turn.

    content is either plain text or, for vision-capable models, an ordered
    list of text and image-reference parts.
    """
    model_config = ConfigDict(extra="allow")

    role:    Role
    content: str | list[ContentPart] = ""

    @property
    def text_length(self) -> int:
        """Characters of text content; image parts count as zero."""
        if isinstance(self.content, str):
            return len(self.content)
        return sum(len(p.text or "") for p in self.content if p.type == "text")

    @property
    def has_image(self) -> bool:
        return isinstance(self.content, list) and any(p.type == "image_url" for p in self.content)

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class ChatRequest(BaseModel):
    """Incoming POST /v1/chat/completions body."""
    model_config = ConfigDict(extra="allow")

    model:       str | None    = Field(None, description="Explicit model or alias; omitted = auto-select")
    messages:    list[Message] = Field(default_factory=list, description="Conversation, oldest first")
    temperature: float | None  = Field(None, allow_inf_nan=False, description="Clamped to [0, 2]")
    max_tokens:  int | None    = Field(None, description="Capped at the configured ceiling")
    stream:      bool          = False

    @property
    def passthrough_fields(self) -> dict[str, Any]:
        """Client fields the gateway does not interpret (top_p, stop, user, ...)."""
        return dict(self.model_extra or {})


class CompletionRequest(BaseModel):
    """Incoming POST /v1/completions body (legacy prompt-style API)."""
    model:       str | None   = None
    prompt:      str | None   = None
    temperature: float | None = Field(None, allow_inf_nan=False)
    max_tokens:  int | None   = None
    stream:      bool         = False


class ModerationRequest(BaseModel):
    input: str = ""


class ModerationBypass(BaseModel):
    """Fail-open response returned whenever moderation cannot run."""
    flagged:  bool = False
    bypassed: bool = True
    message:  str


# ---------------------------------------------------------------------------
# Legacy completion response shape
# ---------------------------------------------------------------------------

class CompletionChoice(BaseModel):
    text:          str
    index:         int = 0
    finish_reason: str | None = None


class TextCompletion(BaseModel):
    id:      str
    object:  str = "text_completion"
    created: int
    model:   str
    choices: list[CompletionChoice]
    usage:   dict[str, Any] | None = None


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all gateway-generated 4xx/5xx responses.
    Upstream errors are NOT wrapped; they are relayed verbatim.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")
