"""
LLM Gateway — Per-Request Orchestrator

The gateway is the single call site for every route. It composes:

  ┌──────────────────────────────────────────────────────────────┐
  │  LLMGateway.chat()                                           │
  │       │                                                      │
  │       ▼                                                      │
  │  DocumentExtractor.ingest()   ← FilesIngested                │
  │       │                                                      │
  │       ▼                                                      │
  │  ModelSelector.select()       ← ModelSelected                │
  │       │                                                      │
  │       ▼                                                      │
  │  PromptAssembler.assemble()   ← PromptAssembled (truncated)  │
  │       │                                                      │
  │       ▼                                                      │
  │  ResponseCache.get()          ← CacheChecked (buffered only) │
  │       │ hit ──────────────────────────────► Responding       │
  │       ▼ miss                                                 │
  │  RetryingTransport            ← UpstreamCalling              │
  │       ├── stream  → relay()   ← Relaying                     │
  │       └── buffered → ResponseCache.store_raw() → Responding  │
  │       │                                                      │
  │       ▼                                                      │
  │  FileReaper.schedule()        ← Completed (always)           │
  └──────────────────────────────────────────────────────────────┘

The model is selected from the client's own messages before document context
is merged, because the assembler needs to know whether the model is
vision-capable. The cache key is computed from the final outbound payload.

Usage (from the chat router)::

    gateway = LLMGateway.from_settings(settings)
    result  = await gateway.chat(body, files, base_url="https://host")
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Sequence

import httpx

from chatprime.core.config import Settings
from chatprime.core.errors import (
    ConfigurationError,
    InvalidRequestError,
    ModerationUnavailable,
    UpstreamError,
)
from chatprime.llm.cache import ResponseCache, make_cache_key
from chatprime.llm.prompt import PromptAssembler
from chatprime.llm.router import ModelSelector, is_vision_model, registered_models
from chatprime.llm.streaming import CancelToken, relay
from chatprime.llm.transport import RetryingTransport, RetryPolicy
from chatprime.processing.extractor import DocumentExtractor
from chatprime.schemas.chat import (
    ChatRequest,
    CompletionChoice,
    CompletionRequest,
    Message,
    ModerationBypass,
    Role,
    TextCompletion,
)
from chatprime.storage.uploads import FileReaper, UploadedFile, UploadStore

logger = logging.getLogger(__name__)

TEMPERATURE_RANGE = (0.0, 2.0)

LEGACY_SYSTEM_PROMPT = "You are a helpful assistant."


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class GatewayResponse:
    """A buffered upstream (or cached) response, relayed verbatim."""
    status_code:  int
    body:         bytes
    model_used:   str
    content_type: str  = "application/json"
    cached:       bool = False

    @property
    def headers(self) -> dict[str, str]:
        return {"X-Model-Used": self.model_used}

    def json(self) -> Any:
        return json.loads(self.body)


class StreamingGatewayResponse:
    """
    An open upstream stream wrapped in the relay.

    Iterate it to forward bytes; aclose() is idempotent and releases the
    upstream connection and the request's file references even if the
    stream was never iterated.
    """

    media_type = "text/event-stream"

    def __init__(
        self,
        model_used: str,
        upstream:   AsyncIterator[bytes],
        cleanup:    Callable[[], Awaitable[None]],
        cancel:     CancelToken | None = None,
    ) -> None:
        self.model_used = model_used
        self.cancel     = cancel or CancelToken()
        self._cleanup   = cleanup
        self._released  = False
        self._chunks    = relay(upstream, self.cancel, on_close=self._release)

    @property
    def headers(self) -> dict[str, str]:
        return {"X-Model-Used": self.model_used}

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        await self._cleanup()

    async def aclose(self) -> None:
        await self._chunks.aclose()
        await self._release()


@dataclass
class UploadResult:
    file:      UploadedFile
    url:       str
    excerpt:   str
    truncated: bool


@dataclass
class _Prepared:
    model_id: str
    payload:  dict[str, Any]
    files:    list[UploadedFile] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def clamp_temperature(value: float) -> float:
    low, high = TEMPERATURE_RANGE
    return min(max(value, low), high)


def _choice_text(choice: dict[str, Any]) -> str:
    message = choice.get("message") or {}
    content = message.get("content")
    if isinstance(content, list):
        return "".join(p.get("text", "") for p in content if isinstance(p, dict))
    return content or choice.get("text") or ""


def to_text_completion(chat: dict[str, Any], model_used: str) -> dict[str, Any]:
    """Reshape a chat.completion body into the legacy text_completion shape."""
    choices = [
        CompletionChoice(
            text=_choice_text(c),
            index=c.get("index", i),
            finish_reason=c.get("finish_reason"),
        )
        for i, c in enumerate(chat.get("choices") or [])
    ]
    return TextCompletion(
        id=chat.get("id") or f"cmpl-{uuid.uuid4().hex}",
        created=chat.get("created") or int(time.time()),
        model=chat.get("model") or model_used,
        choices=choices,
        usage=chat.get("usage"),
    ).model_dump(mode="json")


# ---------------------------------------------------------------------------
# LLMGateway
# ---------------------------------------------------------------------------

class LLMGateway:
    """
    Request orchestrator. Instantiate once per application; owns the cache,
    the upload store and the reaper. All public methods are async and safe
    for concurrent use on one event loop.
    """

    def __init__(
        self,
        settings:  Settings,
        transport: RetryingTransport,
        *,
        cache:     ResponseCache | None     = None,
        extractor: DocumentExtractor | None = None,
        selector:  ModelSelector | None     = None,
        assembler: PromptAssembler | None   = None,
        store:     UploadStore | None       = None,
        reaper:    FileReaper | None        = None,
    ) -> None:
        self._settings  = settings
        self._transport = transport
        self._cache     = cache or ResponseCache(settings.cache_capacity, settings.cache_max_bytes)
        self._extractor = extractor or DocumentExtractor(
            excerpt_chars=settings.excerpt_chars,
            ocr_timeout=settings.ocr_timeout_seconds,
        )
        self._selector  = selector or ModelSelector(settings.large_prompt_threshold)
        self._assembler = assembler or PromptAssembler(settings.max_input_chars)
        self._store     = store or UploadStore(settings.upload_dir)
        self._reaper    = reaper or FileReaper(self._store, settings.file_cleanup_delay_seconds)
        self._sweeper: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMGateway":
        client = httpx.AsyncClient(timeout=httpx.Timeout(settings.upstream_timeout_seconds))
        policy = RetryPolicy(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            rate_limit_multiplier=settings.rate_limit_multiplier,
        )
        transport = RetryingTransport(client, policy, timeout=settings.upstream_timeout_seconds)
        return cls(settings, transport)

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    @property
    def store(self) -> UploadStore:
        return self._store

    @property
    def reaper(self) -> FileReaper:
        return self._reaper

    def start(self) -> None:
        """Start the periodic stale-upload sweep."""
        if self._sweeper is None:
            self._sweeper = asyncio.create_task(
                self._reaper.sweep_forever(
                    self._settings.upload_max_age_seconds,
                    self._settings.upload_sweep_interval_seconds,
                ),
                name="upload-sweep",
            )

    async def aclose(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            await asyncio.gather(self._sweeper, return_exceptions=True)
            self._sweeper = None
        await self._reaper.shutdown()
        await self._transport.aclose()

    # -----------------------------------------------------------------------
    # Upstream plumbing
    # -----------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self._settings.openai_base_url.rstrip('/')}/{path.lstrip('/')}"

    def _headers(self) -> dict[str, str]:
        headers = {
            "Content-Type":  "application/json",
            "Authorization": f"Bearer {self._settings.openai_api_key}",
        }
        if self._settings.openai_organization:
            headers["OpenAI-Organization"] = self._settings.openai_organization
        return headers

    def _require_credentials(self) -> None:
        if not self._settings.has_upstream_credentials:
            raise ConfigurationError("OpenAI API key not configured")

    def _base_url(self, request_base_url: str) -> str:
        return self._settings.public_base_url or request_base_url

    # -----------------------------------------------------------------------
    # Normalisation
    # -----------------------------------------------------------------------

    def _normalize(self, body: ChatRequest, model_id: str, messages: Sequence[Message]) -> dict[str, Any]:
        s = self._settings
        temperature = s.default_temperature if body.temperature is None else body.temperature
        max_tokens  = s.default_max_tokens if body.max_tokens is None else body.max_tokens

        return {
            **body.passthrough_fields,
            "model":       model_id,
            "messages":    [m.to_payload() for m in messages],
            "temperature": clamp_temperature(float(temperature)),
            "max_tokens":  max(1, min(int(max_tokens), s.max_tokens_out)),
            "stream":      bool(body.stream),
        }

    async def _prepare(
        self,
        body:     ChatRequest,
        files:    Sequence[UploadedFile],
        base_url: str,
    ) -> _Prepared:
        documents = await self._extractor.ingest(files, self._store) if files else []

        images   = [f for f in files if f.is_image]
        model_id = self._selector.select(body.model, body.messages, has_image_attachments=bool(images))
        vision   = is_vision_model(model_id)
        refs     = [self._store.public_url(f, base_url) for f in images] if vision else []

        messages = self._assembler.assemble(body.messages, documents, refs, vision=vision)
        if not messages:
            raise InvalidRequestError(
                f"messages exceed the input budget of {self._assembler.budget} characters",
                field="messages",
            )
        return _Prepared(model_id=model_id, payload=self._normalize(body, model_id, messages), files=list(files))

    # -----------------------------------------------------------------------
    # Chat
    # -----------------------------------------------------------------------

    async def chat(
        self,
        body:     ChatRequest,
        files:    Sequence[UploadedFile] = (),
        *,
        base_url: str = "",
        cancel:   CancelToken | None = None,
    ) -> GatewayResponse | StreamingGatewayResponse:
        """
        Run one chat completion through the pipeline.

        Raises:
            ConfigurationError:  no upstream credential
            InvalidRequestError: empty messages, or nothing fits the budget
            UpstreamUnavailable: retries exhausted
        """
        files = list(files)
        try:
            self._require_credentials()
            if not body.messages:
                raise InvalidRequestError("'messages' must be a non-empty list", field="messages")

            with self._reaper.hold(files):
                prepared = await self._prepare(body, files, self._base_url(base_url))
                if body.stream:
                    return await self._open_stream(prepared, cancel)
                return await self._buffered(prepared)
        finally:
            if files:
                self._reaper.schedule(files)

    async def _buffered(self, prepared: _Prepared) -> GatewayResponse:
        key    = make_cache_key(prepared.payload)
        cached = self._cache.get(key)
        if cached is not None:
            logger.info("LLMGateway | cache hit model=%s key=%s", prepared.model_id, key[:12])
            body = {**cached, "cached": True, "model_used": prepared.model_id}
            return GatewayResponse(
                status_code=200,
                body=json.dumps(body).encode("utf-8"),
                model_used=prepared.model_id,
                cached=True,
            )

        t0 = time.perf_counter()
        response = await self._transport.send(
            "POST", self._url("/chat/completions"), json=prepared.payload, headers=self._headers(),
        )
        content = response.content
        stored  = self._cache.store_raw(key, content, status=response.status_code, streaming=False)

        logger.info(
            "LLMGateway | model=%s status=%d bytes=%d cached_now=%s latency_ms=%.1f",
            prepared.model_id, response.status_code, len(content), stored,
            (time.perf_counter() - t0) * 1000,
        )
        return GatewayResponse(
            status_code=response.status_code,
            body=content,
            model_used=prepared.model_id,
            content_type=response.headers.get("content-type", "application/json"),
        )

    async def _open_stream(
        self,
        prepared: _Prepared,
        cancel:   CancelToken | None,
    ) -> GatewayResponse | StreamingGatewayResponse:
        stack    = contextlib.AsyncExitStack()
        response = await stack.enter_async_context(
            self._transport.stream(
                "POST", self._url("/chat/completions"), json=prepared.payload, headers=self._headers(),
            )
        )

        if response.status_code != 200:
            try:
                content = await response.aread()
            finally:
                await stack.aclose()
            logger.warning(
                "LLMGateway | stream refused model=%s status=%d", prepared.model_id, response.status_code,
            )
            return GatewayResponse(
                status_code=response.status_code,
                body=content,
                model_used=prepared.model_id,
                content_type=response.headers.get("content-type", "application/json"),
            )

        # The stream outlives chat(); keep the files alive until it closes.
        files = prepared.files
        for f in files:
            self._reaper.acquire(f)

        async def cleanup() -> None:
            try:
                await stack.aclose()
            finally:
                for f in files:
                    self._reaper.release(f)

        logger.info("LLMGateway | streaming model=%s", prepared.model_id)
        return StreamingGatewayResponse(
            model_used=prepared.model_id,
            upstream=response.aiter_bytes(),
            cleanup=cleanup,
            cancel=cancel,
        )

    # -----------------------------------------------------------------------
    # Legacy completions
    # -----------------------------------------------------------------------

    async def complete(
        self,
        body:     CompletionRequest,
        *,
        base_url: str = "",
        cancel:   CancelToken | None = None,
    ) -> GatewayResponse | StreamingGatewayResponse:
        """
        Wrap a prompt as [system, user], run it as chat, reshape the answer.

        Raises:
            UpstreamError: non-200 provider response (relayed verbatim by the API layer)
        """
        if not body.prompt:
            raise InvalidRequestError("'prompt' is required", field="prompt")

        chat_body = ChatRequest(
            model=body.model,
            messages=[
                Message(role=Role.SYSTEM, content=LEGACY_SYSTEM_PROMPT),
                Message(role=Role.USER, content=body.prompt),
            ],
            temperature=body.temperature,
            max_tokens=body.max_tokens,
            stream=body.stream,
        )
        result = await self.chat(chat_body, base_url=base_url, cancel=cancel)
        if isinstance(result, StreamingGatewayResponse):
            return result
        if result.status_code != 200:
            raise UpstreamError(result.status_code, result.body, result.content_type)

        reshaped = to_text_completion(result.json(), result.model_used)
        return GatewayResponse(
            status_code=200,
            body=json.dumps(reshaped).encode("utf-8"),
            model_used=result.model_used,
            cached=result.cached,
        )

    # -----------------------------------------------------------------------
    # Moderation (fail-open)
    # -----------------------------------------------------------------------

    async def moderate(self, text: str) -> dict[str, Any]:
        """
        Ask the provider's moderation endpoint. Any failure degrades to a
        bypass response; moderation never blocks or fails the caller.
        """
        try:
            if not self._settings.has_upstream_credentials:
                raise ModerationUnavailable("no upstream credential configured")

            response = await self._transport.send(
                "POST", self._url("/moderations"), json={"input": text}, headers=self._headers(),
            )
            if response.status_code != 200:
                raise ModerationUnavailable(f"upstream responded with HTTP {response.status_code}")

            result = response.json()["results"][0]
            return {
                "flagged":         bool(result.get("flagged", False)),
                "bypassed":        False,
                "categories":      result.get("categories", {}),
                "category_scores": result.get("category_scores", {}),
            }
        except Exception as exc:   # fail-open: availability over strictness
            logger.warning("LLMGateway | moderation bypassed: %s", exc)
            return ModerationBypass(
                message=f"Moderation unavailable, request allowed: {exc}",
            ).model_dump()

    # -----------------------------------------------------------------------
    # Models
    # -----------------------------------------------------------------------

    @staticmethod
    def fallback_models() -> dict[str, Any]:
        return {
            "object": "list",
            "data":   [{"id": s.model_id, "object": "model"} for s in registered_models()],
        }

    async def list_models(self) -> dict[str, Any]:
        if not self._settings.has_upstream_credentials:
            return self.fallback_models()
        try:
            response = await self._transport.send("GET", self._url("/models"), headers=self._headers())
            if response.status_code != 200:
                raise ValueError(f"HTTP {response.status_code}")
            data = response.json()
            if not isinstance(data, dict) or "data" not in data:
                raise ValueError("unexpected model list shape")
            return data
        except Exception as exc:
            logger.warning("LLMGateway | model listing failed, serving fallback list: %s", exc)
            return self.fallback_models()

    # -----------------------------------------------------------------------
    # Uploads
    # -----------------------------------------------------------------------

    async def ingest_upload(
        self,
        data:          bytes,
        original_name: str,
        mimetype:      str,
        *,
        base_url:      str = "",
    ) -> UploadResult:
        """Store one upload, extract its excerpt, and schedule its expiry."""
        stored = await self._store.save(data, original_name, mimetype)
        try:
            with self._reaper.hold([stored]):
                excerpt, truncated = await self._extractor.extract_file(stored, data)
        finally:
            # standalone uploads stay fetchable for the full max-age window
            self._reaper.schedule([stored], delay=self._settings.upload_max_age_seconds)

        return UploadResult(
            file=stored,
            url=self._store.public_url(stored, self._base_url(base_url)),
            excerpt=excerpt,
            truncated=truncated,
        )
