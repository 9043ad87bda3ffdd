"""
Root conftest.py — Shared fixtures for ALL tests (unit + integration)

Fixture hierarchy:
  function-scoped : test_settings, upstream, sleeps, transport, gateway,
                    app, async_client, sample file bytes

Environment strategy:
  - No network: the upstream provider is an httpx.MockTransport driven by
    FakeUpstream, which records every outbound request.
  - Retry sleeps are recorded by an AsyncMock instead of waited on.
  - Uploads land in a per-test tmp_path directory.

How to run:
  pytest                          # all tests
  pytest -m unit                  # unit tests only (fast, no HTTP stack)
  pytest -m integration           # full ASGI stack with a mock upstream
  pytest backend/tests/unit/test_cache.py
"""

from __future__ import annotations

import json
import os
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# ─────────────────────────────────────────────────────────────────────────────
# Patch environment BEFORE any app imports so modules read test config
# ─────────────────────────────────────────────────────────────────────────────

os.environ.setdefault("OPENAI_API_KEY", "sk-test-key")
os.environ.setdefault("APP_ENV",        "development")
os.environ.setdefault("DEBUG",          "false")

TEST_API_KEY  = "sk-test-key"
UPSTREAM_BASE = "https://upstream.test/v1"


# ─────────────────────────────────────────────────────────────────────────────
# Upstream response builders
# ─────────────────────────────────────────────────────────────────────────────

def chat_completion(content: str = "Hello there!", model: str = "gpt-3.5-turbo") -> dict[str, Any]:
    """A minimal chat.completion body as the provider returns it."""
    return {
        "id":      "chatcmpl-test123",
        "object":  "chat.completion",
        "created": 1_700_000_000,
        "model":   model,
        "choices": [
            {
                "index":         0,
                "message":       {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
        "usage": {"prompt_tokens": 9, "completion_tokens": 3, "total_tokens": 12},
    }


def sse_chunks(*deltas: str) -> list[bytes]:
    """Provider-style SSE frames for a streamed answer, ending with [DONE]."""
    frames = [
        f'data: {json.dumps({"choices": [{"index": 0, "delta": {"content": d}}]})}\n\n'.encode()
        for d in deltas
    ]
    frames.append(b"data: [DONE]\n\n")
    return frames


class FakeUpstream:
    """
    Callable handler for httpx.MockTransport.

    Queue replies with reply(); each is an httpx.Response factory, a ready
    httpx.Response, or an exception instance to raise. When the queue is
    empty, `default` answers.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._queue:   list[Any]           = []
        self.default:  Callable[[httpx.Request], httpx.Response] = (
            lambda request: httpx.Response(200, json=chat_completion())
        )

    def reply(self, *items: Any) -> "FakeUpstream":
        self._queue.extend(items)
        return self

    def json_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests if r.content]

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._queue.pop(0) if self._queue else self.default
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, httpx.Response):
            return item
        return item(request)


# ─────────────────────────────────────────────────────────────────────────────
# Settings + gateway wiring
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def test_settings(tmp_path):
    """Isolated settings: temp upload dir, fast reaper, no .env file."""
    from chatprime.core.config import Settings

    return Settings(
        _env_file=None,
        openai_api_key=TEST_API_KEY,
        openai_base_url=UPSTREAM_BASE,
        upload_dir=str(tmp_path / "uploads"),
        file_cleanup_delay_seconds=0.05,
        app_env="development",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sleeps() -> AsyncMock:
    """Replaces asyncio.sleep inside the retry transport; inspect await_args_list."""
    return AsyncMock(return_value=None)


@pytest.fixture
def transport(test_settings, upstream, sleeps):
    from chatprime.llm.transport import RetryingTransport, RetryPolicy

    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    policy = RetryPolicy(
        max_attempts=test_settings.retry_max_attempts,
        base_delay=test_settings.retry_base_delay,
        rate_limit_multiplier=test_settings.rate_limit_multiplier,
    )
    return RetryingTransport(client, policy, timeout=5.0, sleep=sleeps)


@pytest_asyncio.fixture
async def gateway(test_settings, transport):
    from chatprime.llm.gateway import LLMGateway

    gw = LLMGateway(test_settings, transport)
    yield gw
    await gw.aclose()


# ─────────────────────────────────────────────────────────────────────────────
# FastAPI app + client
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def make_app(gateway):
    """Factory: build the app around the test gateway, optionally with other settings."""
    from chatprime.main import create_app

    def _build(settings=None):
        return create_app(settings or gateway.settings, gateway=gateway)

    return _build


@pytest.fixture
def app(make_app):
    return make_app()


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client using the ASGI app (no lifespan, gateway pre-wired)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ─────────────────────────────────────────────────────────────────────────────
# Sample file bytes
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def sample_txt_bytes() -> bytes:
    """Plain text content."""
    return b"Quarterly revenue grew 12%.\nChurn fell to 3%.\n"


@pytest.fixture
def sample_png_bytes() -> bytes:
    """PNG signature plus padding; content is never decoded when OCR is patched."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def exe_bytes() -> bytes:
    """Windows PE executable — should be rejected by MIME type check."""
    return b"MZ\x90\x00" + b"\x00" * 100
