"""
Retry/Backoff Transport — the only component that calls the upstream API.

Retry policy (RetryPolicy):
  - Retryable:     network-level failures (httpx.TransportError: connect /
                   read / write / pool timeouts, protocol errors) and HTTP 429
  - Non-retryable: every other response, 4xx and 5xx included. Those are
                   returned to the caller, who relays them verbatim.
  - Linear backoff: base_delay × (attempt + 1) after a failed attempt
  - Rate limit:     the same delay × rate_limit_multiplier
  - No wait after the final attempt; exhaustion raises UpstreamUnavailable
  - Every attempt runs under an explicit per-call timeout

  attempt 0 ──fail──► sleep(1×base) ──► attempt 1 ──fail──► sleep(2×base) ──► attempt 2 ──fail──► UpstreamUnavailable
                                                                  429 ──► sleep(2×base×mult)

Usage::

    transport = RetryingTransport(httpx.AsyncClient(), RetryPolicy(max_attempts=3))

    response = await transport.send("POST", url, json=payload, headers=headers)

    async with transport.stream("POST", url, json=payload, headers=headers) as response:
        async for chunk in response.aiter_bytes():
            ...
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from chatprime.core.errors import UpstreamTransientError, UpstreamUnavailable

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Retryable exception detection
# ---------------------------------------------------------------------------

_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    httpx.TransportError,       # ConnectError, ReadTimeout, RemoteProtocolError, ...
    asyncio.TimeoutError,
    ConnectionError,
)


def is_retryable(exc: BaseException) -> bool:
    """True if the exception is a transient network-level failure."""
    return isinstance(exc, _RETRYABLE_EXCEPTIONS)


# ---------------------------------------------------------------------------
# Policy + per-call state
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts:          int   = 3
    base_delay:            float = 1.0
    rate_limit_multiplier: float = 2.0
    classifier:            Callable[[BaseException], bool] = is_retryable

    def delay_for(self, attempt: int, *, rate_limited: bool = False) -> float:
        delay = self.base_delay * (attempt + 1)
        return delay * self.rate_limit_multiplier if rate_limited else delay


@dataclass
class RetryState:
    """Ephemeral, scoped to one upstream call."""
    attempt:    int   = 0
    next_delay: float = 0.0


# ---------------------------------------------------------------------------
# RetryingTransport
# ---------------------------------------------------------------------------

class RetryingTransport:
    """
    Wraps a shared httpx.AsyncClient with the retry policy.

    `sleep` is injectable so tests can record delays without waiting.
    """

    def __init__(
        self,
        client:  httpx.AsyncClient,
        policy:  RetryPolicy | None = None,
        timeout: float = 60.0,
        sleep:   Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._client  = client
        self._policy  = policy or RetryPolicy()
        self._timeout = httpx.Timeout(timeout)
        self._sleep   = sleep

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def aclose(self) -> None:
        await self._client.aclose()

    # -----------------------------------------------------------------------
    # Buffered call
    # -----------------------------------------------------------------------

    async def send(
        self,
        method:  str,
        url:     str,
        *,
        json:    Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Issue the call with retries; the returned response body is fully read."""

        async def attempt() -> httpx.Response:
            return await self._client.request(
                method, url, json=json, headers=headers, timeout=self._timeout,
            )

        return await self._run(attempt, method, url)

    # -----------------------------------------------------------------------
    # Streaming call
    # -----------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def stream(
        self,
        method:  str,
        url:     str,
        *,
        json:    Any = None,
        headers: dict[str, str] | None = None,
    ) -> AsyncIterator[httpx.Response]:
        """
        Open a streaming response with retries on connection setup.
        Once headers have arrived the body is never retried; the response is
        closed when the block exits, whether normally or by cancellation.
        """

        async def attempt() -> httpx.Response:
            request = self._client.build_request(
                method, url, json=json, headers=headers, timeout=self._timeout,
            )
            return await self._client.send(request, stream=True)

        response = await self._run(attempt, method, url)
        try:
            yield response
        finally:
            await response.aclose()

    # -----------------------------------------------------------------------
    # Retry loop
    # -----------------------------------------------------------------------

    async def _run(
        self,
        attempt_fn: Callable[[], Awaitable[httpx.Response]],
        method:     str,
        url:        str,
    ) -> httpx.Response:
        policy = self._policy
        state  = RetryState()
        last_error: Exception | None = None

        for attempt in range(policy.max_attempts):
            state.attempt = attempt
            rate_limited  = False
            try:
                response = await attempt_fn()
            except Exception as exc:
                if not policy.classifier(exc):
                    raise
                last_error = UpstreamTransientError(f"{type(exc).__name__}: {exc}")
                logger.warning(
                    "RetryingTransport | %s %s attempt=%d/%d failed: %s",
                    method, url, state.attempt + 1, policy.max_attempts, last_error,
                )
            else:
                if response.status_code != 429:
                    return response
                await response.aclose()
                rate_limited = True
                last_error   = UpstreamTransientError("HTTP 429 rate limited", rate_limited=True)
                logger.warning(
                    "RetryingTransport | %s %s attempt=%d/%d rate limited",
                    method, url, state.attempt + 1, policy.max_attempts,
                )

            if state.attempt < policy.max_attempts - 1:
                state.next_delay = max(
                    state.next_delay,
                    policy.delay_for(state.attempt, rate_limited=rate_limited),
                )
                await self._sleep(state.next_delay)

        raise UpstreamUnavailable(
            f"Upstream unavailable after {policy.max_attempts} attempts: {last_error}",
            attempts=policy.max_attempts,
            last_error=last_error,
        )
