"""
Streaming Relay — forward upstream SSE bytes to the caller as they arrive.

Pull-based: relay() is an async generator the HTTP layer iterates. Each
upstream chunk is yielded as soon as it is read; nothing is accumulated, so
the full response is never buffered. Byte order is preserved, chunk
boundaries are not guaranteed.

Cancellation:

  client disconnects ──► watch_disconnect() sets CancelToken
                              │
  relay() waits on (next upstream chunk | token) ──► token wins
                              │
                         abort the pending read, close upstream,
                         run on_close (release file references)

The same cleanup runs when the consumer stops iterating (aclose) or the
serving task is cancelled. The relay never touches the response cache.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

logger = logging.getLogger(__name__)

SSE_HEADERS: dict[str, str] = {
    "Cache-Control":     "no-cache",
    "Connection":        "keep-alive",
    "X-Accel-Buffering": "no",    # disable nginx buffering for SSE
}


class CancelToken:
    """One-shot abort signal threaded from the client connection to the upstream read."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


async def watch_disconnect(
    is_disconnected: Callable[[], Awaitable[bool]],
    token:           CancelToken,
    interval:        float = 0.5,
) -> None:
    """Poll the client connection and cancel `token` once it goes away."""
    while not token.cancelled:
        if await is_disconnected():
            logger.info("StreamRelay | client disconnected")
            token.cancel()
            return
        await asyncio.sleep(interval)


async def _maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


async def relay(
    upstream: AsyncIterator[bytes],
    cancel:   CancelToken | None = None,
    on_close: Callable[[], Any] | None = None,
) -> AsyncIterator[bytes]:
    """Yield upstream chunks in order until the stream ends or `cancel` fires."""
    token     = cancel or CancelToken()
    iterator  = upstream.__aiter__()
    cancelled = asyncio.ensure_future(token.wait())
    read: asyncio.Future | None = None
    relayed   = 0

    try:
        while True:
            read = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait({read, cancelled}, return_when=asyncio.FIRST_COMPLETED)

            if read not in done:
                logger.info("StreamRelay | aborting upstream read after %d bytes", relayed)
                break

            try:
                chunk = read.result()
            except StopAsyncIteration:
                break

            if chunk:
                relayed += len(chunk)
                yield chunk
    finally:
        cancelled.cancel()
        if read is not None and not read.done():
            read.cancel()
            await asyncio.gather(read, return_exceptions=True)
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except RuntimeError as exc:
                # generator already running / closed by the cancelled read
                logger.debug("StreamRelay | upstream iterator close skipped: %s", exc)
        if on_close is not None:
            await _maybe_await(on_close())
        logger.debug("StreamRelay | closed relayed_bytes=%d", relayed)
