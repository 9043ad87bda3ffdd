"""
Response Cache — bounded, insertion-ordered store of upstream responses.

Keyed by the SHA-256 of the fully normalised outbound payload (after model
selection, truncation and parameter clamping), so two client requests that
differ only in formatting collide on the same entry.

Eligibility for put():
  - not a streaming response
  - upstream status 200
  - body smaller than max_bytes
  - body parses as JSON (otherwise silently skipped)

Eviction is strict FIFO: once capacity is exceeded the earliest-inserted
entry goes, regardless of how recently it was read.

get() and put() never suspend, so a lookup-then-insert for one request is
atomic on the event loop. The lock keeps that true if the cache is ever
touched from worker threads.
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY  = 500
DEFAULT_MAX_BYTES = 100 * 1024


def make_cache_key(payload: dict[str, Any]) -> str:
    """Canonical JSON (sorted keys, compact separators) → SHA-256 hex."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    key:         str
    payload:     dict[str, Any]
    inserted_at: float


class ResponseCache:
    """
    Usage::

        cache = ResponseCache(capacity=500)
        key   = make_cache_key(outbound)
        hit   = cache.get(key)
        ...
        cache.store_raw(key, body, status=200, streaming=False)
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._capacity  = capacity
        self._max_bytes = max_bytes
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock   = threading.Lock()
        self.hits    = 0
        self.misses  = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
        logger.debug("ResponseCache | hit key=%s", key[:12])
        return entry.payload

    def put(
        self,
        key:        str,
        payload:    dict[str, Any],
        *,
        status:     int  = 200,
        streaming:  bool = False,
        size_bytes: int  = 0,
    ) -> bool:
        """Insert if eligible. Returns True when the entry was stored."""
        if streaming or status != 200 or size_bytes >= self._max_bytes:
            return False

        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, payload=payload, inserted_at=time.time())
            while len(self._entries) > self._capacity:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("ResponseCache | evicted key=%s", evicted[:12])
        return True

    def store_raw(self, key: str, body: bytes, *, status: int, streaming: bool = False) -> bool:
        """Parse `body` as JSON and put() it; unparseable bodies are skipped."""
        if streaming or status != 200 or len(body) >= self._max_bytes:
            return False
        try:
            payload = json.loads(body)
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            logger.warning("ResponseCache | not caching unparseable body: %s", exc)
            return False
        if not isinstance(payload, dict):
            return False
        return self.put(key, payload, status=status, streaming=streaming, size_bytes=len(body))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> dict[str, int]:
        return {
            "size":     len(self._entries),
            "capacity": self._capacity,
            "hits":     self.hits,
            "misses":   self.misses,
        }
