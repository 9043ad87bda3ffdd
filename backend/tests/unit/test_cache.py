"""
Unit Tests — ResponseCache + make_cache_key
════════════════════════════════════════════
Coverage targets:
  ✅ Key is independent of dict key order
  ✅ Any differing field changes the key
  ✅ FIFO eviction ignores reads
  ✅ Ineligible responses (streaming, non-200, oversized, non-JSON) are skipped
"""

from __future__ import annotations

import json

import pytest

from chatprime.llm.cache import ResponseCache, make_cache_key


def _payload(**overrides):
    body = {
        "model":       "gpt-3.5-turbo",
        "messages":    [{"role": "user", "content": "hi"}],
        "temperature": 0.7,
        "max_tokens":  1000,
        "stream":      False,
    }
    body.update(overrides)
    return body


@pytest.mark.unit
class TestCacheKey:

    def test_key_ignores_field_order(self):
        a = _payload()
        b = dict(reversed(list(a.items())))
        assert make_cache_key(a) == make_cache_key(b)

    def test_different_temperature_changes_key(self):
        assert make_cache_key(_payload()) != make_cache_key(_payload(temperature=0.2))

    def test_different_model_changes_key(self):
        assert make_cache_key(_payload()) != make_cache_key(_payload(model="gpt-4"))

    def test_key_is_sha256_hex(self):
        key = make_cache_key(_payload())
        assert len(key) == 64
        int(key, 16)


@pytest.mark.unit
class TestResponseCache:

    def test_get_miss_then_hit(self):
        cache = ResponseCache(capacity=2)
        assert cache.get("k") is None
        assert cache.put("k", {"id": 1})
        assert cache.get("k") == {"id": 1}
        assert cache.stats() == {"size": 1, "capacity": 2, "hits": 1, "misses": 1}

    def test_fifo_eviction_ignores_reads(self):
        """Capacity N, N+1 inserts → the first inserted key is gone even if read."""
        cache = ResponseCache(capacity=3)
        for key in ("a", "b", "c"):
            cache.put(key, {"k": key})

        cache.get("a")               # a read must not refresh "a"
        cache.put("d", {"k": "d"})

        assert "a" not in cache
        assert all(k in cache for k in ("b", "c", "d"))
        assert len(cache) == 3

    def test_streaming_is_never_stored(self):
        cache = ResponseCache()
        assert cache.put("k", {"x": 1}, streaming=True) is False
        assert len(cache) == 0

    def test_non_200_is_never_stored(self):
        cache = ResponseCache()
        assert cache.store_raw("k", b'{"error": "bad"}', status=400) is False
        assert "k" not in cache

    def test_oversized_body_is_skipped(self):
        cache = ResponseCache(max_bytes=32)
        body  = json.dumps({"text": "x" * 64}).encode()
        assert cache.store_raw("k", body, status=200) is False

    def test_unparseable_body_is_skipped_silently(self):
        cache = ResponseCache()
        assert cache.store_raw("k", b"<html>not json</html>", status=200) is False
        assert len(cache) == 0

    def test_store_raw_parses_json(self):
        cache = ResponseCache()
        assert cache.store_raw("k", b'{"id": "chatcmpl-1"}', status=200) is True
        assert cache.get("k") == {"id": "chatcmpl-1"}

    def test_clear(self):
        cache = ResponseCache()
        cache.put("k", {"x": 1})
        cache.clear()
        assert len(cache) == 0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            ResponseCache(capacity=0)
