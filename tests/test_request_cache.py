"""Tests for lexis.request_cache -- TTL cache, coalescing, timeouts."""
import asyncio

import pytest

from lexis.errors import InvalidInput, LookupTimeout, TransientLookupFailure
from lexis.request_cache import CacheEntry, RequestCache, request_key


class CountingProducer:
    """Producer that records calls and optionally waits on a gate."""

    def __init__(self, result="payload", gate: asyncio.Event | None = None, error: Exception | None = None):
        self.calls = 0
        self.result = result
        self.gate = gate
        self.error = error

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


# ============================================================================
# Keys and entries
# ============================================================================


class TestRequestKey:
    def test_scheme_and_host_case_ignored(self):
        assert request_key("HTTPS://Example.COM/path") == request_key("https://example.com/path")

    def test_query_order_ignored(self):
        assert request_key("https://x.org/w?b=2&a=1") == request_key("https://x.org/w?a=1&b=2")

    def test_options_order_ignored(self):
        a = request_key("https://x.org/w", {"params": {"q": "a", "max": 3}, "method": "GET"})
        b = request_key("https://x.org/w", {"method": "GET", "params": {"max": 3, "q": "a"}})
        assert a == b

    def test_path_is_significant(self):
        assert request_key("https://x.org/Apple") != request_key("https://x.org/apple")

    def test_different_options_differ(self):
        assert request_key("https://x.org/w", {"params": {"q": "a"}}) != request_key(
            "https://x.org/w", {"params": {"q": "b"}}
        )


class TestCacheEntry:
    def test_expires_at_ttl_boundary(self):
        entry = CacheEntry(key="k", payload=1, stored_at=100.0, ttl=10.0)
        assert not entry.is_expired(109.9)
        assert entry.is_expired(110.0)


# ============================================================================
# fetch
# ============================================================================


class TestFetch:
    @pytest.mark.asyncio
    async def test_miss_then_hit(self, clock):
        """A live entry is served without calling the producer again."""
        cache = RequestCache(clock=clock)
        producer = CountingProducer("apple")
        assert await cache.fetch("word_apple", 60, producer) == "apple"
        assert await cache.fetch("word_apple", 60, producer) == "apple"
        assert producer.calls == 1
        stats = cache.stats()
        assert stats["misses"] == 1
        assert stats["hits"] == 1

    @pytest.mark.asyncio
    async def test_expired_entry_refetched(self, clock):
        cache = RequestCache(clock=clock)
        producer = CountingProducer("v")
        await cache.fetch("k", 10, producer)
        clock.advance(9.9)
        await cache.fetch("k", 10, producer)
        assert producer.calls == 1
        clock.advance(0.1)
        await cache.fetch("k", 10, producer)
        assert producer.calls == 2

    @pytest.mark.asyncio
    async def test_none_is_not_cached(self, clock):
        """Not-found results go back to the caller but are never stored."""
        cache = RequestCache(clock=clock)
        producer = CountingProducer(None)
        assert await cache.fetch("k", 60, producer) is None
        assert await cache.fetch("k", 60, producer) is None
        assert producer.calls == 2
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_call(self):
        gate = asyncio.Event()
        cache = RequestCache()
        producer = CountingProducer("shared", gate=gate)
        tasks = [asyncio.create_task(cache.fetch("k", 60, producer)) for _ in range(5)]
        await asyncio.sleep(0)
        assert cache.stats()["inflight"] == 1
        gate.set()
        results = await asyncio.gather(*tasks)
        assert results == ["shared"] * 5
        assert producer.calls == 1
        assert cache.stats()["coalesced"] == 4
        assert cache.stats()["inflight"] == 0

    @pytest.mark.asyncio
    async def test_inflight_key_coalesces_across_cache_keys(self):
        """Two cache keys for the same underlying request share the call."""
        gate = asyncio.Event()
        cache = RequestCache()
        producer = CountingProducer("x", gate=gate)
        flight = request_key("https://x.org/w", {"params": {"q": "a"}})
        t1 = asyncio.create_task(cache.fetch("a", 60, producer, inflight_key=flight))
        t2 = asyncio.create_task(cache.fetch("b", 60, producer, inflight_key=flight))
        await asyncio.sleep(0)
        gate.set()
        assert await asyncio.gather(t1, t2) == ["x", "x"]
        assert producer.calls == 1

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_cancel_shared_call(self):
        gate = asyncio.Event()
        cache = RequestCache()
        producer = CountingProducer("done", gate=gate)
        t1 = asyncio.create_task(cache.fetch("k", 60, producer))
        t2 = asyncio.create_task(cache.fetch("k", 60, producer))
        await asyncio.sleep(0)
        t1.cancel()
        gate.set()
        assert await t2 == "done"
        with pytest.raises(asyncio.CancelledError):
            await t1
        assert cache.peek("k") == "done"
        assert producer.calls == 1

    @pytest.mark.asyncio
    async def test_new_call_after_completion(self):
        """Once an operation finishes, a later miss starts a fresh one."""
        cache = RequestCache()
        producer = CountingProducer(None)
        await cache.fetch("k", 60, producer)
        await cache.fetch("k", 60, producer)
        assert producer.calls == 2


class TestFailures:
    @pytest.mark.asyncio
    async def test_timeout_raises_and_is_not_cached(self):
        async def slow():
            await asyncio.sleep(5)
            return "late"

        cache = RequestCache(timeout=0.05)
        with pytest.raises(LookupTimeout):
            await cache.fetch("k", 60, slow)
        assert "k" not in cache
        stats = cache.stats()
        assert stats["timeouts"] == 1
        assert stats["inflight"] == 0

    @pytest.mark.asyncio
    async def test_timeout_is_a_timeout_error(self):
        async def slow():
            await asyncio.sleep(5)

        cache = RequestCache(timeout=0.01)
        with pytest.raises(TimeoutError):
            await cache.fetch("k", 60, slow)

    @pytest.mark.asyncio
    async def test_failure_wrapped_as_transient(self):
        cache = RequestCache()
        producer = CountingProducer(error=RuntimeError("connection reset"))
        with pytest.raises(TransientLookupFailure) as exc_info:
            await cache.fetch("k", 60, producer)
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert "k" not in cache

    @pytest.mark.asyncio
    async def test_lexis_errors_pass_through(self):
        cache = RequestCache()
        producer = CountingProducer(error=InvalidInput("bad expression"))
        with pytest.raises(InvalidInput):
            await cache.fetch("k", 60, producer)

    @pytest.mark.asyncio
    async def test_failure_reaches_every_waiter(self):
        gate = asyncio.Event()
        cache = RequestCache()
        producer = CountingProducer(gate=gate, error=RuntimeError("boom"))
        tasks = [asyncio.create_task(cache.fetch("k", 60, producer)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, TransientLookupFailure) for r in results)
        assert producer.calls == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure_calls_producer_again(self):
        cache = RequestCache()
        failing = CountingProducer(error=RuntimeError("down"))
        with pytest.raises(TransientLookupFailure):
            await cache.fetch("k", 60, failing)
        ok = CountingProducer("up")
        assert await cache.fetch("k", 60, ok) == "up"
        assert ok.calls == 1


# ============================================================================
# Maintenance
# ============================================================================


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_evict_expired(self, clock):
        cache = RequestCache(clock=clock)
        await cache.fetch("short", 5, CountingProducer("a"))
        await cache.fetch("long", 500, CountingProducer("b"))
        clock.advance(10)
        assert cache.tick() == 1
        assert len(cache) == 1
        assert cache.peek("long") == "b"
        assert cache.stats()["evictions"] == 1

    @pytest.mark.asyncio
    async def test_capacity_drops_oldest(self, clock):
        cache = RequestCache(max_entries=10, clock=clock)
        for i in range(11):
            await cache.fetch(f"k{i}", 60, CountingProducer(i))
            clock.advance(1)
        assert len(cache) == 10
        assert "k0" not in cache
        assert cache.peek("k10") == 10

    @pytest.mark.asyncio
    async def test_clear(self):
        cache = RequestCache()
        await cache.fetch("k", 60, CountingProducer("v"))
        cache.clear()
        assert len(cache) == 0
        assert cache.peek("k") is None
