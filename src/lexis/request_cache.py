"""
Lexis Request Cache -- TTL cache plus in-flight coalescing for outbound lookups.

Every outbound lookup (dictionary, thesaurus, encyclopedia, math API) runs
through ``RequestCache.fetch``. A live entry is served without calling the
producer. Concurrent callers asking for the same request share one running
task, so the producer runs at most once per key at any instant. Failures
are never cached and reach every coalesced waiter.

Usage:
    cache = RequestCache(timeout=10.0)
    payload = await cache.fetch("word_apple", ttl=86400, producer=load_apple)
"""

import asyncio
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from lexis.errors import LexisError, LookupTimeout, TransientLookupFailure

logger = logging.getLogger("lexis.request_cache")

DEFAULT_TIMEOUT_S = 10.0
DEFAULT_MAX_ENTRIES = 1000

Producer = Callable[[], Awaitable[Any]]


@dataclass
class CacheEntry:
    key: str
    payload: Any
    stored_at: float
    ttl: float

    def is_expired(self, now: float) -> bool:
        return now - self.stored_at >= self.ttl


def request_key(url: str, options: Optional[Dict[str, Any]] = None) -> str:
    """Normalize ``(url, options)`` into a single in-flight key.

    Scheme and host are lowercased, query parameters sorted, and options
    serialized with sorted keys, so equivalent requests share a key.
    """
    parts = urlsplit(url.strip())
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, query, ""))
    opts = json.dumps(options or {}, sort_keys=True, default=str)
    return f"{normalized}|{opts}"


class RequestCache:
    """TTL-keyed payload cache with at-most-one in-flight producer per key."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_S,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.max_entries = max(1, max_entries)
        self._clock = clock
        # _entries may be swept from another thread; the in-flight map is
        # only touched from the event loop between awaits.
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, asyncio.Task] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "coalesced": 0,
            "timeouts": 0,
            "failures": 0,
            "evictions": 0,
        }

    # ------------------------------------------------------------------
    # Cache map
    # ------------------------------------------------------------------

    def _get_live(self, key: str) -> tuple[bool, Any]:
        """Return (found, payload); an expired entry is dropped on the spot."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if entry.is_expired(now):
                del self._entries[key]
                self._stats["evictions"] += 1
                return False, None
            return True, entry.payload

    def _put(self, key: str, payload: Any, ttl: float) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl=ttl)
            if len(self._entries) > self.max_entries:
                # Drop the oldest tenth in one go rather than one per insert
                overflow = len(self._entries) - self.max_entries
                drop = max(overflow, self.max_entries // 10)
                for _ in range(min(drop, len(self._entries) - 1)):
                    self._entries.popitem(last=False)
                    self._stats["evictions"] += 1

    def peek(self, key: str) -> Any:
        """Return the live payload for key without touching the producer, else None."""
        _found, payload = self._get_live(key)
        return payload

    def clear(self) -> None:
        """Remove every cache entry. In-flight operations are left running."""
        with self._lock:
            self._entries.clear()

    def evict_expired(self) -> int:
        """Remove entries whose TTL has elapsed. Safe to call from another thread."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
            self._stats["evictions"] += len(expired)
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def tick(self) -> int:
        """Periodic maintenance hook for the host scheduler."""
        return self.evict_expired()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        found, _payload = self._get_live(key)
        return found

    def stats(self) -> Dict[str, int]:
        with self._lock:
            out = dict(self._stats)
            out["size"] = len(self._entries)
        out["inflight"] = len(self._inflight)
        return out

    # ------------------------------------------------------------------
    # Coalescing fetch
    # ------------------------------------------------------------------

    async def fetch(
        self,
        key: str,
        ttl: float,
        producer: Producer,
        inflight_key: Optional[str] = None,
    ) -> Any:
        """Return the payload for key, running producer at most once concurrently.

        ``inflight_key`` identifies the underlying request (see ``request_key``);
        it defaults to the cache key. Raises LookupTimeout when the producer
        overruns the deadline and TransientLookupFailure for any other failure
        that is not already a LexisError.
        """
        found, payload = self._get_live(key)
        if found:
            self._stats["hits"] += 1
            logger.debug("Cache hit: %s", key)
            return payload

        flight = inflight_key or key
        task = self._inflight.get(flight)
        if task is None:
            self._stats["misses"] += 1
            task = asyncio.create_task(self._run(key, flight, ttl, producer))
            self._inflight[flight] = task
        else:
            self._stats["coalesced"] += 1
            logger.debug("Coalesced onto in-flight request: %s", flight)
        # A cancelled waiter must not cancel the shared operation
        return await asyncio.shield(task)

    async def _run(self, key: str, flight: str, ttl: float, producer: Producer) -> Any:
        try:
            try:
                payload = await asyncio.wait_for(producer(), timeout=self.timeout)
            except LexisError:
                self._stats["failures"] += 1
                raise
            except asyncio.TimeoutError:
                self._stats["timeouts"] += 1
                logger.warning("Request timeout after %.1fs: %s", self.timeout, key)
                raise LookupTimeout(f"Request timeout after {self.timeout:.1f}s: {key}") from None
            except Exception as e:
                self._stats["failures"] += 1
                logger.warning("Lookup failed for %s: %s", key, e)
                raise TransientLookupFailure(f"Lookup failed for {key}: {e}") from e

            if payload is not None:
                self._put(key, payload, ttl)
            return payload
        finally:
            if self._inflight.get(flight) is asyncio.current_task():
                del self._inflight[flight]
