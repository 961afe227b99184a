"""
Single-flight TTL cache.

Concurrent requests for the same key share one in-flight load: the first
caller starts it, later callers await the same task. The load runs shielded,
so a caller that times out or is cancelled does not abort it and remaining
waiters still receive the value or the terminal exception. Failed loads are
not cached; the next request starts a new one.

Loads are grouped by ``(key, flight)``. Callers that pass different loaders
for one key (a lookup that may fail with "not found" versus a lookup that
creates the value) use distinct flights so neither receives the other's
outcome; both store into the same entry.

Expired entries are purged on every ``get_or_load`` call, not only when
their own key is read again.

All methods must be called from the owning event loop.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlightCache(Generic[K, V]):
    """
    Mapping from key to value with per-entry expiry and single-flight loads.

    Args:
        ttl_seconds: Lifetime of an entry after it is inserted
        name: Label used in logs
        clock: Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        ttl_seconds: float,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._clock = clock
        self._entries: Dict[K, Tuple[V, float]] = {}
        self._inflight: Dict[Tuple[K, Hashable], "asyncio.Task[V]"] = {}
        self._closed = False
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: K) -> Optional[V]:
        """Return a live cached value without loading, evicting it if expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            logger.debug(f"{self.name}: entry expired")
            return None
        return value

    async def get_or_load(
        self,
        key: K,
        loader: Callable[[], Awaitable[V]],
        flight: Hashable = None,
    ) -> V:
        """
        Return the cached value for ``key``, loading it with ``loader`` on a
        miss. Concurrent misses for one ``(key, flight)`` run ``loader`` once.
        """
        if self._closed:
            raise RuntimeError(f"{self.name} is closed")

        self.purge_expired()
        value = self.get(key)
        if value is not None:
            self.hits += 1
            return value

        slot = (key, flight)
        task = self._inflight.get(slot)
        if task is None:
            self.misses += 1
            task = asyncio.ensure_future(self._load(key, slot, loader))
            task.add_done_callback(_consume_exception)
            self._inflight[slot] = task
        return await asyncio.shield(task)

    async def _load(self, key: K, slot: Tuple[K, Hashable], loader: Callable[[], Awaitable[V]]) -> V:
        try:
            value = await loader()
            self._entries[key] = (value, self._clock() + self.ttl_seconds)
            return value
        finally:
            self._inflight.pop(slot, None)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, (_, expires_at) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"{self.name}: purged {len(expired)} expired entries")
        return len(expired)

    async def close(self) -> None:
        """Cancel in-flight loads and drop all entries."""
        self._closed = True
        tasks = list(self._inflight.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._inflight.clear()
        self._entries.clear()


def _consume_exception(task: "asyncio.Task") -> None:
    # Mark the exception retrieved when every waiter was cancelled
    if not task.cancelled():
        task.exception()


__all__ = ["SingleFlightCache"]
