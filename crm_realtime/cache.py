"""Hierarchical query cache.

Read endpoints fetch through this cache and the realtime hooks mark its
entries stale. Keys are tuples of strings and invalidation works on
prefixes: invalidating ``("leads",)`` marks ``("leads", "company-1", "all")``
stale as well, while ``("leads", "company-1")`` leaves other companies alone.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, ...]
InvalidationListener = Callable[[List[CacheKey]], None]


def make_key(key: Sequence[Any]) -> CacheKey:
    """Normalize a list/tuple key into the tuple-of-strings form."""
    if isinstance(key, str):
        return (key,)
    return tuple(str(part) for part in key)


def key_matches(key: CacheKey, prefix: CacheKey) -> bool:
    return key[: len(prefix)] == prefix


class _Entry:
    __slots__ = ("value", "fetched_at", "stale")

    def __init__(self, value: Any, fetched_at: float):
        self.value = value
        self.fetched_at = fetched_at
        self.stale = False


class _Inflight:
    __slots__ = ("task", "invalidated")

    def __init__(self):
        self.task: Optional["asyncio.Task[Any]"] = None
        self.invalidated = False


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    # Every caller may have been cancelled; retrieve the error so the
    # loop doesn't report it as never retrieved.
    if not task.cancelled():
        task.exception()


class QueryCache:
    """In-process cache keyed by hierarchical tuples.

    Parameters
    ----------
    stale_after : float, optional
        Seconds after which an entry is considered stale even without an
        invalidation. ``None`` keeps entries fresh until invalidated.
    clock : callable, optional
        Monotonic time source, replaceable in tests.
    """

    def __init__(self, stale_after: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.stale_after = stale_after
        self._clock = clock
        self._entries: Dict[CacheKey, _Entry] = {}
        self._inflight: Dict[CacheKey, _Inflight] = {}
        self._listeners: List[InvalidationListener] = []

    # -------------------------------------------------------------------
    # Reads

    def get(self, key: Sequence[Any]) -> Any:
        """Return the cached value for ``key`` (fresh or stale) or ``None``."""
        entry = self._entries.get(make_key(key))
        return entry.value if entry else None

    def is_stale(self, key: Sequence[Any]) -> bool:
        entry = self._entries.get(make_key(key))
        if entry is None:
            return True
        if entry.stale:
            return True
        if self.stale_after is not None and self._clock() - entry.fetched_at >= self.stale_after:
            return True
        return False

    def keys(self) -> List[CacheKey]:
        return list(self._entries.keys())

    async def fetch(self, key: Sequence[Any], fetcher: Callable[[], Awaitable[Any]]) -> Any:
        """Return the value for ``key``, calling ``fetcher`` if it is stale.

        Concurrent callers asking for the same key while a fetch is running
        share the result of that single call, unless the key was
        invalidated after the call started; later callers then start a new
        fetch and the older result is not cached. The fetcher runs in its
        own task, so cancelling one caller does not cancel the others. If
        the fetcher raises, the exception reaches every waiting caller and
        nothing is cached.
        """
        cache_key = make_key(key)
        if not self.is_stale(cache_key):
            return self._entries[cache_key].value

        pending = self._inflight.get(cache_key)
        if pending is None or pending.invalidated:
            pending = _Inflight()
            self._inflight[cache_key] = pending
            pending.task = asyncio.get_running_loop().create_task(self._run(cache_key, pending, fetcher))
            pending.task.add_done_callback(_consume_exception)
        return await asyncio.shield(pending.task)

    async def _run(self, cache_key: CacheKey, pending: "_Inflight", fetcher: Callable[[], Awaitable[Any]]) -> Any:
        try:
            value = await fetcher()
        except Exception:
            if self._inflight.get(cache_key) is pending:
                self._entries.pop(cache_key, None)
            raise
        finally:
            if self._inflight.get(cache_key) is pending:
                del self._inflight[cache_key]
        # A result read before an invalidation must not look fresh.
        if not pending.invalidated:
            self._entries[cache_key] = _Entry(value, self._clock())
        return value

    def set(self, key: Sequence[Any], value: Any) -> None:
        self._entries[make_key(key)] = _Entry(value, self._clock())

    # -------------------------------------------------------------------
    # Invalidation

    def invalidate_queries(self, key_sets: Iterable[Sequence[Any]]) -> List[CacheKey]:
        """Mark every entry under any of ``key_sets`` stale.

        Fetches already running for a matching key will not cache their
        result, and callers arriving afterwards start a new fetch.

        Listeners are told about the whole batch once, in the order the
        key sets were given. Returns the normalized batch.
        """
        batch: List[CacheKey] = []
        for key_set in key_sets:
            prefix = make_key(key_set)
            if prefix not in batch:
                batch.append(prefix)
        if not batch:
            return batch

        marked = 0
        for key, entry in self._entries.items():
            if any(key_matches(key, prefix) for prefix in batch):
                entry.stale = True
                marked += 1
        for key, pending in self._inflight.items():
            if any(key_matches(key, prefix) for prefix in batch):
                pending.invalidated = True
        logger.debug("Invalidated %d cache entries for %s", marked, batch)

        for listener in list(self._listeners):
            try:
                listener(list(batch))
            except Exception:
                logger.exception("Cache invalidation listener failed")
        return batch

    def add_listener(self, listener: InvalidationListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: InvalidationListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def clear(self) -> None:
        self._entries.clear()
