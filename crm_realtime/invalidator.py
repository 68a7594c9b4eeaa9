"""Debounced cache invalidation.

Bursts of change events (a bulk lead import, a pipeline drag that touches
many rows) are coalesced into a single call to the cache's
``invalidate_queries`` per debounce window.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from crm_realtime.cache import CacheKey, make_key

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 0.5


class DebouncePolicy(str, enum.Enum):
    """How activity inside a window affects the timer.

    ``fixed`` starts the timer on the first event and never moves it, so
    the worst-case delay is one window even under constant writes.
    ``trailing`` restarts the timer on every event and only fires after a
    quiet period.
    """

    FIXED_WINDOW = "fixed"
    TRAILING = "trailing"


class Invalidates(Protocol):
    def invalidate_queries(self, key_sets: Iterable[Sequence[Any]]) -> Any:
        ...


class DebouncedInvalidator:
    """Accumulate cache key sets and flush them after a window.

    Parameters
    ----------
    cache : Invalidates
        Anything exposing ``invalidate_queries(key_sets)``; normally a
        :class:`crm_realtime.cache.QueryCache`.
    window : float
        Debounce window in seconds.
    policy : DebouncePolicy
        Fixed-window (default) or trailing debounce.
    loop : asyncio.AbstractEventLoop, optional
        Loop used to schedule the timer. Defaults to the running loop at
        the time of the first ``notify``.
    """

    def __init__(
        self,
        cache: Invalidates,
        window: float = DEFAULT_WINDOW_SECONDS,
        policy: DebouncePolicy = DebouncePolicy.FIXED_WINDOW,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        if window <= 0:
            raise ValueError("Debounce window must be positive")
        self.cache = cache
        self.window = window
        self.policy = DebouncePolicy(policy)
        self._loop = loop
        # dict keeps insertion order and doubles as an ordered set
        self._pending: Dict[CacheKey, None] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._disposed = False
        self.flush_count = 0

    @property
    def pending(self) -> List[CacheKey]:
        return list(self._pending)

    @property
    def scheduled(self) -> bool:
        return self._timer is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def notify(self, key_sets: Iterable[Sequence[Any]]) -> None:
        """Record the key sets touched by one change event."""
        if self._disposed:
            logger.debug("Ignoring notify on disposed invalidator")
            return
        for key_set in key_sets:
            self._pending[make_key(key_set)] = None
        if not self._pending:
            return

        if self._timer is None:
            self._timer = self._get_loop().call_later(self.window, self._fire)
        elif self.policy is DebouncePolicy.TRAILING:
            self._timer.cancel()
            self._timer = self._get_loop().call_later(self.window, self._fire)

    def dispose(self) -> None:
        """Drop the pending batch without invalidating anything."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._pending:
            logger.debug("Discarding %d pending key sets on dispose", len(self._pending))
        self._pending.clear()
        self._disposed = True

    def _fire(self) -> None:
        # Detach the batch first so a notify() made from inside the
        # invalidation call lands in a new cycle.
        batch = list(self._pending)
        self._pending.clear()
        self._timer = None
        if self._disposed or not batch:
            return
        self.flush_count += 1
        logger.debug("Flushing %d key sets: %s", len(batch), batch)
        self.cache.invalidate_queries(batch)

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop
