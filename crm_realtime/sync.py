"""Wiring of the realtime layer for one application instance.

:class:`RealtimeSync` owns the change stream client and the hooks that
keep the shared :class:`QueryCache` fresh. :class:`InvalidationBroadcaster`
fans cache invalidations out to connected browsers.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Set

from crm_realtime.cache import CacheKey, QueryCache
from crm_realtime.changes import ChangeStreamClient, RealtimeTransport
from crm_realtime.config import Settings
from crm_realtime.hooks import GamificationEvents, RealtimeGamification, RealtimeLeads, SubscriptionHook

logger = logging.getLogger(__name__)

SUBSCRIBER_QUEUE_SIZE = 100


class RealtimeSync:
    """Mounts the leads and gamification hooks against one transport.

    When ``transport`` is ``None`` (Supabase not configured) the hooks are
    still created so status reporting works, but nothing is mounted.
    """

    def __init__(self, cache: QueryCache, settings: Settings, transport: Optional[RealtimeTransport] = None):
        self.cache = cache
        self.settings = settings
        self.stream: Optional[ChangeStreamClient] = ChangeStreamClient(transport) if transport is not None else None
        options = {"window": settings.debounce_seconds, "policy": settings.debounce_policy}
        stream = self.stream or ChangeStreamClient(_NullTransport())
        self.leads = RealtimeLeads(stream, cache, **options)
        self.gamification = RealtimeGamification(stream, cache, **options)
        self.gamification_events = GamificationEvents(stream, cache, **options)

    @property
    def hooks(self) -> List[SubscriptionHook]:
        return [self.leads, self.gamification, self.gamification_events]

    @property
    def enabled(self) -> bool:
        return self.stream is not None and self.settings.realtime_enabled

    def start(self) -> None:
        if not self.enabled:
            logger.info("Realtime sync disabled; cached data refreshes only on expiry")
            return
        for hook in self.hooks:
            hook.mount()

    async def stop(self) -> None:
        for hook in self.hooks:
            hook.unmount()
        if self.stream is not None:
            await self.stream.close()

    def status(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "debounce_ms": self.settings.debounce_ms,
            "debounce_policy": self.settings.debounce_policy.value,
            "subscriptions": len(self.stream.handles) if self.stream else 0,
            "hooks": {hook.purpose: hook.status() for hook in self.hooks},
        }


class _NullTransport:
    """Placeholder used when no Supabase client exists; never mounted."""

    def channel(self, topic: str) -> Any:
        raise RuntimeError("Realtime transport is not configured")

    async def remove_channel(self, channel: Any) -> None:
        return None


class InvalidationBroadcaster:
    """Forward cache invalidation batches to any number of async consumers.

    Each subscriber gets a bounded queue; a subscriber that stops reading
    loses the oldest batches rather than blocking the cache. ``None`` on a
    queue means the broadcaster closed and no more batches will follow.
    """

    def __init__(self, cache: QueryCache, queue_size: int = SUBSCRIBER_QUEUE_SIZE):
        self.cache = cache
        self.queue_size = queue_size
        self._queues: Set["asyncio.Queue[Optional[List[CacheKey]]]"] = set()
        self.closed = False
        cache.add_listener(self.publish)

    @property
    def subscriber_count(self) -> int:
        return len(self._queues)

    def subscribe(self) -> "asyncio.Queue[Optional[List[CacheKey]]]":
        queue: "asyncio.Queue[Optional[List[CacheKey]]]" = asyncio.Queue(maxsize=self.queue_size)
        if self.closed:
            queue.put_nowait(None)
        else:
            self._queues.add(queue)
        return queue

    def unsubscribe(self, queue: "asyncio.Queue[Optional[List[CacheKey]]]") -> None:
        self._queues.discard(queue)

    def publish(self, batch: List[CacheKey]) -> None:
        for queue in list(self._queues):
            self._put(queue, list(batch))

    def close(self) -> None:
        """Stop forwarding and wake every subscriber with the end marker."""
        self.closed = True
        self.cache.remove_listener(self.publish)
        for queue in list(self._queues):
            self._put(queue, None)
        self._queues.clear()

    @staticmethod
    def _put(queue: "asyncio.Queue[Optional[List[CacheKey]]]", item: Optional[List[CacheKey]]) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(item)
