"""Subscription hooks: table listeners bundled with the cache keys they refresh.

A hook is mounted for as long as something depends on fresh data (the
FastAPI app lifespan, or an ``async with`` block) and unmounted
afterwards. Mounting subscribes every binding; unmounting tears down the
subscriptions and drops any pending invalidation.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from crm_realtime.cache import CacheKey, make_key
from crm_realtime.changes import ChangeEvent, ChangeKind, ChangeStreamClient, EventFilter, SubscriptionHandle
from crm_realtime.invalidator import DEFAULT_WINDOW_SECONDS, DebouncedInvalidator, DebouncePolicy, Invalidates

logger = logging.getLogger(__name__)

LEADS_KEY: CacheKey = ("leads",)
LEAD_STATS_KEY: CacheKey = ("lead-stats",)
KANBAN_LEADS_KEY: CacheKey = ("kanban-leads",)
DASHBOARD_STATS_KEY: CacheKey = ("dashboard-stats",)
LEADERBOARD_KEY: CacheKey = ("gamification-leaderboard",)
GAMIFICATION_EVENTS_KEY: CacheKey = ("gamification-events",)


class HookState(str, enum.Enum):
    UNMOUNTED = "unmounted"
    MOUNTING = "mounting"
    SUBSCRIBED = "subscribed"


class Binding:
    """A table subscription and the cache keys its events invalidate."""

    def __init__(
        self,
        table: str,
        key_sets: Sequence[Sequence[str]],
        event_filter: Optional[EventFilter] = None,
        on_event: Optional[Callable[[ChangeEvent], None]] = None,
    ):
        self.table = table
        self.key_sets: List[CacheKey] = [make_key(k) for k in key_sets]
        self.event_filter = event_filter or EventFilter()
        self.on_event = on_event


class SubscriptionHook:
    """Base class for realtime hooks.

    Subclasses implement :meth:`bindings`. ``on_event`` is an optional
    observer that sees every delivered change after it has been routed
    to the invalidator.
    """

    purpose = "realtime"

    def __init__(
        self,
        stream: ChangeStreamClient,
        cache: Invalidates,
        window: float = DEFAULT_WINDOW_SECONDS,
        policy: DebouncePolicy = DebouncePolicy.FIXED_WINDOW,
        on_event: Optional[Callable[[ChangeEvent], None]] = None,
    ):
        self.stream = stream
        self.cache = cache
        self.window = window
        self.policy = policy
        self.on_event = on_event
        self.state = HookState.UNMOUNTED
        self.handles: List[SubscriptionHandle] = []
        self.invalidator: Optional[DebouncedInvalidator] = None

    def bindings(self) -> List[Binding]:
        raise NotImplementedError

    def mount(self) -> None:
        if self.state is not HookState.UNMOUNTED:
            return
        self.state = HookState.MOUNTING
        logger.info("Setting up %s realtime listener", self.purpose)
        self.invalidator = DebouncedInvalidator(self.cache, window=self.window, policy=self.policy)
        for binding in self.bindings():
            try:
                handle = self.stream.subscribe(
                    binding.table,
                    binding.event_filter,
                    self._make_handler(binding),
                    purpose=self.purpose,
                )
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("Could not subscribe %s to %s: %s", self.purpose, binding.table, exc)
                continue
            self.handles.append(handle)
        self.state = HookState.SUBSCRIBED

    def unmount(self) -> None:
        if self.state is HookState.UNMOUNTED:
            return
        logger.info("Cleaning up %s realtime listener", self.purpose)
        for handle in self.handles:
            self.stream.unsubscribe(handle)
        self.handles = []
        if self.invalidator is not None:
            self.invalidator.dispose()
        self.state = HookState.UNMOUNTED

    async def __aenter__(self) -> "SubscriptionHook":
        self.mount()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.unmount()

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "subscriptions": [h.topic for h in self.handles if h.active],
            "pending": [list(k) for k in self.invalidator.pending] if self.invalidator else [],
            "flushes": self.invalidator.flush_count if self.invalidator else 0,
        }

    def _make_handler(self, binding: Binding) -> Callable[[ChangeEvent], None]:
        def handle(event: ChangeEvent) -> None:
            logger.debug("%s change detected for %s: %s", event.table, self.purpose, event.kind.value)
            if self.invalidator is not None:
                self.invalidator.notify(binding.key_sets)
            if binding.on_event is not None:
                binding.on_event(event)
            if self.on_event is not None:
                self.on_event(event)

        return handle


class RealtimeLeads(SubscriptionHook):
    """Keep every lead-derived view fresh.

    With a ``scope`` (e.g. ``("company-1",)``) only the matching slice of
    ``leads`` queries is invalidated; without one, all of them are. The
    kanban board, lead stats and dashboard totals are always refreshed.
    """

    purpose = "leads-realtime"

    def __init__(self, stream: ChangeStreamClient, cache: Invalidates, scope: Optional[Sequence[str]] = None, **kwargs: Any):
        super().__init__(stream, cache, **kwargs)
        self.scope: Tuple[str, ...] = make_key(scope) if scope else ()

    def key_sets(self) -> List[CacheKey]:
        return [LEADS_KEY + self.scope, LEAD_STATS_KEY, KANBAN_LEADS_KEY, DASHBOARD_STATS_KEY]

    def bindings(self) -> List[Binding]:
        return [Binding("leads", self.key_sets())]


class RealtimeGamification(SubscriptionHook):
    purpose = "gamification-realtime"

    def __init__(self, stream: ChangeStreamClient, cache: Invalidates, **kwargs: Any):
        super().__init__(stream, cache, **kwargs)
        self.last_update: Optional[datetime] = None

    def bindings(self) -> List[Binding]:
        return [
            Binding("leads", [DASHBOARD_STATS_KEY, LEADERBOARD_KEY], on_event=self._touch),
            Binding("lead_observations", [LEADERBOARD_KEY], on_event=self._touch),
        ]

    def _touch(self, event: ChangeEvent) -> None:
        self.last_update = datetime.now(timezone.utc)


class GamificationEvents(SubscriptionHook):
    """Watch new gamification events and remember the latest closed sale."""

    purpose = "gamification-events-live"
    SALE_EVENT_TYPE = "sale_closed"

    def __init__(self, stream: ChangeStreamClient, cache: Invalidates, **kwargs: Any):
        super().__init__(stream, cache, **kwargs)
        self.latest_sale: Optional[Dict[str, Any]] = None

    def bindings(self) -> List[Binding]:
        keys = [LEADERBOARD_KEY, GAMIFICATION_EVENTS_KEY]
        sale_filter = EventFilter(kind=ChangeKind.INSERT, column="event_type", value=self.SALE_EVENT_TYPE)
        return [
            Binding("gamification_events", keys, event_filter=sale_filter, on_event=self._record_sale),
            Binding("gamification_events", keys, event_filter=EventFilter(kind=ChangeKind.INSERT)),
        ]

    def clear_latest_sale(self) -> None:
        self.latest_sale = None

    def _record_sale(self, event: ChangeEvent) -> None:
        logger.info("New sale detected: %s", event.new.get("id"))
        self.latest_sale = dict(event.new)
