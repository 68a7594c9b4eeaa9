"""Tests for realtime wiring and the invalidation broadcaster."""

import asyncio

import pytest

from crm_realtime.cache import QueryCache
from crm_realtime.config import Settings
from crm_realtime.hooks import HookState
from crm_realtime.sync import InvalidationBroadcaster, RealtimeSync


class TestRealtimeSync:
    @pytest.mark.asyncio
    async def test_start_mounts_all_hooks_and_stop_releases_them(self, transport, cache) -> None:
        sync = RealtimeSync(cache, Settings.from_env({"REALTIME_DEBOUNCE_MS": "20"}), transport=transport)

        sync.start()
        await asyncio.sleep(0)

        assert all(hook.state is HookState.SUBSCRIBED for hook in sync.hooks)
        assert sync.status()["subscriptions"] == 5
        assert sorted({b["table"] for c in transport.channels for b in c.bindings}) == [
            "gamification_events",
            "lead_observations",
            "leads",
        ]

        await sync.stop()

        assert all(hook.state is HookState.UNMOUNTED for hook in sync.hooks)
        assert len(transport.removed) == 5

    @pytest.mark.asyncio
    async def test_lead_change_reaches_both_lead_hooks(self, transport, cache) -> None:
        sync = RealtimeSync(cache, Settings.from_env({"REALTIME_DEBOUNCE_MS": "20"}), transport=transport)
        sync.start()

        transport.emit("leads", "UPDATE", {"id": "1"})
        await asyncio.sleep(0.1)

        flattened = {key for batch in cache.batches for key in batch}
        assert ("kanban-leads",) in flattened
        assert ("gamification-leaderboard",) in flattened
        await sync.stop()

    @pytest.mark.asyncio
    async def test_disabled_realtime_mounts_nothing(self, transport, cache) -> None:
        settings = Settings.from_env({"REALTIME_ENABLED": "false"})
        sync = RealtimeSync(cache, settings, transport=transport)

        sync.start()

        assert sync.enabled is False
        assert transport.channels == []
        await sync.stop()

    @pytest.mark.asyncio
    async def test_without_transport(self, cache) -> None:
        sync = RealtimeSync(cache, Settings.from_env({}))
        sync.start()
        assert sync.status()["enabled"] is False
        await sync.stop()


class TestInvalidationBroadcaster:
    @pytest.mark.asyncio
    async def test_subscribers_receive_batches(self) -> None:
        cache = QueryCache()
        broadcaster = InvalidationBroadcaster(cache)
        first = broadcaster.subscribe()
        second = broadcaster.subscribe()

        cache.invalidate_queries([["leads"], ["dashboard-stats"]])

        assert await first.get() == [("leads",), ("dashboard-stats",)]
        assert await second.get() == [("leads",), ("dashboard-stats",)]

    @pytest.mark.asyncio
    async def test_slow_subscriber_loses_oldest_batches(self) -> None:
        cache = QueryCache()
        broadcaster = InvalidationBroadcaster(cache, queue_size=2)
        queue = broadcaster.subscribe()

        for name in ("a", "b", "c"):
            cache.invalidate_queries([[name]])

        assert queue.get_nowait() == [("b",)]
        assert queue.get_nowait() == [("c",)]

    @pytest.mark.asyncio
    async def test_unsubscribe_and_close(self) -> None:
        cache = QueryCache()
        broadcaster = InvalidationBroadcaster(cache)
        queue = broadcaster.subscribe()
        broadcaster.unsubscribe(queue)
        assert broadcaster.subscriber_count == 0

        remaining = broadcaster.subscribe()
        broadcaster.close()
        cache.invalidate_queries([["leads"]])
        assert broadcaster.subscriber_count == 0
        assert remaining.get_nowait() is None
        assert remaining.empty()

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_subscribers(self) -> None:
        cache = QueryCache()
        broadcaster = InvalidationBroadcaster(cache)
        queue = broadcaster.subscribe()
        waiter = asyncio.create_task(queue.get())
        await asyncio.sleep(0)

        broadcaster.close()

        assert await asyncio.wait_for(waiter, timeout=1) is None

    @pytest.mark.asyncio
    async def test_close_marker_reaches_full_queue_last(self) -> None:
        cache = QueryCache()
        broadcaster = InvalidationBroadcaster(cache, queue_size=2)
        queue = broadcaster.subscribe()
        cache.invalidate_queries([["a"]])
        cache.invalidate_queries([["b"]])

        broadcaster.close()

        assert queue.get_nowait() == [("b",)]
        assert queue.get_nowait() is None

    @pytest.mark.asyncio
    async def test_subscribe_after_close_ends_immediately(self) -> None:
        broadcaster = InvalidationBroadcaster(QueryCache())
        broadcaster.close()

        queue = broadcaster.subscribe()

        assert queue.get_nowait() is None
        assert broadcaster.subscriber_count == 0
