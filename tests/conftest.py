"""
Pytest configuration and shared fixtures.

Provides an in-memory stand-in for the Supabase realtime transport that
records channels and lets tests push row changes through them, plus a
query cache that records every invalidation batch.
"""

from typing import Any, Callable, Dict, List, Optional

import pytest

from crm_realtime.cache import QueryCache


class FakeChannel:
    def __init__(self, topic: str, fail_subscribe: bool = False):
        self.topic = topic
        self.fail_subscribe = fail_subscribe
        self.bindings: List[Dict[str, Any]] = []
        self.subscribed = False
        self.removed = False

    def on_postgres_changes(
        self,
        event: str,
        callback: Callable[[Dict[str, Any]], None],
        table: str = "*",
        schema: str = "public",
        filter: Optional[str] = None,
    ) -> "FakeChannel":
        self.bindings.append(
            {"event": event, "callback": callback, "table": table, "schema": schema, "filter": filter}
        )
        return self

    async def subscribe(self, callback=None) -> "FakeChannel":
        if self.fail_subscribe:
            raise ConnectionError("realtime socket refused")
        self.subscribed = True
        if callback is not None:
            callback("SUBSCRIBED", None)
        return self


class FakeTransport:
    """Mimics ``supabase.AsyncClient.channel``/``remove_channel``.

    ``emit`` applies the same server-side matching Supabase does (table,
    event kind and ``column=eq.value`` filter) and sends the wire-shaped
    payload to each matching channel.
    """

    def __init__(self, fail_subscribe: bool = False):
        self.fail_subscribe = fail_subscribe
        self.channels: List[FakeChannel] = []
        self.removed: List[FakeChannel] = []

    def channel(self, topic: str) -> FakeChannel:
        channel = FakeChannel(topic, fail_subscribe=self.fail_subscribe)
        self.channels.append(channel)
        return channel

    async def remove_channel(self, channel: FakeChannel) -> None:
        channel.removed = True
        self.removed.append(channel)

    def emit(self, table: str, kind: str, new: Optional[Dict[str, Any]] = None, old: Optional[Dict[str, Any]] = None) -> int:
        payload = {
            "data": {
                "schema": "public",
                "table": table,
                "commit_timestamp": "2026-10-18T12:00:00Z",
                "type": kind,
                "record": new or {},
                "old_record": old or {},
                "columns": [],
                "errors": None,
            },
            "ids": [1],
        }
        delivered = 0
        for channel in self.channels:
            if channel.removed:
                continue
            for binding in channel.bindings:
                if binding["table"] != table or binding["event"] not in ("*", kind):
                    continue
                expr = binding["filter"]
                if expr:
                    column, _, value = expr.partition("=eq.")
                    if str((new or old or {}).get(column)) != value:
                        continue
                binding["callback"](payload)
                delivered += 1
        return delivered


class RecordingCache(QueryCache):
    """QueryCache that keeps every invalidation batch it receives."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.batches: List[List[tuple]] = []

    def invalidate_queries(self, key_sets):
        batch = super().invalidate_queries(key_sets)
        self.batches.append(batch)
        return batch


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def cache():
    return RecordingCache()
