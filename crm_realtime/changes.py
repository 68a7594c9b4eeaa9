"""Change stream client over Supabase realtime channels.

Each :meth:`ChangeStreamClient.subscribe` call opens one channel on the
injected transport (the ``supabase`` async client) bound to a single table
and event filter. Joining the channel happens in the background; a failed
join is logged and the subscription simply never receives events, which
leaves cached data stale until the next manual refresh rather than
breaking the caller.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Protocol, Set

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    ALL = "*"


class ChangeEvent(BaseModel):
    """A single row mutation delivered by the change stream."""

    kind: ChangeKind
    table: str
    schema_name: str = "public"
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[datetime] = None

    @property
    def record(self) -> Dict[str, Any]:
        """The row as it is now, or as it was for deletes."""
        return self.new or self.old

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a realtime payload.

        Accepts the wire shape (``{"data": {"type", "record", "old_record"}}``)
        as well as the flattened ``{"eventType", "new", "old"}`` shape used by
        the JavaScript client. Raises ``ValueError`` when neither fits.
        """
        if not isinstance(payload, dict):
            raise ValueError("Change payload must be a mapping")
        data = payload.get("data") if isinstance(payload.get("data"), dict) else payload
        kind = data.get("type") or data.get("eventType")
        table = data.get("table")
        if not kind or not table:
            raise ValueError("Change payload is missing its event type or table")
        try:
            change_kind = ChangeKind(str(kind).upper())
        except ValueError:
            raise ValueError(f"Unknown change event type: {kind!r}")
        if change_kind is ChangeKind.ALL:
            raise ValueError("Change payload cannot carry the wildcard event type")
        new = data.get("record", data.get("new")) or {}
        old = data.get("old_record", data.get("old")) or {}
        return cls(
            kind=change_kind,
            table=table,
            schema_name=data.get("schema") or "public",
            new=new,
            old=old,
            commit_timestamp=data.get("commit_timestamp") or None,
        )


class EventFilter(BaseModel):
    """Restricts a subscription to one event kind and/or one column value.

    ``column``/``value`` translate to the realtime filter expression
    ``column=eq.value``.
    """

    kind: ChangeKind = ChangeKind.ALL
    column: Optional[str] = None
    value: Optional[str] = None

    @classmethod
    def parse(cls, expression: str, kind: ChangeKind = ChangeKind.ALL) -> "EventFilter":
        """Parse an ``column=eq.value`` expression."""
        column, sep, rest = expression.partition("=")
        op, dot, value = rest.partition(".")
        if not sep or not dot or op != "eq" or not column:
            raise ValueError(f"Unsupported filter expression: {expression!r}")
        return cls(kind=kind, column=column.strip(), value=value)

    @property
    def expression(self) -> Optional[str]:
        if self.column is None:
            return None
        return f"{self.column}=eq.{self.value}"

    def matches(self, event: ChangeEvent) -> bool:
        if self.kind is not ChangeKind.ALL and event.kind is not self.kind:
            return False
        if self.column is None:
            return True
        record = event.record
        if self.column not in record:
            # The server already applied the filter; trust it when the
            # payload omits the column (e.g. deletes without replica identity).
            return True
        return str(record[self.column]) == str(self.value)


class ChannelLike(Protocol):
    def on_postgres_changes(self, event: str, callback: Callable[[Dict[str, Any]], None], table: str = "*", schema: str = "public", filter: Optional[str] = None) -> Any:
        ...

    async def subscribe(self, callback: Optional[Callable[..., None]] = None) -> Any:
        ...


class RealtimeTransport(Protocol):
    """The subset of ``supabase.AsyncClient`` this module uses."""

    def channel(self, topic: str) -> ChannelLike:
        ...

    async def remove_channel(self, channel: ChannelLike) -> Any:
        ...


EventCallback = Callable[[ChangeEvent], None]


class SubscriptionHandle:
    """One live registration on the change stream."""

    def __init__(self, topic: str, table: str, event_filter: EventFilter, callback: EventCallback, schema: str = "public"):
        self.topic = topic
        self.table = table
        self.schema = schema
        self.event_filter = event_filter
        self.callback = callback
        self.channel: Optional[ChannelLike] = None
        self.active = True
        self.joined = False
        self.delivered = 0
        self._join_task: Optional["asyncio.Task[None]"] = None

    def __repr__(self) -> str:
        state = "active" if self.active else "closed"
        return f"<SubscriptionHandle {self.topic} table={self.table} {state}>"


class ChangeStreamClient:
    """Subscribe callbacks to row changes of named tables.

    Parameters
    ----------
    transport : RealtimeTransport
        The Supabase async client (or a test double with the same
        ``channel``/``remove_channel`` methods).
    schema : str
        Postgres schema to listen on.
    """

    def __init__(self, transport: RealtimeTransport, schema: str = "public"):
        self.transport = transport
        self.schema = schema
        self._handles: List[SubscriptionHandle] = []
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._counter = itertools.count(1)

    @property
    def handles(self) -> List[SubscriptionHandle]:
        return [h for h in self._handles if h.active]

    def subscribe(
        self,
        table: str,
        event_filter: Optional[EventFilter] = None,
        on_event: Optional[EventCallback] = None,
        purpose: Optional[str] = None,
    ) -> SubscriptionHandle:
        """Start listening to ``table`` and return the handle immediately.

        Must be called from inside a running event loop; the channel join
        runs as a background task. Without one, ``RuntimeError`` is raised
        before anything is registered on the transport.
        """
        if on_event is None:
            raise ValueError("on_event callback is required")
        loop = asyncio.get_running_loop()
        event_filter = event_filter or EventFilter()
        topic = f"{purpose or 'realtime'}-{table}-{next(self._counter)}"
        handle = SubscriptionHandle(topic, table, event_filter, on_event, schema=self.schema)

        def deliver(payload: Dict[str, Any]) -> None:
            self._deliver(handle, payload)

        channel = self.transport.channel(topic)
        channel.on_postgres_changes(
            event_filter.kind.value,
            callback=deliver,
            table=table,
            schema=self.schema,
            filter=event_filter.expression,
        )
        handle.channel = channel
        handle._join_task = self._spawn(self._join(handle), loop)
        self._handles.append(handle)
        logger.info("Subscribing to %s changes on %s (%s)", event_filter.kind.value, table, topic)
        return handle

    def unsubscribe(self, handle: SubscriptionHandle) -> None:
        """Stop delivering events for ``handle``. Safe to call repeatedly."""
        if not handle.active:
            return
        handle.active = False
        if handle in self._handles:
            self._handles.remove(handle)
        if handle._join_task is not None and not handle._join_task.done():
            handle._join_task.cancel()
        channel, handle.channel = handle.channel, None
        if channel is None:
            return
        try:
            self._spawn(self._remove(handle.topic, channel))
        except RuntimeError:
            logger.warning("No running event loop; channel %s not removed from transport", handle.topic)
        logger.info("Unsubscribed from %s (%s)", handle.table, handle.topic)

    async def close(self) -> None:
        """Unsubscribe everything and wait for pending channel work."""
        for handle in list(self._handles):
            self.unsubscribe(handle)
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # -------------------------------------------------------------------
    # Internals

    def _spawn(self, coro: Any, loop: Optional[asyncio.AbstractEventLoop] = None) -> "asyncio.Task[Any]":
        try:
            task = (loop or asyncio.get_running_loop()).create_task(coro)
        except RuntimeError:
            coro.close()
            raise
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _join(self, handle: SubscriptionHandle) -> None:
        def on_status(status: Any, error: Optional[Exception] = None) -> None:
            state = getattr(status, "value", status)
            if state == "SUBSCRIBED":
                handle.joined = True
                logger.info("Realtime channel %s subscribed", handle.topic)
            elif error is not None:
                logger.warning("Realtime channel %s reported %s: %s", handle.topic, state, error)
            else:
                logger.info("Realtime channel %s is %s", handle.topic, state)

        channel = handle.channel
        if channel is None:
            return
        try:
            await channel.subscribe(on_status)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to subscribe realtime channel %s: %s", handle.topic, exc)

    async def _remove(self, topic: str, channel: ChannelLike) -> None:
        try:
            await self.transport.remove_channel(channel)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Failed to remove realtime channel %s: %s", topic, exc)

    def _deliver(self, handle: SubscriptionHandle, payload: Dict[str, Any]) -> None:
        if not handle.active:
            return
        try:
            event = ChangeEvent.from_payload(payload)
        except ValueError as exc:
            logger.warning("Dropping malformed change payload on %s: %s", handle.topic, exc)
            return
        if not handle.event_filter.matches(event):
            logger.debug("Change on %s filtered out for %s", event.table, handle.topic)
            return
        handle.delivered += 1
        logger.debug("%s on %s delivered to %s", event.kind.value, event.table, handle.topic)
        try:
            handle.callback(event)
        except Exception:
            logger.exception("Change callback for %s failed", handle.topic)
