"""Named channels carrying filtered row change notifications."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from .transport import BrokerTransport, Subscription, TransportUnavailableError

logger = logging.getLogger(__name__)

CHANGE_EVENTS = frozenset({"INSERT", "UPDATE", "DELETE"})

ChangeCallback = Callable[[dict[str, Any]], Any]


def change_topic(table: str) -> str:
    return f"changes.{table}"


def parse_filter(expression: str) -> tuple[str, str]:
    """Split ``column=eq.value`` into ``(column, value)``."""

    column, sep, condition = expression.partition("=")
    operator, dot, value = condition.partition(".")
    if not sep or not dot or not column.strip() or operator != "eq":
        raise ValueError(f"Unsupported realtime filter: {expression!r}")
    return column.strip(), value


class ChangeFeed:
    """Publishes committed row changes to the broker."""

    def __init__(self, transport: BrokerTransport, *, schema: str = "public") -> None:
        self._transport = transport
        self._schema = schema
        self._warned = False

    async def publish_change(
        self,
        table: str,
        event_type: str,
        new: dict[str, Any] | None,
        old: dict[str, Any] | None,
    ) -> None:
        payload = {
            "schema": self._schema,
            "table": table,
            "eventType": event_type,
            "new": new or {},
            "old": old or {},
            "commit_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self._transport.publish(change_topic(table), payload)
        except TransportUnavailableError:
            if not self._warned:
                logger.warning(
                    "Realtime backend unavailable; row changes are not being broadcast",
                    extra={"table": table},
                )
                self._warned = True
            return
        self._warned = False


@dataclass(slots=True)
class _Binding:
    event: str
    table: str
    callback: ChangeCallback
    schema: str = "public"
    filter: tuple[str, str] | None = None

    def matches(self, payload: dict[str, Any]) -> bool:
        if payload.get("table") != self.table or payload.get("schema", self.schema) != self.schema:
            return False
        event_type = payload.get("eventType")
        if self.event != "*" and event_type != self.event:
            return False
        if self.filter is None:
            return True
        column, expected = self.filter
        row = payload.get("old") if event_type == "DELETE" else payload.get("new")
        if not isinstance(row, dict) or column not in row or row[column] is None:
            return False
        return str(row[column]) == expected


class RealtimeChannel:
    """A set of change bindings subscribed and released together."""

    def __init__(self, client: "RealtimeClient", name: str) -> None:
        self._client = client
        self._name = name
        self._bindings: list[_Binding] = []
        self._subscriptions: list[Subscription] = []
        self.state = "CLOSED"

    @property
    def name(self) -> str:
        return self._name

    def on(
        self,
        event: str,
        *,
        table: str,
        callback: ChangeCallback,
        filter: str | None = None,
        schema: str = "public",
    ) -> "RealtimeChannel":
        event = event.upper()
        if event != "*" and event not in CHANGE_EVENTS:
            raise ValueError(f"Unsupported change event: {event!r}")
        parsed = parse_filter(filter) if filter else None
        self._bindings.append(_Binding(event, table, callback, schema, parsed))
        return self

    async def subscribe(self) -> "RealtimeChannel":
        """Attach every binding to the broker.

        Raises ``TransportUnavailableError`` when the broker refuses the
        subscription; the channel is left closed in that case.
        """

        if self.state == "SUBSCRIBED":
            return self
        tables = sorted({binding.table for binding in self._bindings})
        try:
            for table in tables:
                subscription = await self._client.transport.subscribe(
                    change_topic(table), self._deliver
                )
                self._subscriptions.append(subscription)
        except TransportUnavailableError:
            self.state = "CHANNEL_ERROR"
            await self._release()
            raise
        self.state = "SUBSCRIBED"
        logger.debug("Realtime channel subscribed", extra={"channel": self._name, "tables": tables})
        return self

    async def unsubscribe(self) -> None:
        await self._release()
        self.state = "CLOSED"

    async def _release(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            await subscription.close()

    async def _deliver(self, payload: dict[str, Any]) -> None:
        for binding in list(self._bindings):
            if not binding.matches(payload):
                continue
            result = binding.callback(payload)
            if inspect.isawaitable(result):
                await result


class RealtimeClient:
    """Creates and tracks channels on top of a broker transport."""

    def __init__(self, transport: BrokerTransport) -> None:
        self.transport = transport
        self._channels: dict[str, RealtimeChannel] = {}

    @property
    def channels(self) -> list[RealtimeChannel]:
        return list(self._channels.values())

    def channel(self, name: str) -> RealtimeChannel:
        existing = self._channels.get(name)
        if existing is not None and existing.state != "CLOSED":
            return existing
        channel = RealtimeChannel(self, name)
        self._channels[name] = channel
        return channel

    async def remove_channel(self, channel: RealtimeChannel) -> None:
        await channel.unsubscribe()
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]

    async def remove_all_channels(self) -> None:
        for channel in list(self._channels.values()):
            await self.remove_channel(channel)
