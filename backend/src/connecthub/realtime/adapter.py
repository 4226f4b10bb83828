"""Table change subscription with retrying attach and normalized events."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Union

from .channels import CHANGE_EVENTS, RealtimeChannel, RealtimeClient
from .transport import TransportUnavailableError

logger = logging.getLogger(__name__)

_SUBSCRIBE_RETRY_BASE_DELAY = 1.0
_SUBSCRIBE_RETRY_MAX_EXPONENT = 6

DEFAULT_EVENTS = ("INSERT", "UPDATE", "DELETE")

_channel_ids = itertools.count(1)


@dataclass(slots=True, frozen=True)
class ChangeEvent:
    """Row change delivered to subscription handlers.

    ``record`` is the new row for INSERT and UPDATE and the removed row for
    DELETE, so handlers can always key on ``record["id"]``.
    """

    event_type: str
    record: dict[str, Any]
    old_record: dict[str, Any] = field(default_factory=dict)
    table: str = ""
    commit_timestamp: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChangeEvent":
        event_type = str(payload.get("eventType", "")).upper()
        new = payload.get("new") or {}
        old = payload.get("old") or {}
        return cls(
            event_type=event_type,
            record=dict(old if event_type == "DELETE" else new),
            old_record=dict(old),
            table=str(payload.get("table", "")),
            commit_timestamp=payload.get("commit_timestamp"),
        )


ChangeHandler = Callable[[ChangeEvent], Union[None, Awaitable[None]]]
RetryListener = Callable[[int, float], None]


def retry_delay(attempt: int) -> float:
    """Seconds to wait before subscription attempt number ``attempt``."""

    return _SUBSCRIBE_RETRY_BASE_DELAY * 2 ** min(attempt, _SUBSCRIBE_RETRY_MAX_EXPONENT)


def build_filter(
    filter: str | None = None, column: str | None = None, value: Any = None
) -> str | None:
    if filter:
        return filter
    if column and value is not None:
        return f"{column}=eq.{value}"
    return None


class RealtimeSubscription:
    """Keeps one table subscription alive for the lifetime of its owner.

    Attaching happens in the background: failures are retried after
    ``2 ** min(attempt, 6)`` seconds, and the attempt counter resets once a
    subscription succeeds.

    Delivery is at-most-once. Events are handed over in the order the broker
    emits them for this table and filter, there is no deduplication, and
    changes committed while the connection is down are never replayed.
    Owners that cannot tolerate gaps should reload their state after
    :attr:`subscribed` is set again.
    """

    def __init__(
        self,
        client: RealtimeClient,
        table: str,
        handler: ChangeHandler,
        *,
        events: Iterable[str] | None = None,
        filter: str | None = None,
        column: str | None = None,
        value: Any = None,
        on_retry: RetryListener | None = None,
    ) -> None:
        selected = [event.upper() for event in (events or ())] or list(DEFAULT_EVENTS)
        for event in selected:
            if event != "*" and event not in CHANGE_EVENTS:
                raise ValueError(f"Unsupported change event: {event!r}")
        self._client = client
        self._table = table
        self._handler = handler
        self._events = tuple(selected)
        self._filter = build_filter(filter, column, value)
        self._on_retry = on_retry
        self._attempt = 0
        self._channel: RealtimeChannel | None = None
        self._task: asyncio.Task[None] | None = None
        self._closed = False
        self._channel_name = f"public:{table}:{next(_channel_ids)}"
        self.subscribed = asyncio.Event()

    @property
    def table(self) -> str:
        return self._table

    @property
    def filter(self) -> str | None:
        return self._filter

    @property
    def attempt(self) -> int:
        return self._attempt

    def start(self) -> "RealtimeSubscription":
        if self._closed:
            raise RuntimeError("Subscription has been closed")
        if self._task is None:
            self._task = asyncio.create_task(
                self._connect(), name=f"realtime-subscribe-{self._table}"
            )
        return self

    async def wait_subscribed(self, timeout: float | None = None) -> None:
        await asyncio.wait_for(self.subscribed.wait(), timeout)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        channel, self._channel = self._channel, None
        if channel is not None:
            await self._client.remove_channel(channel)
        self.subscribed.clear()

    async def __aenter__(self) -> "RealtimeSubscription":
        return self.start()

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def _connect(self) -> None:
        while not self._closed:
            channel = self._client.channel(self._channel_name)
            for event in self._events:
                channel.on(event, table=self._table, filter=self._filter, callback=self._dispatch)
            try:
                await channel.subscribe()
            except (TransportUnavailableError, OSError) as exc:
                await self._client.remove_channel(channel)
                self._attempt = min(self._attempt + 1, _SUBSCRIBE_RETRY_MAX_EXPONENT)
                delay = retry_delay(self._attempt)
                logger.warning(
                    "Realtime subscribe failed; retrying",
                    extra={"table": self._table, "attempt": self._attempt, "delay": delay, "error": str(exc)},
                )
                if self._on_retry is not None:
                    self._on_retry(self._attempt, delay)
                await asyncio.sleep(delay)
                continue
            self._channel = channel
            self._attempt = 0
            self.subscribed.set()
            return

    async def _dispatch(self, payload: dict[str, Any]) -> None:
        try:
            event = ChangeEvent.from_payload(payload)
            result = self._handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "Realtime handler error",
                extra={"table": self._table, "event": payload.get("eventType")},
            )
