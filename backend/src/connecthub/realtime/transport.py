"""Pub/sub broker carrying row change events between processes."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import redis.asyncio as redis_asyncio
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_REDIS_ERRORS: tuple[type[BaseException], ...] = (
    RedisError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)

_REDIS_RECOVERY_BASE_DELAY = 0.5
_REDIS_RECOVERY_MAX_DELAY = 30.0

MessageHandler = Callable[[dict[str, Any]], Awaitable[None]]
RestartListener = Callable[[str, str], None]


@dataclass(slots=True)
class BrokerConfig:
    """Where change events travel.

    Without ``redis_url`` every topic stays inside the current process.
    """

    redis_url: str | None = None
    prefix: str = "connecthub.realtime"


class Subscription:
    """Handle returned when subscribing to a broker topic."""

    def __init__(
        self,
        name: str,
        cleanup: Callable[[], Awaitable[None]],
        task: asyncio.Task[Any] | None = None,
    ) -> None:
        self._name = name
        self._cleanup = cleanup
        self._task = task
        self._closed = False

    @property
    def name(self) -> str:
        return self._name

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        await self._cleanup()


class TransportUnavailableError(RuntimeError):
    """Raised when the broker cannot publish or subscribe."""


@dataclass(slots=True)
class _RedisListener:
    channel: str
    handler: MessageHandler
    subscription: Subscription | None = None
    task: asyncio.Task[Any] | None = None
    pubsub: Any | None = None
    active: bool = True
    pausing: bool = False


async def _dispatch(handler: MessageHandler, payload: dict[str, Any], name: str) -> None:
    try:
        await handler(payload)
    except Exception:
        logger.exception("Realtime handler failed", extra={"topic": name})


class BrokerTransport:
    """Publishes JSON payloads to topics over Redis or an in-process bus.

    Redis subscriptions are restored with exponential backoff when the
    connection drops. Messages published while a reader is down are lost.
    """

    def __init__(self, config: BrokerConfig, *, restart_listener: RestartListener | None = None) -> None:
        self._config = config
        self._restart_listener = restart_listener
        self._redis: Any | None = None
        self._listeners: list[_RedisListener] = []
        self._local: dict[str, list[MessageHandler]] = defaultdict(list)
        self._recovery_lock = asyncio.Lock()
        self._recovery_task: asyncio.Task[Any] | None = None

    @property
    def backend(self) -> str:
        return "redis" if self._config.redis_url else "memory"

    @property
    def connected(self) -> bool:
        return self.backend == "memory" or self._redis is not None

    async def start(self) -> None:
        if self._config.redis_url and self._redis is None:
            await self._connect()

    async def stop(self) -> None:
        for listener in list(self._listeners):
            if listener.subscription is not None:
                await listener.subscription.close()
        self._listeners.clear()
        self._local.clear()
        if self._recovery_task is not None:
            self._recovery_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._recovery_task
            self._recovery_task = None
        if self._redis is not None:
            await self._redis.close()
            self._redis = None

    def channel_name(self, topic: str) -> str:
        prefix = self._config.prefix.rstrip(".")
        return f"{prefix}.{topic}" if prefix else topic

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------
    async def publish(self, topic: str, payload: dict[str, Any]) -> None:
        if self.backend == "memory":
            for handler in list(self._local.get(topic, ())):
                await _dispatch(handler, payload, topic)
            return

        if self._redis is None:
            await self.start()
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        channel = self.channel_name(topic)
        try:
            await self._redis.publish(channel, json.dumps(payload, default=str))
        except _REDIS_ERRORS as exc:
            self._schedule_recovery("publish_failed")
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        logger.debug("Published realtime payload", extra={"channel": channel})

    # ------------------------------------------------------------------
    # Subscribing
    # ------------------------------------------------------------------
    async def subscribe(self, topic: str, handler: MessageHandler) -> Subscription:
        if self.backend == "memory":
            self._local[topic].append(handler)

            async def detach() -> None:
                handlers = self._local.get(topic)
                if handlers and handler in handlers:
                    handlers.remove(handler)
                    if not handlers:
                        self._local.pop(topic, None)

            return Subscription(topic, detach)

        if self._redis is None:
            try:
                await self.start()
            except OSError as exc:
                raise TransportUnavailableError("Redis backend is unavailable") from exc
        listener = _RedisListener(channel=self.channel_name(topic), handler=handler)

        async def cleanup() -> None:
            listener.active = False
            await self._pause(listener)
            if listener in self._listeners:
                self._listeners.remove(listener)

        listener.subscription = Subscription(listener.channel, cleanup)
        self._listeners.append(listener)
        try:
            await self._attach(listener)
        except Exception as exc:
            await listener.subscription.close()
            self._schedule_recovery("subscribe_failed")
            if isinstance(exc, TransportUnavailableError):
                raise
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        return listener.subscription

    # ------------------------------------------------------------------
    # Redis connection management
    # ------------------------------------------------------------------
    async def _connect(self) -> None:
        client = redis_asyncio.from_url(
            self._config.redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        try:
            await client.ping()
        except OSError:
            logger.exception("Failed to connect to Redis realtime backend")
            await client.close()
            raise
        self._redis = client

    async def _pause(self, listener: _RedisListener) -> None:
        listener.pausing = True
        task = listener.task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        listener.task = None
        pubsub, listener.pubsub = listener.pubsub, None
        if pubsub is not None:
            await self._release(pubsub, listener.channel)
        listener.pausing = False

    @staticmethod
    async def _release(pubsub: Any, channel: str) -> None:
        try:
            await pubsub.unsubscribe(channel)
            await pubsub.close()
        except (*_REDIS_ERRORS, OSError):
            logger.debug("Ignoring error while releasing pubsub", extra={"channel": channel})

    async def _attach(self, listener: _RedisListener) -> None:
        if self._redis is None:
            raise TransportUnavailableError("Redis backend is not connected")
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(listener.channel)
        except _REDIS_ERRORS as exc:
            await pubsub.close()
            raise TransportUnavailableError("Redis backend is unavailable") from exc
        listener.pubsub = pubsub

        async def read() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    raw = message.get("data")
                    if not isinstance(raw, str):
                        continue
                    try:
                        payload = json.loads(raw)
                    except json.JSONDecodeError:
                        logger.warning(
                            "Discarded malformed realtime payload", extra={"channel": listener.channel}
                        )
                        continue
                    await _dispatch(listener.handler, payload, listener.channel)
            finally:
                if listener.pubsub is pubsub:
                    listener.pubsub = None
                    await self._release(pubsub, listener.channel)

        task = asyncio.create_task(read(), name=f"realtime-redis-{listener.channel}")
        listener.task = task
        if listener.subscription is not None:
            listener.subscription._task = task
        task.add_done_callback(lambda finished: self._on_reader_done(listener, finished))

    def _on_reader_done(self, listener: _RedisListener, task: asyncio.Task[Any]) -> None:
        listener.task = None
        if not listener.active or listener.pausing or task.cancelled():
            return
        exc = task.exception()
        logger.warning(
            "Redis reader stopped; scheduling recovery",
            exc_info=exc,
            extra={"channel": listener.channel},
        )
        self._schedule_recovery("reader_stopped")

    def _schedule_recovery(self, reason: str) -> None:
        if not self._config.redis_url:
            return
        if self._recovery_task is not None and not self._recovery_task.done():
            return
        logger.info("Scheduling Redis realtime recovery", extra={"reason": reason})
        self._recovery_task = asyncio.create_task(self._recover(reason), name="realtime-redis-recovery")

    async def _recover(self, reason: str) -> None:
        attempt = 0
        while True:
            await asyncio.sleep(min(_REDIS_RECOVERY_BASE_DELAY * (2**attempt), _REDIS_RECOVERY_MAX_DELAY))
            try:
                await self._restart()
            except Exception:
                attempt += 1
                logger.exception(
                    "Redis realtime recovery attempt failed",
                    extra={"attempt": attempt, "reason": reason},
                )
                continue
            break
        self._recovery_task = None
        if self._restart_listener is not None:
            self._restart_listener("redis", reason)
        logger.info(
            "Redis realtime backend recovered",
            extra={"reason": reason, "subscriptions": len(self._listeners)},
        )

    async def _restart(self) -> None:
        async with self._recovery_lock:
            for listener in list(self._listeners):
                await self._pause(listener)
            if self._redis is not None:
                client, self._redis = self._redis, None
                try:
                    await client.close()
                except (*_REDIS_ERRORS, OSError):
                    logger.debug("Ignoring error while closing stale Redis client")
            await self._connect()
            for listener in [item for item in self._listeners if item.active]:
                await self._attach(listener)
