from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any

import pytest

from app.monitoring.metrics import realtime_transport_restarts_total
from app.services.realtime import _count_restart
from connecthub.realtime.transport import (
    BrokerConfig,
    BrokerTransport,
    TransportUnavailableError,
)


class FakePubSub:
    def __init__(self, redis: FakeRedis) -> None:
        self._redis = redis
        self._queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        if not self._redis.online:
            raise ConnectionError("offline")
        self._channels.add(channel)
        self._redis.register(channel, self)

    async def unsubscribe(self, channel: str) -> None:
        if channel in self._channels:
            self._redis.unregister(channel, self)
            self._channels.discard(channel)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._queue.get()
            if message is None:
                break
            yield message

    def push(self, message: dict[str, Any] | None) -> None:
        self._queue.put_nowait(message)


class FakeRedis:
    def __init__(self) -> None:
        self.online = True
        self._pubsubs: dict[str, set[FakePubSub]] = {}

    async def ping(self) -> None:
        if not self.online:
            raise ConnectionError("offline")

    async def publish(self, channel: str, payload: str) -> None:
        if not self.online:
            raise ConnectionError("offline")
        for pubsub in list(self._pubsubs.get(channel, set())):
            pubsub.push({"type": "message", "data": payload})

    def pubsub(self) -> FakePubSub:
        return FakePubSub(self)

    async def close(self) -> None:
        self.fail()
        self._pubsubs.clear()

    def register(self, channel: str, pubsub: FakePubSub) -> None:
        self._pubsubs.setdefault(channel, set()).add(pubsub)

    def unregister(self, channel: str, pubsub: FakePubSub) -> None:
        subscribers = self._pubsubs.get(channel)
        if not subscribers:
            return
        subscribers.discard(pubsub)
        if not subscribers:
            self._pubsubs.pop(channel, None)

    def fail(self) -> None:
        self.online = False
        for subscribers in list(self._pubsubs.values()):
            for pubsub in list(subscribers):
                pubsub.push(None)


class FakeRedisFactory:
    def __init__(self) -> None:
        self.instances: list[FakeRedis] = []

    def from_url(self, *_args: Any, **_kwargs: Any) -> FakeRedis:
        client = FakeRedis()
        self.instances.append(client)
        return client


@pytest.fixture(autouse=True)
def reset_transport_restart_metric() -> None:
    realtime_transport_restarts_total.reset()
    yield
    realtime_transport_restarts_total.reset()


@pytest.fixture()
def fake_redis(monkeypatch) -> FakeRedisFactory:
    factory = FakeRedisFactory()
    monkeypatch.setattr(
        "connecthub.realtime.transport.redis_asyncio",
        SimpleNamespace(from_url=factory.from_url),
    )
    monkeypatch.setattr("connecthub.realtime.transport._REDIS_RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("connecthub.realtime.transport._REDIS_RECOVERY_MAX_DELAY", 0.05)
    return factory


async def _wait_for_instances(factory: FakeRedisFactory, expected: int) -> None:
    for _ in range(50):
        if len(factory.instances) >= expected:
            return
        await asyncio.sleep(0.02)
    raise AssertionError("Redis client was not recreated")


@pytest.mark.anyio("asyncio")
async def test_redis_transport_recovers_after_disconnect(fake_redis):
    transport = BrokerTransport(BrokerConfig(redis_url="redis://fake"), restart_listener=_count_restart)
    await transport.start()
    assert transport.backend == "redis"
    assert transport.connected

    received: list[dict[str, Any]] = []
    received_event = asyncio.Event()

    async def handler(payload: dict[str, Any]) -> None:
        received.append(payload)
        received_event.set()

    subscription = await transport.subscribe("changes.posts", handler)

    await transport.publish("changes.posts", {"value": 1})
    await asyncio.wait_for(received_event.wait(), timeout=1.0)
    received_event.clear()
    received.clear()

    fake_redis.instances[0].fail()
    await asyncio.sleep(0)

    with pytest.raises(TransportUnavailableError):
        await transport.publish("changes.posts", {"value": 2})

    await _wait_for_instances(fake_redis, 2)

    async def publish_with_retry(payload: dict[str, Any]) -> None:
        for _ in range(20):
            try:
                await transport.publish("changes.posts", payload)
                return
            except TransportUnavailableError:
                await asyncio.sleep(0.05)
        raise AssertionError("Redis transport did not recover in time")

    await publish_with_retry({"value": 3})
    await asyncio.wait_for(received_event.wait(), timeout=1.5)

    assert received == [{"value": 3}]
    restarts = realtime_transport_restarts_total.value("redis", "publish_failed") + realtime_transport_restarts_total.value(
        "redis", "reader_stopped"
    )
    assert restarts >= 1.0

    await subscription.close()
    assert subscription.closed
    await transport.stop()


@pytest.mark.anyio("asyncio")
async def test_redis_channel_names_use_prefix(fake_redis):
    transport = BrokerTransport(BrokerConfig(redis_url="redis://fake", prefix="hub.events."))
    assert transport.channel_name("changes.posts") == "hub.events.changes.posts"

    await transport.start()
    seen: list[dict[str, Any]] = []

    async def handler(payload: dict[str, Any]) -> None:
        seen.append(payload)

    subscription = await transport.subscribe("changes.posts", handler)
    assert "hub.events.changes.posts" in fake_redis.instances[0]._pubsubs
    await subscription.close()
    assert "hub.events.changes.posts" not in fake_redis.instances[0]._pubsubs
    await transport.stop()


@pytest.mark.anyio("asyncio")
async def test_closing_running_reader_releases_channel(fake_redis):
    transport = BrokerTransport(BrokerConfig(redis_url="redis://fake"))
    await transport.start()

    async def handler(payload: dict[str, Any]) -> None:
        return None

    subscription = await transport.subscribe("changes.comments", handler)
    channel = transport.channel_name("changes.comments")
    for _ in range(3):
        await asyncio.sleep(0)
    assert channel in fake_redis.instances[0]._pubsubs

    await subscription.close()
    assert channel not in fake_redis.instances[0]._pubsubs
    assert transport._listeners == []
    await transport.stop()


@pytest.mark.anyio("asyncio")
async def test_memory_transport_delivers_in_process_and_isolates_handler_errors():
    transport = BrokerTransport(BrokerConfig())
    await transport.start()
    assert transport.backend == "memory"

    delivered: list[dict[str, Any]] = []

    async def broken(payload: dict[str, Any]) -> None:
        raise RuntimeError("boom")

    async def healthy(payload: dict[str, Any]) -> None:
        delivered.append(payload)

    first = await transport.subscribe("changes.comments", broken)
    second = await transport.subscribe("changes.comments", healthy)

    await transport.publish("changes.comments", {"id": "c1"})
    assert delivered == [{"id": "c1"}]

    await second.close()
    await transport.publish("changes.comments", {"id": "c2"})
    assert delivered == [{"id": "c1"}]

    await first.close()
    await transport.stop()
