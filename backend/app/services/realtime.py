"""Process-wide broker transport, change feed and realtime client."""

from __future__ import annotations

import logging

from app.config import get_settings
from app.monitoring.metrics import realtime_transport_restarts_total
from connecthub.realtime import (
    BrokerConfig,
    BrokerTransport,
    ChangeFeed,
    RealtimeClient,
    TransportUnavailableError,
)

logger = logging.getLogger(__name__)

settings = get_settings()


def _count_restart(backend: str, reason: str) -> None:
    realtime_transport_restarts_total.labels(backend, reason).inc()


transport = BrokerTransport(
    BrokerConfig(redis_url=settings.realtime_redis_url, prefix=settings.realtime_namespace),
    restart_listener=_count_restart,
)
change_feed = ChangeFeed(transport)
realtime_client = RealtimeClient(transport)


async def startup_realtime() -> None:
    try:
        await transport.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Realtime backend unavailable during startup; change events will not be relayed",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    logger.info("Realtime transport started", extra={"backend": transport.backend})


async def shutdown_realtime() -> None:
    await realtime_client.remove_all_channels()
    await transport.stop()


def get_realtime_client() -> RealtimeClient:
    return realtime_client


def get_change_feed() -> ChangeFeed:
    return change_feed
