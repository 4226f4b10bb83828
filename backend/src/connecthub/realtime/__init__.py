"""Realtime change feed: broker transport, channels and table subscriptions."""

from .adapter import ChangeEvent, RealtimeSubscription, retry_delay
from .channels import ChangeFeed, RealtimeChannel, RealtimeClient, change_topic, parse_filter
from .transport import BrokerConfig, BrokerTransport, Subscription, TransportUnavailableError

__all__ = [
    "BrokerConfig",
    "BrokerTransport",
    "ChangeEvent",
    "ChangeFeed",
    "RealtimeChannel",
    "RealtimeClient",
    "RealtimeSubscription",
    "Subscription",
    "TransportUnavailableError",
    "change_topic",
    "parse_filter",
    "retry_delay",
]
