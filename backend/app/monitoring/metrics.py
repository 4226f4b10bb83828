"""Metric definitions for realtime delivery, uploads and presence."""

from __future__ import annotations

from .registry import registry

realtime_events_total = registry.counter(
    "realtime_events_total",
    "Row change events relayed to websocket clients.",
    label_names=("table", "event"),
)

realtime_connections = registry.gauge(
    "realtime_active_connections",
    "Websocket change-feed connections handled by this process.",
)

realtime_subscribe_retries_total = registry.counter(
    "realtime_subscribe_retries_total",
    "Failed realtime subscription attempts that were scheduled for retry.",
    label_names=("table",),
)

realtime_transport_restarts_total = registry.counter(
    "realtime_transport_restarts_total",
    "Broker transport recoveries after a connection failure.",
    label_names=("backend", "reason"),
)

upload_attempts_total = registry.counter(
    "upload_attempts_total",
    "Upload requests handled by the upload endpoint.",
    label_names=("bucket", "outcome"),
)

presence_failures_total = registry.counter(
    "presence_failures_total",
    "Presence heartbeat writes rejected by the backend.",
)
