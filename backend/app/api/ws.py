"""WebSocket relay of row change events to browser clients."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, Depends, HTTPException, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState

from app.api.deps import resolve_identity
from app.config import get_settings
from app.monitoring.metrics import (
    presence_failures_total,
    realtime_connections,
    realtime_events_total,
    realtime_subscribe_retries_total,
)
from app.services.backend import get_backend
from app.services.realtime import get_realtime_client
from connecthub.backend import Backend
from connecthub.identity import Identity
from connecthub.presence import start_presence
from connecthub.realtime import ChangeEvent, RealtimeClient, RealtimeSubscription, parse_filter

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

T = TypeVar("T")

PUBLIC_TABLES = frozenset({"posts", "comments", "profiles", "presence"})
MEMBER_TABLES = frozenset({"messages"})


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Send JSON unless the socket is already gone; returns whether it was sent."""

    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.debug("Failed to send websocket message: %s", exc)
        return False


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle."""

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break
            now = time.monotonic()
            due = interval <= 0 or (
                now - last_activity >= interval
                and (last_ping_sent is None or now - last_ping_sent >= interval)
            )
            if due:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


def _extract_token(websocket: WebSocket) -> str | None:
    token = websocket.query_params.get("token")
    if token:
        return token
    auth_header = websocket.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return None


async def _authorize_feed(backend: Backend, identity: Identity, table: str, filter: str | None) -> str | None:
    """Return a rejection reason, or None when the caller may watch the feed."""

    if table in PUBLIC_TABLES:
        return None
    if table not in MEMBER_TABLES:
        return "Table not available"
    if not filter:
        return "Filter required"
    column, value = parse_filter(filter)
    if column != "conversation_id":
        return "Filter must select a conversation"
    result = await (
        backend.table("conversation_participants")
        .select("user_id")
        .eq("conversation_id", value)
        .eq("user_id", identity.id)
        .maybe_single()
        .execute()
    )
    if result.error is not None or result.data is None:
        return "Not a conversation participant"
    return None


def _change_message(event: ChangeEvent) -> dict[str, Any]:
    return {
        "type": "change",
        "table": event.table,
        "eventType": event.event_type,
        "new": {} if event.event_type == "DELETE" else event.record,
        "old": event.old_record,
        "commit_timestamp": event.commit_timestamp,
    }


@router.websocket("/changes")
async def change_feed_ws(
    websocket: WebSocket,
    backend: Backend = Depends(get_backend),
    realtime: RealtimeClient = Depends(get_realtime_client),
) -> None:
    """Stream row changes for one table, optionally narrowed by ``column=eq.value``.

    The connection also keeps the caller's presence row online until it closes.
    Changes committed while the socket is disconnected are not replayed.
    """

    token = _extract_token(websocket)
    if not token:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Missing token")
        return
    try:
        identity = await resolve_identity(backend, token)
    except HTTPException:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Invalid token")
        return

    table = websocket.query_params.get("table", "")
    filter = websocket.query_params.get("filter") or None
    try:
        reason = await _authorize_feed(backend, identity, table, filter)
    except ValueError:
        reason = "Unsupported filter"
    if reason is not None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=reason)
        return

    await websocket.accept()
    realtime_connections.labels().inc()

    async def relay(event: ChangeEvent) -> None:
        if await safe_send_json(websocket, _change_message(event)):
            realtime_events_total.labels(event.table, event.event_type).inc()

    subscription = RealtimeSubscription(
        realtime,
        table,
        relay,
        filter=filter,
        on_retry=lambda attempt, delay: realtime_subscribe_retries_total.labels(table).inc(),
    ).start()
    presence = await start_presence(
        backend,
        identity.id,
        heartbeat_ms=settings.presence_heartbeat_ms,
        on_failure=lambda error: presence_failures_total.inc(),
    )
    try:
        try:
            await subscription.wait_subscribed(timeout=settings.websocket_keepalive_timeout_seconds)
        except asyncio.TimeoutError:
            await safe_send_json(websocket, {"type": "status", "status": "retrying", "table": table})
        else:
            await safe_send_json(websocket, {"type": "subscribed", "table": table, "filter": filter})
        async for raw_message in iter_keepalive_messages(
            websocket,
            websocket.receive_text,
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
        ):
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, dict) and payload.get("type") == "ping":
                await safe_send_json(websocket, {"type": "pong"})
    finally:
        await subscription.close()
        await presence.stop()
        realtime_connections.labels().dec()
        logger.debug("Change feed socket closed", extra={"table": table, "user_id": identity.id})
