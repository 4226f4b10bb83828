"""Best-effort online heartbeat and presence lookup."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

from .backend.base import Backend, BackendError

logger = logging.getLogger(__name__)

PRESENCE_TABLE = "presence"
DEFAULT_HEARTBEAT_MS = 30_000

FailureListener = Callable[[BackendError], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _upsert(
    backend: Backend, user_id: str, online: bool, on_failure: FailureListener | None
) -> bool:
    result = await (
        backend.table(PRESENCE_TABLE)
        .upsert({"user_id": user_id, "online": online, "last_seen": _now()}, on_conflict="user_id")
        .execute()
    )
    if result.error is None:
        return True
    logger.warning(
        "Presence upsert failed",
        extra={"user_id": user_id, "online": online, "error": result.error.message},
    )
    if on_failure is not None:
        on_failure(result.error)
    return False


class PresenceHandle:
    """Running heartbeat for one user. ``stop()`` may be called any number of times."""

    def __init__(
        self,
        backend: Backend,
        user_id: str,
        *,
        heartbeat_ms: int = DEFAULT_HEARTBEAT_MS,
        on_failure: FailureListener | None = None,
    ) -> None:
        if heartbeat_ms <= 0:
            raise ValueError("heartbeat_ms must be positive")
        self._backend = backend
        self._user_id = user_id
        self._interval = heartbeat_ms / 1000
        self._on_failure = on_failure
        self._task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def user_id(self) -> str:
        return self._user_id

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def _start(self) -> None:
        await _upsert(self._backend, self._user_id, True, self._on_failure)
        if not self._stopped:
            self._task = asyncio.create_task(self._beat(), name=f"presence-{self._user_id}")

    async def _beat(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await _upsert(self._backend, self._user_id, True, self._on_failure)

    async def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await _upsert(self._backend, self._user_id, False, self._on_failure)


async def start_presence(
    backend: Backend,
    user_id: str,
    *,
    heartbeat_ms: int = DEFAULT_HEARTBEAT_MS,
    on_failure: FailureListener | None = None,
) -> PresenceHandle:
    """Mark ``user_id`` online now and every ``heartbeat_ms`` until stopped."""

    handle = PresenceHandle(backend, user_id, heartbeat_ms=heartbeat_ms, on_failure=on_failure)
    await handle._start()
    return handle


async def fetch_presence(backend: Backend, user_ids: Iterable[str]) -> list[dict[str, Any]]:
    """Latest presence row for each user, most recently seen first."""

    ids = list(dict.fromkeys(user_id for user_id in user_ids if user_id))
    if not ids:
        return []
    result = await (
        backend.table(PRESENCE_TABLE)
        .select("*")
        .in_("user_id", ids)
        .order("last_seen", desc=True)
        .execute()
    )
    if result.error is not None:
        logger.warning("Presence lookup failed", extra={"error": result.error.message})
        return []
    rows: dict[str, dict[str, Any]] = {}
    for row in result.data or []:
        rows.setdefault(row.get("user_id"), row)
    return list(rows.values())
