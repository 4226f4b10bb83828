"""Client-side list blending optimistic entries with confirmed rows."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterator, Literal

from connecthub.backend.base import QueryResult
from connecthub.realtime.adapter import ChangeEvent

logger = logging.getLogger(__name__)

TEMP_ID_PREFIX = "temp-"

ListEventKind = Literal["added", "updated", "removed", "reset"]


@dataclass(slots=True, frozen=True)
class ListEvent:
    kind: ListEventKind
    entity_id: Any = None


Listener = Callable[[ListEvent], None]
Transform = Callable[[dict[str, Any]], dict[str, Any]]


def new_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(TEMP_ID_PREFIX)


class OptimisticList:
    """Ordered entity list fed by local intents, server replies and realtime events.

    ``newest_first`` lists (feeds) place new entries at the head; chat
    histories use ``newest_first=False`` and append at the tail.

    Confirmed creations are never inserted directly. :meth:`create` drops the
    temporary entry as soon as the commit settles and the realtime INSERT
    delivers the stored row, so the entry may briefly disappear in between.
    """

    def __init__(
        self,
        *,
        newest_first: bool = True,
        key: str = "id",
        transform: Transform | None = None,
    ) -> None:
        self._items: list[dict[str, Any]] = []
        self._newest_first = newest_first
        self._key = key
        self._transform = transform
        self._listeners: list[Listener] = []

    @property
    def items(self) -> list[dict[str, Any]]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(list(self._items))

    def __contains__(self, entity_id: object) -> bool:
        return self._index(entity_id) is not None

    def get(self, entity_id: Any) -> dict[str, Any] | None:
        index = self._index(entity_id)
        return None if index is None else self._items[index]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for changes to this list; returns the unsubscriber."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def load(self, rows: list[dict[str, Any]]) -> None:
        """Replace the contents with rows already in display order."""

        self._items = [self._shape(row) for row in rows]
        self._emit("reset")

    def add_optimistic(self, fields: dict[str, Any]) -> str:
        temp_id = new_temp_id()
        entity = {**fields, self._key: temp_id, "optimistic": True}
        self._place(entity)
        self._emit("added", temp_id)
        return temp_id

    def insert(self, row: dict[str, Any]) -> bool:
        entity = self._shape(row)
        entity_id = entity.get(self._key)
        if entity_id is None or self._index(entity_id) is not None:
            return False
        self._place(entity)
        self._emit("added", entity_id)
        return True

    def replace(self, row: dict[str, Any]) -> bool:
        entity = self._shape(row)
        index = self._index(entity.get(self._key))
        if index is None:
            return False
        self._items[index] = {**self._items[index], **entity}
        self._emit("updated", entity.get(self._key))
        return True

    def remove(self, entity_id: Any) -> bool:
        index = self._index(entity_id)
        if index is None:
            return False
        del self._items[index]
        self._emit("removed", entity_id)
        return True

    def apply(self, event: ChangeEvent) -> bool:
        """Fold a realtime change into the list; returns whether it changed."""

        if event.event_type == "INSERT":
            return self.insert(event.record)
        if event.event_type == "UPDATE":
            return self.replace(event.record)
        if event.event_type == "DELETE":
            return self.remove(event.record.get(self._key))
        return False

    async def create(
        self,
        fields: dict[str, Any],
        commit: Callable[[], Awaitable[Any]],
    ) -> Any:
        """Show ``fields`` immediately, then run ``commit``.

        The temporary entry is removed whatever the outcome. Errors from
        ``commit`` and backend errors in a returned ``QueryResult`` propagate
        to the caller.
        """

        temp_id = self.add_optimistic(fields)
        try:
            result = await commit()
        finally:
            self.remove(temp_id)
        if isinstance(result, QueryResult):
            return result.unwrap()
        return result

    def _shape(self, row: dict[str, Any]) -> dict[str, Any]:
        shaped = self._transform(row) if self._transform is not None else row
        return dict(shaped)

    def _place(self, entity: dict[str, Any]) -> None:
        if self._newest_first:
            self._items.insert(0, entity)
        else:
            self._items.append(entity)

    def _index(self, entity_id: object) -> int | None:
        if entity_id is None:
            return None
        for index, item in enumerate(self._items):
            if item.get(self._key) == entity_id:
                return index
        return None

    def _emit(self, kind: ListEventKind, entity_id: Any = None) -> None:
        event = ListEvent(kind, entity_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("List listener failed", extra={"kind": kind})
