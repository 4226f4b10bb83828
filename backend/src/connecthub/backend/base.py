"""Backend-agnostic query builder, result types and storage contracts."""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass, field
from typing import Any, Generic, Iterable, Literal, Protocol, Sequence, TypeVar

from connecthub.identity import Identity

logger = logging.getLogger(__name__)

T = TypeVar("T")

Action = Literal["select", "insert", "update", "upsert", "delete"]
Cardinality = Literal["many", "single", "maybe_single"]
FilterOp = Literal["eq", "neq", "in"]


@dataclass(slots=True)
class BackendError:
    """Error reported by the backend.

    Backend failures are returned as values and never raised; callers inspect
    ``QueryResult.error`` after every call.
    """

    message: str
    code: str | None = None
    status: int | None = None

    def __str__(self) -> str:
        return self.message


class BackendQueryError(RuntimeError):
    """Raised by callers that decide to escalate a returned backend error."""

    def __init__(self, error: BackendError) -> None:
        super().__init__(error.message)
        self.error = error


@dataclass(slots=True)
class QueryResult(Generic[T]):
    """``{data, error}`` pair returned by every backend call."""

    data: T | None = None
    error: BackendError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        if self.error is not None:
            raise BackendQueryError(self.error)
        return self.data  # type: ignore[return-value]


@dataclass(slots=True, frozen=True)
class Filter:
    column: str
    op: FilterOp
    value: Any
    json_key: str | None = None


@dataclass(slots=True)
class Query:
    """Declarative description of a single table operation."""

    table: str
    action: Action = "select"
    columns: str = "*"
    payload: list[dict[str, Any]] | dict[str, Any] | None = None
    filters: list[Filter] = field(default_factory=list)
    ordering: list[tuple[str, bool]] = field(default_factory=list)
    limit: int | None = None
    cardinality: Cardinality = "many"
    on_conflict: tuple[str, ...] = ()


class QueryBuilder:
    """Chainable builder mirroring the hosted query API."""

    def __init__(self, backend: "Backend", table: str) -> None:
        self._backend = backend
        self._query = Query(table=table)

    @property
    def query(self) -> Query:
        return self._query

    def select(self, columns: str = "*") -> "QueryBuilder":
        # After a mutation this only narrows the returned representation.
        self._query.columns = columns
        return self

    def insert(self, rows: dict[str, Any] | Sequence[dict[str, Any]]) -> "QueryBuilder":
        self._query.action = "insert"
        self._query.payload = _as_rows(rows)
        return self

    def upsert(
        self,
        rows: dict[str, Any] | Sequence[dict[str, Any]],
        *,
        on_conflict: str | Sequence[str] | None = None,
    ) -> "QueryBuilder":
        self._query.action = "upsert"
        self._query.payload = _as_rows(rows)
        if on_conflict:
            if isinstance(on_conflict, str):
                on_conflict = [part.strip() for part in on_conflict.split(",") if part.strip()]
            self._query.on_conflict = tuple(on_conflict)
        return self

    def update(self, values: dict[str, Any]) -> "QueryBuilder":
        self._query.action = "update"
        self._query.payload = dict(values)
        return self

    def delete(self) -> "QueryBuilder":
        self._query.action = "delete"
        return self

    def eq(self, column: str, value: Any) -> "QueryBuilder":
        self._query.filters.append(Filter(column, "eq", value))
        return self

    def neq(self, column: str, value: Any) -> "QueryBuilder":
        self._query.filters.append(Filter(column, "neq", value))
        return self

    def in_(self, column: str, values: Iterable[Any]) -> "QueryBuilder":
        self._query.filters.append(Filter(column, "in", tuple(values)))
        return self

    def json_eq(self, column: str, key: str, value: Any) -> "QueryBuilder":
        """Filter on a text value nested in a JSON column (``column->>key``)."""

        self._query.filters.append(Filter(column, "eq", value, json_key=key))
        return self

    def json_in(self, column: str, key: str, values: Iterable[Any]) -> "QueryBuilder":
        self._query.filters.append(Filter(column, "in", tuple(values), json_key=key))
        return self

    def order(self, column: str, *, desc: bool = False) -> "QueryBuilder":
        self._query.ordering.append((column, desc))
        return self

    def limit(self, count: int) -> "QueryBuilder":
        self._query.limit = count
        return self

    def single(self) -> "QueryBuilder":
        self._query.cardinality = "single"
        return self

    def maybe_single(self) -> "QueryBuilder":
        self._query.cardinality = "maybe_single"
        return self

    async def execute(self) -> QueryResult[Any]:
        if self._query.action in ("update", "delete") and not self._query.filters:
            return QueryResult(
                error=BackendError(
                    f"{self._query.action.upper()} requires a filter", code="21000", status=400
                )
            )
        return await self._backend.run_query(self._query)


def _as_rows(rows: dict[str, Any] | Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(rows, dict):
        return [dict(rows)]
    return [dict(row) for row in rows]


def project_rows(rows: list[dict[str, Any]], columns: str) -> list[dict[str, Any]]:
    """Keep only the requested columns of each row."""

    names = parse_columns(columns)
    if names is None:
        return rows
    return [{name: row.get(name) for name in names} for row in rows]


def parse_columns(columns: str) -> list[str] | None:
    stripped = columns.strip()
    if stripped in ("", "*"):
        return None
    return [name.strip() for name in stripped.split(",") if name.strip()]


def shape_rows(query: Query, rows: list[dict[str, Any]]) -> QueryResult[Any]:
    """Apply the requested cardinality to a list of result rows."""

    if query.cardinality == "many":
        return QueryResult(data=rows)
    if len(rows) == 1:
        return QueryResult(data=rows[0])
    if not rows and query.cardinality == "maybe_single":
        return QueryResult(data=None)
    return QueryResult(
        error=BackendError(
            "JSON object requested, multiple (or no) rows returned",
            code="PGRST116",
            status=406,
        )
    )


class StorageBucket(Protocol):
    async def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> QueryResult[dict[str, Any]]: ...

    def get_public_url(self, path: str) -> str | None: ...

    async def create_signed_url(self, path: str, ttl_seconds: int) -> QueryResult[dict[str, Any]]: ...


class StorageClient(Protocol):
    def from_(self, bucket: str) -> StorageBucket: ...


class AuthClient(Protocol):
    async def get_user(self, access_token: str) -> QueryResult[Identity]: ...


ChangeRecord = tuple[str, dict[str, Any] | None, dict[str, Any] | None]


class ChangePublisher(Protocol):
    async def publish_change(
        self,
        table: str,
        event_type: str,
        new: dict[str, Any] | None,
        old: dict[str, Any] | None,
    ) -> None: ...


class Backend(abc.ABC):
    """Client for the managed datastore, auth and object storage.

    Successful writes are forwarded to ``changes`` as INSERT, UPDATE or
    DELETE records so realtime subscribers in this process observe them.
    """

    auth: AuthClient
    storage: StorageClient
    changes: ChangePublisher | None = None

    def table(self, name: str) -> QueryBuilder:
        return QueryBuilder(self, name)

    @abc.abstractmethod
    async def run_query(self, query: Query) -> QueryResult[Any]:
        """Execute a query and return its rows or an error value."""

    async def publish_changes(self, table: str, records: Sequence[ChangeRecord]) -> None:
        if self.changes is None:
            return
        for event_type, new, old in records:
            try:
                await self.changes.publish_change(table, event_type, new, old)
            except Exception:
                logger.exception("Failed to publish %s change for %s", event_type, table)

    async def aclose(self) -> None:
        return None
