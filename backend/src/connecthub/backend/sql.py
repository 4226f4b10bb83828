"""Self-hosted backend running queries through SQLAlchemy Core."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

import anyio
import anyio.to_thread
from sqlalchemy import Column, DateTime, MetaData, Table, and_, delete, insert, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .base import (
    AuthClient,
    Backend,
    BackendError,
    ChangePublisher,
    ChangeRecord,
    Filter,
    Query,
    QueryResult,
    StorageClient,
    parse_columns,
    project_rows,
    shape_rows,
)

logger = logging.getLogger(__name__)


class _QueryFailure(Exception):
    def __init__(self, error: BackendError) -> None:
        super().__init__(error.message)
        self.error = error


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return _utc(value).isoformat()
    return value


def _column_default(column: Column, attribute: str = "default") -> tuple[bool, Any]:
    default = getattr(column, attribute)
    if default is None:
        return False, None
    if default.is_callable:
        return True, default.arg(None)
    if default.is_scalar:
        return True, default.arg
    return False, None


class SqlBackend(Backend):
    """Runs the query interface against local tables.

    Rows are plain dictionaries with datetimes rendered as ISO-8601 strings,
    the same shape the hosted gateway returns. Committed writes are forwarded
    to ``changes`` so realtime subscribers observe them.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        metadata: MetaData,
        *,
        storage: StorageClient,
        auth: AuthClient,
        changes: ChangePublisher | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._max_workers = max_workers
        self._limiter: anyio.CapacityLimiter | None = None
        self._metadata = metadata
        self.changes = changes
        self.storage = storage
        self.auth = auth

    def _worker_limiter(self) -> anyio.CapacityLimiter | None:
        # SQLite connections are shared, so callers pass max_workers=1 for it.
        if self._max_workers and self._limiter is None:
            self._limiter = anyio.CapacityLimiter(self._max_workers)
        return self._limiter

    async def run_query(self, query: Query) -> QueryResult[Any]:
        table = self._metadata.tables.get(query.table)
        if table is None:
            return QueryResult(
                error=BackendError(
                    f'relation "{query.table}" does not exist', code="42P01", status=404
                )
            )

        events: list[ChangeRecord] = []
        outcome = await anyio.to_thread.run_sync(self._execute, table, query, events, limiter=self._worker_limiter())
        if isinstance(outcome, BackendError):
            return QueryResult(error=outcome)

        await self.publish_changes(query.table, events)
        return shape_rows(query, project_rows(outcome, query.columns))

    def _execute(
        self,
        table: Table,
        query: Query,
        events: list[ChangeRecord],
    ) -> list[dict[str, Any]] | BackendError:
        with self._session_factory() as session:
            try:
                rows = self._run(session, table, query, events)
                session.commit()
            except _QueryFailure as exc:
                session.rollback()
                events.clear()
                return exc.error
            except IntegrityError as exc:
                session.rollback()
                events.clear()
                logger.info("Constraint violation on %s: %s", query.table, exc.orig)
                return BackendError(str(exc.orig), code="23505", status=409)
            except SQLAlchemyError as exc:
                session.rollback()
                events.clear()
                logger.exception("Query on %s failed", query.table)
                return BackendError(str(exc), code="db_error", status=500)
        return rows

    def _run(
        self,
        session: Session,
        table: Table,
        query: Query,
        events: list[ChangeRecord],
    ) -> list[dict[str, Any]]:
        self._check_columns(table, query)
        if query.action == "select":
            return self._fetch(session, table, query)
        if query.action == "insert":
            rows = []
            for payload in query.payload or []:
                row = self._insert_row(session, table, payload)
                events.append(("INSERT", row, None))
                rows.append(row)
            return rows
        if query.action == "upsert":
            return [self._upsert_row(session, table, payload, query, events) for payload in query.payload or []]
        if query.action == "update":
            return self._update(session, table, query, events)
        if query.action == "delete":
            return self._delete(session, table, query, events)
        raise _QueryFailure(BackendError(f"Unsupported action {query.action!r}", status=400))

    def _check_columns(self, table: Table, query: Query) -> None:
        names: list[str] = [item.column for item in query.filters]
        names.extend(column for column, _ in query.ordering)
        names.extend(query.on_conflict)
        names.extend(parse_columns(query.columns) or [])
        payload = query.payload
        if isinstance(payload, dict):
            names.extend(payload)
        elif payload:
            for row in payload:
                names.extend(row)
        for name in names:
            if name not in table.c:
                raise _QueryFailure(
                    BackendError(
                        f'column {table.name}.{name} does not exist', code="42703", status=400
                    )
                )

    def _where(self, table: Table, filters: list[Filter]):
        clauses = []
        for item in filters:
            column = table.c[item.column]
            if item.json_key is not None:
                expression = column[item.json_key].as_string()
                values = [None if value is None else str(value) for value in (
                    item.value if item.op == "in" else (item.value,)
                )]
                if item.op == "in":
                    clauses.append(expression.in_(values))
                elif values[0] is None:
                    clauses.append(expression.is_(None) if item.op == "eq" else expression.is_not(None))
                elif item.op == "eq":
                    clauses.append(expression == values[0])
                else:
                    clauses.append(expression != values[0])
                continue
            if item.op == "in":
                clauses.append(column.in_([self._coerce(column, value) for value in item.value]))
            elif item.value is None:
                clauses.append(column.is_(None) if item.op == "eq" else column.is_not(None))
            elif item.op == "eq":
                clauses.append(column == self._coerce(column, item.value))
            else:
                clauses.append(column != self._coerce(column, item.value))
        return and_(*clauses) if clauses else None

    def _fetch(self, session: Session, table: Table, query: Query) -> list[dict[str, Any]]:
        statement = select(table)
        where = self._where(table, query.filters)
        if where is not None:
            statement = statement.where(where)
        for column, desc in query.ordering:
            statement = statement.order_by(table.c[column].desc() if desc else table.c[column].asc())
        if query.limit is not None:
            statement = statement.limit(query.limit)
        return [self._to_row(record._mapping) for record in session.execute(statement)]

    def _insert_row(self, session: Session, table: Table, payload: dict[str, Any]) -> dict[str, Any]:
        values: dict[str, Any] = {}
        for column in table.c:
            if column.name in payload:
                values[column.name] = self._coerce(column, payload[column.name])
                continue
            has_default, default = _column_default(column)
            values[column.name] = default if has_default else None
        session.execute(insert(table).values(**values))
        return {name: _serialize(value) for name, value in values.items()}

    def _upsert_row(
        self,
        session: Session,
        table: Table,
        payload: dict[str, Any],
        query: Query,
        events: list[ChangeRecord],
    ) -> dict[str, Any]:
        conflict = query.on_conflict or tuple(column.name for column in table.primary_key.columns)
        missing = [name for name in conflict if name not in payload]
        if missing:
            row = self._insert_row(session, table, payload)
            events.append(("INSERT", row, None))
            return row
        filters = [Filter(name, "eq", payload[name]) for name in conflict]
        existing = self._fetch(session, table, Query(table=table.name, filters=filters))
        if not existing:
            row = self._insert_row(session, table, payload)
            events.append(("INSERT", row, None))
            return row
        values = self._update_values(table, payload)
        session.execute(update(table).where(self._where(table, filters)).values(**values))
        old = existing[0]
        new = {**old, **{name: _serialize(value) for name, value in values.items()}}
        events.append(("UPDATE", new, old))
        return new

    def _update_values(self, table: Table, payload: dict[str, Any]) -> dict[str, Any]:
        values = {name: self._coerce(table.c[name], value) for name, value in payload.items()}
        for column in table.c:
            if column.name not in values:
                has_default, default = _column_default(column, "onupdate")
                if has_default:
                    values[column.name] = default
        return values

    def _update(
        self,
        session: Session,
        table: Table,
        query: Query,
        events: list[ChangeRecord],
    ) -> list[dict[str, Any]]:
        matched = self._fetch(session, table, Query(table=table.name, filters=query.filters))
        if not matched:
            return []
        values = self._update_values(table, dict(query.payload or {}))
        session.execute(update(table).where(self._where(table, query.filters)).values(**values))
        rendered = {name: _serialize(value) for name, value in values.items()}
        rows = []
        for old in matched:
            new = {**old, **rendered}
            events.append(("UPDATE", new, old))
            rows.append(new)
        return rows

    def _delete(
        self,
        session: Session,
        table: Table,
        query: Query,
        events: list[ChangeRecord],
    ) -> list[dict[str, Any]]:
        matched = self._fetch(session, table, Query(table=table.name, filters=query.filters))
        if matched:
            session.execute(delete(table).where(self._where(table, query.filters)))
        for old in matched:
            events.append(("DELETE", None, old))
        return matched

    @staticmethod
    def _coerce(column: Column, value: Any) -> Any:
        if isinstance(column.type, DateTime) and isinstance(value, str):
            try:
                return _utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
            except ValueError as exc:
                raise _QueryFailure(
                    BackendError(f"invalid timestamp for {column.name}: {value!r}", code="22007", status=400)
                ) from exc
        return value

    @staticmethod
    def _to_row(mapping: Any) -> dict[str, Any]:
        return {key: _serialize(value) for key, value in mapping.items()}
