"""HTTP client for the hosted REST gateway, auth and storage services."""

from __future__ import annotations

import logging
from typing import Any, Iterable
from urllib.parse import quote

import httpx

from connecthub.identity import Identity

from .base import Backend, BackendError, ChangePublisher, ChangeRecord, Filter, Query, QueryResult, shape_rows

logger = logging.getLogger(__name__)


def _format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _format_list_item(value: Any) -> str:
    text = _format_value(value)
    if any(char in text for char in ',()"'):
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text


def encode_filter(item: Filter) -> tuple[str, str]:
    """Translate a filter into a PostgREST query parameter."""

    key = f"{item.column}->>{item.json_key}" if item.json_key else item.column
    if item.op == "in":
        joined = ",".join(_format_list_item(value) for value in item.value)
        return key, f"in.({joined})"
    if item.value is None:
        return key, "is.null" if item.op == "eq" else "not.is.null"
    return key, f"{item.op}.{_format_value(item.value)}"


def _json_body(response: httpx.Response) -> tuple[Any, BackendError | None]:
    try:
        return response.json(), None
    except ValueError:
        logger.warning(
            "Backend returned a non-JSON body", extra={"status": response.status_code, "url": str(response.url)}
        )
        return None, BackendError("Invalid JSON in backend response", code="invalid_response", status=502)


# PostgREST does not say whether an upsert inserted or updated a row.
_WRITE_EVENTS = {"insert": "INSERT", "upsert": "UPDATE", "update": "UPDATE", "delete": "DELETE"}


def _error_from_response(response: httpx.Response) -> BackendError:
    message = response.text or response.reason_phrase
    code: str | None = None
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        message = str(
            body.get("message")
            or body.get("msg")
            or body.get("error_description")
            or body.get("error")
            or message
        )
        raw_code = body.get("code") or body.get("statusCode")
        code = str(raw_code) if raw_code is not None else None
    return BackendError(message, code=code, status=response.status_code)


class RestBackend(Backend):
    """Backend implementation talking to the hosted service over HTTP.

    Rows returned by successful writes are forwarded to ``changes``; writes
    made by other clients of the hosted service are not observed.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        http: httpx.AsyncClient | None = None,
        public_buckets: Iterable[str] = (),
        timeout: float = 10.0,
        changes: ChangePublisher | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self.changes = changes
        self.auth = RestAuth(self)
        self.storage = RestStorage(self, public_buckets)

    @property
    def base_url(self) -> str:
        return self._base_url

    def headers(self, token: str | None = None) -> dict[str, str]:
        return {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token or self._api_key}",
        }

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str | None = None,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> tuple[httpx.Response | None, BackendError | None]:
        merged = self.headers(token)
        if headers:
            merged.update(headers)
        try:
            response = await self._http.request(
                method, f"{self._base_url}{path}", headers=merged, **kwargs
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "Backend request failed", extra={"method": method, "path": path, "error": str(exc)}
            )
            return None, BackendError(str(exc) or exc.__class__.__name__, code="network_error")
        if response.is_error:
            return response, _error_from_response(response)
        return response, None

    async def run_query(self, query: Query) -> QueryResult[Any]:
        params: list[tuple[str, str]] = []
        if query.columns:
            params.append(("select", query.columns.replace(" ", "")))
        params.extend(encode_filter(item) for item in query.filters)
        if query.ordering:
            params.append(
                ("order", ",".join(f"{column}.{'desc' if desc else 'asc'}" for column, desc in query.ordering))
            )
        if query.limit is not None:
            params.append(("limit", str(query.limit)))

        headers: dict[str, str] = {}
        method = "GET"
        body: Any = None
        if query.action == "insert":
            method, body = "POST", query.payload
            headers["Prefer"] = "return=representation"
        elif query.action == "upsert":
            method, body = "POST", query.payload
            headers["Prefer"] = "resolution=merge-duplicates,return=representation"
            if query.on_conflict:
                params.append(("on_conflict", ",".join(query.on_conflict)))
        elif query.action == "update":
            method, body = "PATCH", query.payload
            headers["Prefer"] = "return=representation"
        elif query.action == "delete":
            method = "DELETE"
            headers["Prefer"] = "return=representation"

        response, error = await self.request(
            method,
            f"/rest/v1/{query.table}",
            params=params,
            json=body,
            headers=headers,
        )
        if error is not None:
            return QueryResult(error=error)
        assert response is not None
        if not response.content:
            return shape_rows(query, [])
        rows, error = _json_body(response)
        if error is not None:
            return QueryResult(error=error)
        if isinstance(rows, dict):
            rows = [rows]
        if not isinstance(rows, list):
            return QueryResult(
                error=BackendError("Unexpected response body from backend", code="invalid_response", status=502)
            )
        event_type = _WRITE_EVENTS.get(query.action)
        if event_type is not None:
            await self.publish_changes(query.table, [_change_record(event_type, row) for row in rows])
        return shape_rows(query, rows)

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()


def _change_record(event_type: str, row: dict[str, Any]) -> ChangeRecord:
    if event_type == "DELETE":
        return event_type, None, row
    return event_type, row, None


class RestAuth:
    """Access token verification against the hosted auth service."""

    def __init__(self, backend: RestBackend) -> None:
        self._backend = backend

    async def get_user(self, access_token: str) -> QueryResult[Identity]:
        response, error = await self._backend.request("GET", "/auth/v1/user", token=access_token)
        if error is not None:
            return QueryResult(error=error)
        assert response is not None
        try:
            identity = Identity.from_user_payload(response.json(), access_token=access_token)
        except ValueError as exc:
            return QueryResult(error=BackendError(str(exc), code="invalid_user", status=401))
        return QueryResult(data=identity)


class RestStorage:
    def __init__(self, backend: RestBackend, public_buckets: Iterable[str]) -> None:
        self._backend = backend
        self._public = frozenset(public_buckets)

    def from_(self, bucket: str) -> "RestBucket":
        return RestBucket(self._backend, bucket, public=bucket in self._public)


class RestBucket:
    """Object operations scoped to one storage bucket."""

    def __init__(self, backend: RestBackend, bucket: str, *, public: bool) -> None:
        self._backend = backend
        self._bucket = bucket
        self._public = public

    def _object_path(self, path: str) -> str:
        return f"{quote(self._bucket)}/{quote(path.lstrip('/'))}"

    async def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> QueryResult[dict[str, Any]]:
        _, error = await self._backend.request(
            "POST",
            f"/storage/v1/object/{self._object_path(path)}",
            content=data,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "Cache-Control": "max-age=3600",
                "x-upsert": "true" if upsert else "false",
            },
        )
        if error is not None:
            return QueryResult(error=error)
        return QueryResult(data={"path": path})

    def get_public_url(self, path: str) -> str | None:
        if not self._public:
            return None
        return f"{self._backend.base_url}/storage/v1/object/public/{self._object_path(path)}"

    async def create_signed_url(self, path: str, ttl_seconds: int) -> QueryResult[dict[str, Any]]:
        response, error = await self._backend.request(
            "POST",
            f"/storage/v1/object/sign/{self._object_path(path)}",
            json={"expiresIn": ttl_seconds},
        )
        if error is not None:
            return QueryResult(error=error)
        assert response is not None
        body, error = _json_body(response)
        if error is not None:
            return QueryResult(error=error)
        signed = (body.get("signedURL") or body.get("signedUrl")) if isinstance(body, dict) else None
        if not signed:
            return QueryResult(error=BackendError("Signed URL missing from response", status=502))
        return QueryResult(data={"signedUrl": f"{self._backend.base_url}/storage/v1{signed}"})
