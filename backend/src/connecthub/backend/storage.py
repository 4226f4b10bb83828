"""Filesystem object storage with HMAC-signed, time-limited URLs."""

from __future__ import annotations

import hashlib
import hmac
import time
from pathlib import Path, PurePosixPath
from typing import Any, Iterable
from urllib.parse import quote, urlencode

import anyio.to_thread

from .base import BackendError, QueryResult


class InvalidObjectPath(ValueError):
    """Raised when an object path escapes its bucket."""


def _clean_path(path: str) -> str:
    candidate = PurePosixPath(path.lstrip("/"))
    if not candidate.parts or any(part in ("..", ".") for part in candidate.parts):
        raise InvalidObjectPath(f"Invalid object path: {path!r}")
    return candidate.as_posix()


def _write_object(target: Path, data: bytes) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


class LocalStorage:
    """Stores objects below ``root/<bucket>/<path>``."""

    def __init__(
        self,
        root: Path,
        *,
        base_url: str,
        public_buckets: Iterable[str],
        signing_key: str,
    ) -> None:
        self._root = Path(root)
        self._base_url = base_url.rstrip("/")
        self._public = frozenset(public_buckets)
        self._signing_key = signing_key.encode("utf-8")

    @property
    def root(self) -> Path:
        return self._root

    def from_(self, bucket: str) -> "LocalBucket":
        return LocalBucket(self, bucket)

    def is_public(self, bucket: str) -> bool:
        return bucket in self._public

    def resolve(self, bucket: str, path: str) -> Path:
        """Return the absolute file location of an object."""

        bucket_root = (self._root / _clean_path(bucket)).resolve()
        candidate = (bucket_root / _clean_path(path)).resolve()
        if bucket_root not in candidate.parents:
            raise InvalidObjectPath(f"Invalid object path: {path!r}")
        return candidate

    def object_url(self, bucket: str, path: str) -> str:
        return f"{self._base_url}/{quote(bucket)}/{quote(path)}"

    def sign(self, bucket: str, path: str, expires_at: int) -> str:
        message = f"{bucket}/{path}:{expires_at}".encode("utf-8")
        return hmac.new(self._signing_key, message, hashlib.sha256).hexdigest()

    def verify(self, bucket: str, path: str, expires_at: int, token: str, *, now: float | None = None) -> bool:
        if (now if now is not None else time.time()) > expires_at:
            return False
        return hmac.compare_digest(self.sign(bucket, path, expires_at), token)


class LocalBucket:
    def __init__(self, storage: LocalStorage, bucket: str) -> None:
        self._storage = storage
        self._bucket = bucket

    async def upload(
        self,
        path: str,
        data: bytes,
        *,
        content_type: str | None = None,
        upsert: bool = False,
    ) -> QueryResult[dict[str, Any]]:
        try:
            target = self._storage.resolve(self._bucket, path)
        except InvalidObjectPath as exc:
            return QueryResult(error=BackendError(str(exc), code="InvalidKey", status=400))
        if target.exists() and not upsert:
            return QueryResult(
                error=BackendError("The resource already exists", code="Duplicate", status=409)
            )
        try:
            await anyio.to_thread.run_sync(_write_object, target, data)
        except OSError as exc:
            return QueryResult(error=BackendError(f"Failed to store object: {exc}", status=500))
        return QueryResult(data={"path": path})

    def get_public_url(self, path: str) -> str | None:
        if not self._storage.is_public(self._bucket):
            return None
        return self._storage.object_url(self._bucket, path)

    async def create_signed_url(self, path: str, ttl_seconds: int) -> QueryResult[dict[str, Any]]:
        try:
            target = self._storage.resolve(self._bucket, path)
        except InvalidObjectPath as exc:
            return QueryResult(error=BackendError(str(exc), code="InvalidKey", status=400))
        if not target.is_file():
            return QueryResult(error=BackendError("Object not found", code="not_found", status=404))
        expires_at = int(time.time()) + int(ttl_seconds)
        token = self._storage.sign(self._bucket, path, expires_at)
        query = urlencode({"expires": expires_at, "token": token})
        return QueryResult(data={"signedUrl": f"{self._storage.object_url(self._bucket, path)}?{query}"})
