"""Validated media uploads with progress, cancellation and a single retry."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Generator

import httpx

from .backend.base import Backend

logger = logging.getLogger(__name__)

MAX_UPLOAD_BYTES = 10 * 1024 * 1024
ALLOWED_MIME_PREFIXES = ("image", "video")
CHUNK_SIZE = 64 * 1024
SIGNED_URL_TTL_SECONDS = 3600

_TERMINAL_PATTERN = re.compile(r"failed: 4\d\d", re.IGNORECASE)
_TRANSIENT_PATTERN = re.compile(r"network|abort|timeout|timed out|failed: 5\d\d", re.IGNORECASE)

ProgressCallback = Callable[[int], None]


@dataclass(slots=True, frozen=True)
class FilePayload:
    name: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        stem, dot, ext = self.name.rpartition(".")
        return ext if dot and stem and ext else "bin"

    @classmethod
    def from_path(cls, path: str | Path, content_type: str | None = None) -> "FilePayload":
        source = Path(path)
        guessed = content_type or mimetypes.guess_type(source.name)[0] or "application/octet-stream"
        return cls(name=source.name, content_type=guessed, content=source.read_bytes())


@dataclass(slots=True, frozen=True)
class UploadResult:
    path: str
    public_url: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"publicUrl": self.public_url, "path": self.path}


class UploadError(Exception):
    """Upload failure; ``status_code`` is set when the server answered."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class UploadValidationError(UploadError):
    """The file was rejected before any network activity."""


class UploadAborted(UploadError):
    def __init__(self, message: str = "Upload aborted") -> None:
        super().__init__(message)


def validate_upload(file: FilePayload, *, max_bytes: int = MAX_UPLOAD_BYTES) -> None:
    if file.size > max_bytes:
        raise UploadValidationError(
            f"File size exceeds {max_bytes // (1024 * 1024)}MB limit", status_code=413
        )
    if not file.content_type.startswith(ALLOWED_MIME_PREFIXES):
        raise UploadValidationError("Unsupported file type", status_code=415)


def is_transient_upload_error(exc: BaseException) -> bool:
    """Network failures, aborts, timeouts and 5xx responses are worth one retry."""

    if isinstance(exc, UploadValidationError):
        return False
    message = str(exc)
    if _TERMINAL_PATTERN.search(message):
        return False
    return bool(_TRANSIENT_PATTERN.search(message))


class _ProgressTracker:
    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = -1

    def report(self, percent: int) -> None:
        percent = max(0, min(100, int(percent)))
        if percent <= self._last:
            return
        self._last = percent
        if self._callback is None:
            return
        try:
            self._callback(percent)
        except Exception:
            logger.exception("Upload progress callback failed")


async def _transfer(
    http: httpx.AsyncClient,
    file: FilePayload,
    bucket: str,
    folder: str,
    progress: _ProgressTracker,
    endpoint: str,
) -> UploadResult:
    prepared = http.build_request(
        "POST",
        endpoint,
        data={"bucket": bucket, "folder": folder},
        files={"file": (file.name, file.content, file.content_type)},
    )
    body = prepared.read()
    total = len(body) or 1

    async def chunks() -> AsyncIterator[bytes]:
        sent = 0
        for offset in range(0, len(body), CHUNK_SIZE):
            chunk = body[offset : offset + CHUNK_SIZE]
            yield chunk
            sent += len(chunk)
            progress.report(min(99, sent * 100 // total))

    progress.report(0)
    try:
        response = await http.post(
            endpoint,
            content=chunks(),
            headers={
                "Content-Type": prepared.headers["Content-Type"],
                "Content-Length": str(len(body)),
            },
        )
    except httpx.TimeoutException as exc:
        raise UploadError(f"Network error: request timed out ({exc.__class__.__name__})") from exc
    except httpx.TransportError as exc:
        raise UploadError(f"Network error: {str(exc) or exc.__class__.__name__}") from exc

    if response.is_error:
        raise UploadError(
            f"Upload failed: {response.status_code} {response.text}".rstrip(),
            status_code=response.status_code,
        )
    try:
        payload = response.json()
    except ValueError as exc:
        raise UploadError("Upload failed: invalid response body", status_code=response.status_code) from exc
    if not isinstance(payload, dict):
        raise UploadError("Upload failed: invalid response body", status_code=response.status_code)
    if payload.get("error"):
        raise UploadError(str(payload["error"]), status_code=response.status_code)
    path = payload.get("path")
    if not isinstance(path, str) or not path:
        raise UploadError("Upload failed: invalid response body", status_code=response.status_code)
    progress.report(100)
    return UploadResult(path=path, public_url=payload.get("publicUrl"))


class UploadHandle:
    """In-flight upload. Await it for the result; ``cancel()`` aborts it."""

    def __init__(self, task: asyncio.Task[UploadResult]) -> None:
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if self._task.done():
            return
        self._task.cancel()

    async def result(self) -> UploadResult:
        await asyncio.wait({self._task})
        if self._task.cancelled():
            raise UploadAborted()
        return self._task.result()

    def __await__(self) -> Generator[Any, None, UploadResult]:
        return self.result().__await__()


def upload_cancelable(
    http: httpx.AsyncClient,
    file: FilePayload,
    bucket: str = "ft",
    folder: str = "uploads",
    on_progress: ProgressCallback | None = None,
    *,
    endpoint: str = "/api/upload",
) -> UploadHandle:
    """Start posting ``file`` to the upload endpoint.

    Validation errors are raised here, before the transfer task exists.
    """

    validate_upload(file)
    task = asyncio.create_task(
        _transfer(http, file, bucket, folder, _ProgressTracker(on_progress), endpoint),
        name=f"upload-{file.name}",
    )
    return UploadHandle(task)


async def upload_to_supabase(
    http: httpx.AsyncClient,
    file: FilePayload,
    bucket: str = "ft",
    folder: str = "uploads",
    on_progress: ProgressCallback | None = None,
    *,
    endpoint: str = "/api/upload",
) -> UploadResult:
    """Upload ``file`` and retry exactly once when the failure looks transient."""

    validate_upload(file)
    progress = _ProgressTracker(on_progress)
    try:
        return await upload_cancelable(http, file, bucket, folder, progress.report, endpoint=endpoint)
    except UploadError as exc:
        if not is_transient_upload_error(exc):
            raise
        logger.warning("Upload failed; retrying once", extra={"file": file.name, "error": str(exc)})
    return await upload_cancelable(http, file, bucket, folder, progress.report, endpoint=endpoint)


def object_path(folder: str, file: FilePayload) -> str:
    return f"{folder}/{uuid.uuid4()}.{file.extension}"


async def store_object(
    backend: Backend,
    file: FilePayload,
    *,
    bucket: str,
    folder: str,
    signed_url_ttl: int = SIGNED_URL_TTL_SECONDS,
) -> UploadResult:
    """Write ``file`` to object storage and resolve a URL for it.

    Private buckets have no public URL; a signed URL valid for
    ``signed_url_ttl`` seconds is returned instead.
    """

    path = object_path(folder, file)
    bucket_client = backend.storage.from_(bucket)
    stored = await bucket_client.upload(path, file.content, content_type=file.content_type, upsert=False)
    if stored.error is not None:
        raise UploadError(stored.error.message, status_code=stored.error.status)
    stored_path = (stored.data or {}).get("path", path)

    public_url = bucket_client.get_public_url(stored_path)
    if public_url:
        return UploadResult(path=stored_path, public_url=public_url)

    signed = await bucket_client.create_signed_url(stored_path, signed_url_ttl)
    if signed.error is not None:
        raise UploadError(signed.error.message, status_code=signed.error.status)
    return UploadResult(path=stored_path, public_url=(signed.data or {}).get("signedUrl"))
