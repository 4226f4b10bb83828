"""Helpers for reading multipart uploads and serving stored objects."""

from __future__ import annotations

from pathlib import Path
from typing import Final

from fastapi import HTTPException, UploadFile, status

from connecthub.backend import InvalidObjectPath, LocalStorage
from connecthub.uploads import FilePayload

_CHUNK_SIZE: Final[int] = 1024 * 1024  # 1 MiB


async def read_upload(upload: UploadFile, *, max_bytes: int) -> FilePayload:
    """Read an uploaded file into memory, rejecting it once it exceeds ``max_bytes``."""

    chunks: list[bytes] = []
    total_size = 0
    try:
        while True:
            chunk = await upload.read(_CHUNK_SIZE)
            if not chunk:
                break
            total_size += len(chunk)
            if total_size > max_bytes:
                raise HTTPException(
                    status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                    detail="File too large",
                )
            chunks.append(chunk)
    finally:
        await upload.close()

    return FilePayload(
        name=upload.filename or "upload.bin",
        content_type=upload.content_type or "application/octet-stream",
        content=b"".join(chunks),
    )


def resolve_object(storage: LocalStorage, bucket: str, path: str) -> Path:
    """Return the file backing ``bucket/path`` or raise HTTP 404."""

    try:
        candidate = storage.resolve(bucket, path)
    except InvalidObjectPath:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid object path") from None
    if not candidate.is_file():
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Object not found")
    return candidate
