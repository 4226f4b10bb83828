"""Serves objects written by the local storage backend."""

from __future__ import annotations

import mimetypes

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import FileResponse

from app.core.storage import resolve_object
from app.services.backend import get_local_storage
from connecthub.backend import LocalStorage

router = APIRouter(prefix="/storage", tags=["storage"])


@router.get("/{bucket}/{path:path}")
def download_object(
    bucket: str,
    path: str,
    expires: int | None = Query(default=None),
    token: str | None = Query(default=None),
    storage: LocalStorage = Depends(get_local_storage),
) -> FileResponse:
    """Return an object from a public bucket, or from any bucket with a valid signature."""

    if not storage.is_public(bucket):
        if expires is None or token is None or not storage.verify(bucket, path, expires, token):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or expired signature")
    target = resolve_object(storage, bucket, path)
    media_type = mimetypes.guess_type(target.name)[0] or "application/octet-stream"
    return FileResponse(target, media_type=media_type)
