"""Multipart upload endpoint backed by object storage."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from app.config import get_settings
from app.core.storage import read_upload
from app.monitoring.metrics import upload_attempts_total
from app.schemas import UploadResponse
from app.services.backend import get_backend
from connecthub.backend import Backend
from connecthub.uploads import UploadError, store_object

logger = logging.getLogger(__name__)

router = APIRouter(tags=["uploads"])

settings = get_settings()

_ACCEPTED_PREFIXES = ("image/", "video/")


@router.post("/upload", response_model=UploadResponse)
async def upload_file(
    file: UploadFile | None = File(default=None),
    bucket: str = Form(default=""),
    folder: str = Form(default=""),
    backend: Backend = Depends(get_backend),
) -> UploadResponse:
    """Store an image or video and return where it can be fetched from."""

    bucket = bucket or settings.default_bucket
    folder = folder or "uploads"
    if bucket not in settings.allowed_buckets:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Bucket not allowed")
    if folder not in settings.allowed_folders:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Folder not allowed")
    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file provided")

    try:
        payload = await read_upload(file, max_bytes=settings.max_upload_size)
    except HTTPException:
        upload_attempts_total.labels(bucket, "too_large").inc()
        raise
    if not payload.content_type.startswith(_ACCEPTED_PREFIXES):
        upload_attempts_total.labels(bucket, "unsupported").inc()
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail="Unsupported file type"
        )

    try:
        result = await store_object(
            backend,
            payload,
            bucket=bucket,
            folder=folder,
            signed_url_ttl=settings.signed_url_ttl_seconds,
        )
    except UploadError as exc:
        upload_attempts_total.labels(bucket, "error").inc()
        logger.error("Upload to storage failed", extra={"bucket": bucket, "error": exc.message})
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message) from exc

    upload_attempts_total.labels(bucket, "stored").inc()
    logger.info("Stored upload", extra={"bucket": bucket, "path": result.path, "size": payload.size})
    return UploadResponse(publicUrl=result.public_url, path=result.path)
