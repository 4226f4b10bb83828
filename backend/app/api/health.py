"""Datastore health probe."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.schemas import HealthResponse
from app.services.backend import get_backend
from connecthub.backend import Backend

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


@router.get("/health", response_model=HealthResponse)
async def health_check(backend: Backend = Depends(get_backend)):
    """Run a one-row select to confirm the datastore answers."""

    result = await backend.table("profiles").select("id").limit(1).execute()
    if result.error is not None:
        logger.error("Health probe failed", extra={"error": result.error.message})
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"ok": False, "reason": "db-error", "detail": result.error.message},
        )
    return HealthResponse(ok=True, rows=len(result.data or []))
