"""Presence lookup for a set of users."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from app.schemas import PresenceList, PresenceRead
from app.services.backend import get_backend
from connecthub.backend import Backend
from connecthub.presence import fetch_presence

router = APIRouter(tags=["presence"])


@router.get("/presence", response_model=PresenceList)
async def read_presence(
    user_ids: str = Query(default="", description="Comma separated user ids"),
    backend: Backend = Depends(get_backend),
) -> PresenceList:
    ids = [item.strip() for item in user_ids.split(",") if item.strip()]
    rows = await fetch_presence(backend, ids)
    return PresenceList(presence=[PresenceRead.model_validate(row) for row in rows])
