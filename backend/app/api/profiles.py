"""Profile creation, directory and profile editing endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials

from app.api.deps import backend_failure, bearer_scheme, ensure_actor, get_current_identity, resolve_identity
from app.config import get_settings
from app.schemas import ProfileCreate, ProfileEnvelope, ProfileRead, ProfileUpdate, UserDirectory
from app.services.backend import get_backend
from connecthub.backend import Backend, BackendError
from connecthub.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["profiles"])

settings = get_settings()

_DIRECTORY_COLUMNS = "id, username, full_name, avatar_url, bio, created_at, updated_at"


def default_username(user_id: str, email: str | None) -> str:
    if email and "@" in email:
        return email.split("@", 1)[0]
    return f"user-{user_id[:6]}"


def _profile_write_failure(error: BackendError, action: str) -> HTTPException:
    if error.status == status.HTTP_409_CONFLICT:
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Username already taken")
    return backend_failure(error, action)


@router.post("/create-profile", response_model=ProfileEnvelope)
async def create_profile(
    payload: ProfileCreate,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    backend: Backend = Depends(get_backend),
) -> ProfileEnvelope:
    """Create or refresh the profile row for a freshly signed-up user."""

    if not payload.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="user_id is required")
    if credentials is not None and credentials.credentials:
        identity = await resolve_identity(backend, credentials.credentials)
        ensure_actor(identity, payload.user_id)

    row = {
        "id": payload.user_id,
        "username": default_username(payload.user_id, payload.email),
        "full_name": payload.full_name,
        "email": payload.email,
    }
    result = await backend.table("profiles").upsert(row, on_conflict="id").single().execute()
    if result.error is not None:
        raise _profile_write_failure(result.error, "creating profile")
    logger.info("Profile upserted", extra={"user_id": payload.user_id})
    return ProfileEnvelope(profile=ProfileRead.model_validate(result.data))


@router.get("/get-users", response_model=UserDirectory)
async def list_users(backend: Backend = Depends(get_backend)) -> UserDirectory:
    result = await (
        backend.table("profiles")
        .select(_DIRECTORY_COLUMNS)
        .order("full_name")
        .limit(settings.directory_limit)
        .execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "listing users")
    return UserDirectory(users=[ProfileRead.model_validate(row) for row in result.data or []])


async def _load_profile(backend: Backend, user_id: str) -> ProfileRead:
    result = await backend.table("profiles").select("*").eq("id", user_id).maybe_single().execute()
    if result.error is not None:
        raise backend_failure(result.error, "loading profile")
    if result.data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    return ProfileRead.model_validate(result.data)


@router.get("/profile/me", response_model=ProfileRead)
async def read_own_profile(
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> ProfileRead:
    return await _load_profile(backend, identity.id)


@router.get("/profile/{user_id}", response_model=ProfileRead)
async def read_profile(user_id: str, backend: Backend = Depends(get_backend)) -> ProfileRead:
    return await _load_profile(backend, user_id)


@router.patch("/profile", response_model=ProfileRead)
async def update_profile(
    payload: ProfileUpdate,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> ProfileRead:
    """Update the caller's editable profile fields, creating the row if missing."""

    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        return await _load_profile(backend, identity.id)
    row = {"id": identity.id, **changes}
    if identity.email:
        row.setdefault("email", identity.email)
    result = await backend.table("profiles").upsert(row, on_conflict="id").single().execute()
    if result.error is not None:
        raise _profile_write_failure(result.error, "updating profile")
    return ProfileRead.model_validate(result.data)
