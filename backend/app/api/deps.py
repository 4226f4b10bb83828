"""FastAPI dependencies for the API layer."""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.config import get_settings
from app.services.backend import get_backend
from connecthub.backend import Backend, BackendError
from connecthub.identity import Identity

logger = logging.getLogger(__name__)

settings = get_settings()

bearer_scheme = HTTPBearer(auto_error=False)


async def resolve_identity(backend: Backend, token: str) -> Identity:
    """Verify an access token with the backend auth service or raise HTTP 401."""

    result = await backend.auth.get_user(token)
    if result.error is not None or result.data is None:
        logger.info(
            "Token verification failed",
            extra={"error": result.error.message if result.error else "no user"},
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid access token")
    return result.data


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    backend: Backend = Depends(get_backend),
) -> Identity:
    """Resolve the caller from the ``Authorization: Bearer`` header."""

    if credentials is None or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization Bearer token",
        )
    return await resolve_identity(backend, credentials.credentials)


def ensure_actor(identity: Identity, user_id: str | None) -> None:
    """Reject payloads that name a different user than the token."""

    if user_id and user_id != identity.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token does not match user_id")


def backend_failure(error: BackendError, action: str) -> HTTPException:
    logger.error("Backend call failed while %s", action, extra={"code": error.code, "error": error.message})
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=error.message)


def clamp_limit(limit: int | None) -> int:
    if limit is None or limit <= 0:
        return settings.feed_default_limit
    return min(limit, settings.feed_max_limit)
