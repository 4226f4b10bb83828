"""Access token helpers for the local backend."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict

import jwt

from app.config import get_settings

settings = get_settings()


def create_access_token(
    user_id: str,
    *,
    email: str | None = None,
    expires_delta: timedelta | None = None,
    extra_claims: Dict[str, Any] | None = None,
) -> str:
    """Create a signed JWT access token whose subject is ``user_id``."""

    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes)
    )
    claims: Dict[str, Any] = {"sub": user_id, "exp": expire, "role": "authenticated"}
    if email:
        claims["email"] = email
    if settings.jwt_audience:
        claims["aud"] = settings.jwt_audience
    if extra_claims:
        claims.update(extra_claims)
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
