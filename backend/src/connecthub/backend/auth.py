"""Access token verification for the self-hosted backend."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import jwt

from connecthub.identity import Identity

from .base import BackendError, QueryResult

logger = logging.getLogger(__name__)


class TokenAuth:
    """Verifies HS256 access tokens whose ``sub`` claim is the user id."""

    def __init__(self, secret: str, *, algorithm: str = "HS256", audience: str | None = None) -> None:
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience

    def issue(
        self,
        user_id: str,
        *,
        email: str | None = None,
        expires_in: timedelta = timedelta(hours=1),
    ) -> str:
        """Sign an access token for ``user_id``."""

        claims: dict[str, Any] = {
            "sub": user_id,
            "exp": datetime.now(timezone.utc) + expires_in,
            "role": "authenticated",
        }
        if email:
            claims["email"] = email
        if self._audience:
            claims["aud"] = self._audience
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)

    async def get_user(self, access_token: str) -> QueryResult[Identity]:
        try:
            claims = jwt.decode(
                access_token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                options={"verify_aud": self._audience is not None},
            )
        except jwt.ExpiredSignatureError:
            return QueryResult(error=BackendError("Token has expired", code="token_expired", status=401))
        except jwt.InvalidTokenError as exc:
            logger.debug("Rejected access token: %s", exc)
            return QueryResult(error=BackendError("Invalid access token", code="invalid_token", status=401))
        try:
            return QueryResult(data=Identity.from_claims(claims, access_token=access_token))
        except ValueError as exc:
            return QueryResult(error=BackendError(str(exc), code="invalid_token", status=401))
