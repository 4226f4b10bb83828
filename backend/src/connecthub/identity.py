"""Canonical caller identity produced once at the auth boundary."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True, slots=True)
class Identity:
    """Authenticated user as seen by every component downstream of auth."""

    id: str
    email: str | None = None
    access_token: str | None = field(default=None, repr=False, compare=False)

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any], *, access_token: str | None = None) -> "Identity":
        """Build an identity from decoded access token claims."""

        subject = claims.get("sub")
        if subject in (None, ""):
            raise ValueError("Token has no subject")
        email = claims.get("email")
        return cls(id=str(subject), email=str(email) if email else None, access_token=access_token)

    @classmethod
    def from_user_payload(
        cls, payload: Mapping[str, Any], *, access_token: str | None = None
    ) -> "Identity":
        """Build an identity from an auth service ``/user`` response."""

        user_id = payload.get("id")
        if user_id in (None, ""):
            raise ValueError("User payload has no id")
        email = payload.get("email")
        return cls(id=str(user_id), email=str(email) if email else None, access_token=access_token)

    def bearer_header(self) -> dict[str, str]:
        if not self.access_token:
            return {}
        return {"Authorization": f"Bearer {self.access_token}"}
