"""Schemas for profiles and the user directory."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr


class ProfileRead(BaseModel):
    """Public profile as stored in the datastore."""

    model_config = ConfigDict(extra="ignore")

    id: str
    username: str | None = None
    full_name: str | None = None
    email: str | None = None
    avatar_url: str | None = None
    bio: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ProfileCreate(BaseModel):
    """Payload sent right after signup to materialize a profile."""

    user_id: str | None = None
    email: constr(strip_whitespace=True, max_length=255) | None = None
    full_name: constr(strip_whitespace=True, max_length=128) | None = None


class ProfileUpdate(BaseModel):
    full_name: constr(strip_whitespace=True, min_length=1, max_length=128) | None = None
    username: constr(strip_whitespace=True, pattern=r"^[A-Za-z0-9_.-]{2,64}$") | None = Field(
        default=None,
        description="Unique handle shown next to posts and messages.",
    )
    bio: constr(max_length=1000) | None = None
    avatar_url: constr(max_length=1024) | None = None


class ProfileEnvelope(BaseModel):
    profile: ProfileRead


class UserDirectory(BaseModel):
    users: list[ProfileRead] = Field(default_factory=list)


class PresenceRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    user_id: str
    online: bool
    last_seen: datetime


class PresenceList(BaseModel):
    presence: list[PresenceRead] = Field(default_factory=list)
