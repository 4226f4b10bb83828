"""Schemas for feed posts, marketplace listings, lost-and-found items and comments."""

from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from app.models.enums import LostFoundKind, Visibility


class PlainDetails(BaseModel):
    type: Literal["plain"] = "plain"


class ProductDetails(BaseModel):
    """Marketplace listing; the price must be positive."""

    type: Literal["product"] = "product"
    price: float = Field(gt=0)
    category: constr(strip_whitespace=True, max_length=64) | None = None
    condition: constr(strip_whitespace=True, max_length=64) | None = None


class LostFoundDetails(BaseModel):
    type: Literal["lost_found"] = "lost_found"
    kind: LostFoundKind
    location: constr(strip_whitespace=True, max_length=255) | None = None
    contact: constr(strip_whitespace=True, max_length=255) | None = None


PostDetails = Annotated[
    Union[PlainDetails, ProductDetails, LostFoundDetails],
    Field(discriminator="type"),
]


class MediaRef(BaseModel):
    url: str
    path: str | None = None
    content_type: str | None = None


class PostCreate(BaseModel):
    """Payload for creating any kind of post."""

    user_id: str | None = Field(
        default=None, description="Optional author id; must match the access token when given."
    )
    title: constr(strip_whitespace=True, max_length=255) | None = None
    body: constr(strip_whitespace=True, max_length=5000) = ""
    media: MediaRef | None = None
    details: PostDetails = Field(default_factory=PlainDetails)
    visibility: Visibility = Visibility.PUBLIC

    @model_validator(mode="after")
    def require_content(self) -> "PostCreate":
        if not self.body and not self.title and self.media is None:
            raise ValueError("body, title or media required")
        return self


class PostUpdate(BaseModel):
    title: constr(strip_whitespace=True, max_length=255) | None = None
    body: constr(strip_whitespace=True, max_length=5000) | None = None
    media: MediaRef | None = None
    details: PostDetails | None = None
    visibility: Visibility | None = None


class PostRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: str
    title: str | None = None
    body: str = ""
    media: MediaRef | None = None
    post_type: str
    details: PostDetails
    likes_count: int = 0
    liked_by: list[str] = Field(default_factory=list)
    comments_count: int = 0
    visibility: Visibility = Visibility.PUBLIC
    created_at: datetime


class PostList(BaseModel):
    posts: list[PostRead] = Field(default_factory=list)


class CommentCreate(BaseModel):
    post_id: str
    user_id: str | None = None
    body: constr(strip_whitespace=True, min_length=1, max_length=2000)


class CommentRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    post_id: str
    user_id: str
    body: str
    created_at: datetime


class CommentList(BaseModel):
    comments: list[CommentRead] = Field(default_factory=list)
