"""Pydantic schemas for API payloads."""

from .messages import (
    ConversationCreate,
    ConversationCreated,
    ConversationList,
    ConversationRead,
    MessageCreate,
    MessageList,
    MessageRead,
)
from .posts import (
    CommentCreate,
    CommentList,
    CommentRead,
    LostFoundDetails,
    MediaRef,
    PlainDetails,
    PostCreate,
    PostList,
    PostRead,
    PostUpdate,
    ProductDetails,
)
from .uploads import HealthResponse, UploadResponse
from .users import (
    PresenceList,
    PresenceRead,
    ProfileCreate,
    ProfileEnvelope,
    ProfileRead,
    ProfileUpdate,
    UserDirectory,
)

__all__ = [
    "CommentCreate",
    "CommentList",
    "CommentRead",
    "ConversationCreate",
    "ConversationCreated",
    "ConversationList",
    "ConversationRead",
    "HealthResponse",
    "LostFoundDetails",
    "MediaRef",
    "MessageCreate",
    "MessageList",
    "MessageRead",
    "PlainDetails",
    "PostCreate",
    "PostList",
    "PostRead",
    "PostUpdate",
    "PresenceList",
    "PresenceRead",
    "ProductDetails",
    "ProfileCreate",
    "ProfileEnvelope",
    "ProfileRead",
    "ProfileUpdate",
    "UploadResponse",
    "UserDirectory",
]
