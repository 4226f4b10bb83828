"""Database models package."""

from .base import Base
from .enums import LostFoundKind, PostType, Visibility
from .social import Comment, Conversation, ConversationParticipant, Message, Post, Presence, Profile

__all__ = [
    "Base",
    "Profile",
    "Post",
    "Comment",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "Presence",
    "PostType",
    "LostFoundKind",
    "Visibility",
]
