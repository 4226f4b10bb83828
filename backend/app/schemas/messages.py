"""Schemas for conversations and direct messages."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from .posts import MediaRef
from .users import ProfileRead


class ConversationCreate(BaseModel):
    target_user_id: str
    user_id: str | None = None
    subject: constr(strip_whitespace=True, max_length=255) | None = None


class ConversationCreated(BaseModel):
    conversationId: str


class ConversationRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    subject: str | None = None
    last_message_text: str | None = None
    last_message_at: datetime | None = None
    created_at: datetime | None = None
    participants: list[ProfileRead] = Field(default_factory=list)


class ConversationList(BaseModel):
    profile: ProfileRead | None = None
    conversations: list[ConversationRead] = Field(default_factory=list)


class MessageCreate(BaseModel):
    text: constr(strip_whitespace=True, max_length=4000) = ""
    file: MediaRef | None = None

    @model_validator(mode="after")
    def require_content(self) -> "MessageCreate":
        if not self.text and self.file is None:
            raise ValueError("text or file required")
        return self


class MessageRead(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    recipient_id: str | None = None
    text: str = ""
    file: MediaRef | None = None
    created_at: datetime


class MessageList(BaseModel):
    messages: list[MessageRead] = Field(default_factory=list)
