"""Direct conversations with an explicit participants relation."""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.api.deps import backend_failure, clamp_limit, ensure_actor, get_current_identity
from app.schemas import (
    ConversationCreate,
    ConversationCreated,
    ConversationList,
    ConversationRead,
    MessageCreate,
    MessageList,
    MessageRead,
    ProfileRead,
)
from app.services.backend import get_backend
from connecthub.backend import Backend
from connecthub.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["conversations"])


async def _conversation_ids_for(backend: Backend, user_id: str) -> list[str]:
    result = await (
        backend.table("conversation_participants").select("conversation_id").eq("user_id", user_id).execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "loading participations")
    return [row["conversation_id"] for row in result.data or []]


async def _participants(backend: Backend, conversation_ids: list[str]) -> list[dict[str, Any]]:
    if not conversation_ids:
        return []
    result = await (
        backend.table("conversation_participants")
        .select("conversation_id, user_id")
        .in_("conversation_id", conversation_ids)
        .execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "loading participants")
    return list(result.data or [])


async def _require_participant(backend: Backend, conversation_id: str, identity: Identity) -> list[str]:
    """Return the participant ids of the conversation, or raise 403 for outsiders."""

    members = [row["user_id"] for row in await _participants(backend, [conversation_id])]
    if identity.id not in members:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a conversation participant")
    return members


async def find_direct_conversation(backend: Backend, user_id: str, other_id: str) -> str | None:
    """Return the id of a two-party conversation between the users, if one exists."""

    mine = set(await _conversation_ids_for(backend, user_id))
    if not mine:
        return None
    rows = await _participants(backend, sorted(mine))
    sizes = Counter(row["conversation_id"] for row in rows)
    shared = {row["conversation_id"] for row in rows if row["user_id"] == other_id}
    for conversation_id in sorted(shared):
        if sizes[conversation_id] == 2:
            return conversation_id
    return None


@router.post("/create-conversation", response_model=ConversationCreated)
async def create_conversation(
    payload: ConversationCreate,
    response: Response,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> ConversationCreated:
    """Return the caller's conversation with the target user, creating it when missing."""

    ensure_actor(identity, payload.user_id)
    if payload.target_user_id == identity.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot create conversation with self")

    existing = await find_direct_conversation(backend, identity.id, payload.target_user_id)
    if existing is not None:
        return ConversationCreated(conversationId=existing)

    now = datetime.now(timezone.utc).isoformat()
    created = await (
        backend.table("conversations")
        .insert({"subject": payload.subject, "last_message_text": "", "last_message_at": now})
        .single()
        .execute()
    )
    if created.error is not None:
        raise backend_failure(created.error, "creating conversation")
    conversation_id = created.data["id"]

    members = await (
        backend.table("conversation_participants")
        .insert(
            [
                {"conversation_id": conversation_id, "user_id": identity.id},
                {"conversation_id": conversation_id, "user_id": payload.target_user_id},
            ]
        )
        .execute()
    )
    if members.error is not None:
        cleanup = await backend.table("conversations").delete().eq("id", conversation_id).execute()
        if cleanup.error is not None:
            logger.error("Failed to remove orphaned conversation", extra={"conversation_id": conversation_id})
        raise backend_failure(members.error, "adding participants")

    logger.info("Conversation created", extra={"conversation_id": conversation_id})
    response.status_code = status.HTTP_201_CREATED
    return ConversationCreated(conversationId=conversation_id)


@router.get("/conversations", response_model=ConversationList)
async def list_conversations(
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> ConversationList:
    """Return the caller's profile and conversations, most recently active first."""

    ids = await _conversation_ids_for(backend, identity.id)
    participant_rows = await _participants(backend, ids)
    user_ids = sorted({identity.id, *(row["user_id"] for row in participant_rows)})

    profiles_result = await backend.table("profiles").select("*").in_("id", user_ids).execute()
    if profiles_result.error is not None:
        raise backend_failure(profiles_result.error, "loading profiles")
    profiles = {row["id"]: ProfileRead.model_validate(row) for row in profiles_result.data or []}

    conversations: list[ConversationRead] = []
    if ids:
        result = await (
            backend.table("conversations")
            .select("*")
            .in_("id", ids)
            .order("last_message_at", desc=True)
            .execute()
        )
        if result.error is not None:
            raise backend_failure(result.error, "loading conversations")
        for row in result.data or []:
            members = [
                profiles.get(item["user_id"]) or ProfileRead(id=item["user_id"])
                for item in participant_rows
                if item["conversation_id"] == row["id"] and item["user_id"] != identity.id
            ]
            conversations.append(ConversationRead.model_validate({**row, "participants": members}))

    return ConversationList(profile=profiles.get(identity.id), conversations=conversations)


@router.get("/conversations/{conversation_id}/messages", response_model=MessageList)
async def list_messages(
    conversation_id: str,
    limit: int | None = Query(default=None, ge=1),
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> MessageList:
    """Return the latest messages in chronological order."""

    await _require_participant(backend, conversation_id, identity)
    result = await (
        backend.table("messages")
        .select("*")
        .eq("conversation_id", conversation_id)
        .order("created_at", desc=True)
        .limit(clamp_limit(limit))
        .execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "loading messages")
    rows = list(reversed(result.data or []))
    return MessageList(messages=[MessageRead.model_validate(row) for row in rows])


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: str,
    payload: MessageCreate,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> MessageRead:
    members = await _require_participant(backend, conversation_id, identity)
    others = [member for member in members if member != identity.id]
    now = datetime.now(timezone.utc).isoformat()
    row = {
        "conversation_id": conversation_id,
        "sender_id": identity.id,
        "recipient_id": others[0] if len(others) == 1 else None,
        "text": payload.text,
        "file": payload.file.model_dump(mode="json") if payload.file else None,
        "created_at": now,
    }
    result = await backend.table("messages").insert(row).single().execute()
    if result.error is not None:
        raise backend_failure(result.error, "sending message")

    preview = payload.text or (payload.file.url if payload.file else "")
    cache = await (
        backend.table("conversations")
        .update({"last_message_text": preview, "last_message_at": now})
        .eq("id", conversation_id)
        .execute()
    )
    if cache.error is not None:
        logger.warning(
            "Failed to update conversation last message",
            extra={"conversation_id": conversation_id, "error": cache.error.message},
        )
    return MessageRead.model_validate(result.data)
