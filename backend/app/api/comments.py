"""Comment endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.api.deps import backend_failure, ensure_actor, get_current_identity
from app.api.posts import get_post_or_404
from app.schemas import CommentCreate, CommentList, CommentRead
from app.services.backend import get_backend
from connecthub.backend import Backend
from connecthub.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["comments"])


@router.post("/create-comment", response_model=CommentRead)
async def create_comment(
    payload: CommentCreate,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> CommentRead:
    """Add a comment and bump the post's comment counter."""

    ensure_actor(identity, payload.user_id)
    post = await get_post_or_404(backend, payload.post_id)

    result = await (
        backend.table("comments")
        .insert({"post_id": payload.post_id, "user_id": identity.id, "body": payload.body})
        .single()
        .execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "creating comment")

    # Counter drift is tolerated; the comment itself is already stored.
    counter = await (
        backend.table("posts")
        .update({"comments_count": int(post.get("comments_count") or 0) + 1})
        .eq("id", payload.post_id)
        .execute()
    )
    if counter.error is not None:
        logger.warning(
            "Failed to increment comment counter",
            extra={"post_id": payload.post_id, "error": counter.error.message},
        )
    return CommentRead.model_validate(result.data)


@router.get("/posts/{post_id}/comments", response_model=CommentList)
async def list_comments(post_id: str, backend: Backend = Depends(get_backend)) -> CommentList:
    result = await (
        backend.table("comments").select("*").eq("post_id", post_id).order("created_at").execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "listing comments")
    return CommentList(comments=[CommentRead.model_validate(row) for row in result.data or []])
