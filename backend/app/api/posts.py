"""Feed, marketplace and lost-and-found endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from app.api.deps import backend_failure, clamp_limit, ensure_actor, get_current_identity
from app.models.enums import LostFoundKind, PostType, Visibility
from app.schemas import PostCreate, PostList, PostRead, PostUpdate
from app.services.backend import get_backend
from connecthub.backend import Backend, QueryBuilder
from connecthub.identity import Identity

logger = logging.getLogger(__name__)

router = APIRouter(tags=["posts"])


def _to_post(row: dict[str, Any]) -> PostRead:
    details = dict(row.get("details") or {})
    details.setdefault("type", row.get("post_type") or PostType.PLAIN.value)
    return PostRead.model_validate({**row, "details": details, "liked_by": row.get("liked_by") or []})


async def _list(query: QueryBuilder, action: str) -> PostList:
    result = await query.execute()
    if result.error is not None:
        raise backend_failure(result.error, action)
    return PostList(posts=[_to_post(row) for row in result.data or []])


async def get_post_or_404(backend: Backend, post_id: str) -> dict[str, Any]:
    result = await backend.table("posts").select("*").eq("id", post_id).maybe_single().execute()
    if result.error is not None:
        raise backend_failure(result.error, "loading post")
    if result.data is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Post not found")
    return result.data


def _require_author(post: dict[str, Any], identity: Identity) -> None:
    if post.get("user_id") != identity.id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Only the author can modify this post"
        )


@router.post("/create-post", response_model=PostRead)
async def create_post(
    payload: PostCreate,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> PostRead:
    """Publish a post of any subtype on behalf of the caller."""

    ensure_actor(identity, payload.user_id)
    details = payload.details.model_dump(mode="json")
    row = {
        "user_id": identity.id,
        "title": payload.title,
        "body": payload.body,
        "media": payload.media.model_dump(mode="json") if payload.media else None,
        "post_type": details["type"],
        "details": details,
        "visibility": payload.visibility.value,
    }
    result = await backend.table("posts").insert(row).single().execute()
    if result.error is not None:
        raise backend_failure(result.error, "creating post")
    logger.info("Post created", extra={"post_id": result.data["id"], "post_type": details["type"]})
    return _to_post(result.data)


@router.get("/posts", response_model=PostList)
async def list_posts(
    limit: int | None = Query(default=None, ge=1),
    backend: Backend = Depends(get_backend),
) -> PostList:
    query = (
        backend.table("posts")
        .select("*")
        .eq("visibility", Visibility.PUBLIC.value)
        .order("created_at", desc=True)
        .limit(clamp_limit(limit))
    )
    return await _list(query, "listing posts")


@router.get("/marketplace", response_model=PostList)
async def list_marketplace(
    limit: int | None = Query(default=None, ge=1),
    backend: Backend = Depends(get_backend),
) -> PostList:
    query = (
        backend.table("posts")
        .select("*")
        .eq("post_type", PostType.PRODUCT.value)
        .order("created_at", desc=True)
        .limit(clamp_limit(limit))
    )
    return await _list(query, "listing marketplace")


@router.get("/lost-and-found", response_model=PostList)
async def list_lost_and_found(
    kind: LostFoundKind | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1),
    backend: Backend = Depends(get_backend),
) -> PostList:
    query = backend.table("posts").select("*").eq("post_type", PostType.LOST_FOUND.value)
    if kind is not None:
        query = query.json_eq("details", "kind", kind.value)
    query = query.order("created_at", desc=True).limit(clamp_limit(limit))
    return await _list(query, "listing lost and found")


@router.patch("/posts/{post_id}", response_model=PostRead)
async def update_post(
    post_id: str,
    payload: PostUpdate,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> PostRead:
    post = await get_post_or_404(backend, post_id)
    _require_author(post, identity)

    changes = payload.model_dump(mode="json", exclude_unset=True)
    if "details" in changes and changes["details"] is not None:
        changes["post_type"] = changes["details"]["type"]
    else:
        changes.pop("details", None)
    if not changes:
        return _to_post(post)
    result = await backend.table("posts").update(changes).eq("id", post_id).single().execute()
    if result.error is not None:
        raise backend_failure(result.error, "updating post")
    return _to_post(result.data)


@router.delete("/posts/{post_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_post(
    post_id: str,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> Response:
    post = await get_post_or_404(backend, post_id)
    _require_author(post, identity)

    comments = await backend.table("comments").delete().eq("post_id", post_id).execute()
    if comments.error is not None:
        raise backend_failure(comments.error, "deleting comments")
    result = await backend.table("posts").delete().eq("id", post_id).execute()
    if result.error is not None:
        raise backend_failure(result.error, "deleting post")
    logger.info("Post deleted", extra={"post_id": post_id, "comments": len(comments.data or [])})
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/posts/{post_id}/like", response_model=PostRead)
async def toggle_like(
    post_id: str,
    identity: Identity = Depends(get_current_identity),
    backend: Backend = Depends(get_backend),
) -> PostRead:
    """Like the post, or remove the caller's like if already present."""

    post = await get_post_or_404(backend, post_id)
    liked_by = [user_id for user_id in post.get("liked_by") or [] if user_id != identity.id]
    if len(liked_by) == len(post.get("liked_by") or []):
        liked_by.append(identity.id)
    result = await (
        backend.table("posts")
        .update({"liked_by": liked_by, "likes_count": len(liked_by)})
        .eq("id", post_id)
        .single()
        .execute()
    )
    if result.error is not None:
        raise backend_failure(result.error, "updating likes")
    return _to_post(result.data)
