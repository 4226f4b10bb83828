"""Integration tests exercising API endpoints via FastAPI's TestClient."""

from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient

from app.main import app
from app.services.backend import get_backend
from connecthub.backend import Backend, BackendError, Query, QueryResult


class FailingBackend(Backend):
    async def run_query(self, query: Query) -> QueryResult[Any]:
        return QueryResult(error=BackendError("connection refused", code="db_error", status=500))


def create_profile(client: TestClient, auth_headers, user_id: str, email: str, full_name: str) -> dict[str, Any]:
    response = client.post(
        "/api/create-profile",
        json={"user_id": user_id, "email": email, "full_name": full_name},
        headers=auth_headers(user_id, email),
    )
    assert response.status_code == 200, response.text
    return response.json()["profile"]


def create_post(client: TestClient, headers: dict[str, str], **payload: Any) -> dict[str, Any]:
    response = client.post("/api/create-post", json=payload, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()


def test_root_and_health(client: TestClient) -> None:
    assert client.get("/api/").json() == {"message": "Welcome to the ConnectHub API"}

    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True, "rows": 0}


def test_health_reports_datastore_errors(client: TestClient) -> None:
    app.dependency_overrides[get_backend] = lambda: FailingBackend()

    response = client.get("/api/health")

    assert response.status_code == 500
    assert response.json() == {"ok": False, "reason": "db-error", "detail": "connection refused"}


def test_create_profile_derives_username(client: TestClient, auth_headers) -> None:
    profile = create_profile(client, auth_headers, "user-alice", "alice@example.com", "Alice")
    assert profile["username"] == "alice"
    assert profile["full_name"] == "Alice"

    anonymous = client.post("/api/create-profile", json={"user_id": "abcdef123456"})
    assert anonymous.status_code == 200
    assert anonymous.json()["profile"]["username"] == "user-abcdef"

    again = client.post(
        "/api/create-profile",
        json={"user_id": "user-alice", "email": "alice@example.com", "full_name": "Alice A."},
    )
    assert again.status_code == 200
    assert again.json()["profile"]["full_name"] == "Alice A."


def test_create_profile_validation(client: TestClient, auth_headers) -> None:
    missing = client.post("/api/create-profile", json={"email": "x@example.com"})
    assert missing.status_code == 400
    assert missing.json() == {"error": "user_id is required"}

    mismatch = client.post(
        "/api/create-profile",
        json={"user_id": "someone-else"},
        headers=auth_headers("user-bob"),
    )
    assert mismatch.status_code == 403
    assert mismatch.json() == {"error": "Token does not match user_id"}

    forged = client.post(
        "/api/create-profile",
        json={"user_id": "user-bob"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert forged.status_code == 401


def test_duplicate_username_is_a_conflict(client: TestClient, auth_headers) -> None:
    create_profile(client, auth_headers, "user-1", "sam@example.com", "Sam One")

    response = client.post("/api/create-profile", json={"user_id": "user-2", "email": "sam@other.org"})

    assert response.status_code == 409
    assert response.json() == {"error": "Username already taken"}


def test_directory_and_profile_editing(client: TestClient, auth_headers) -> None:
    create_profile(client, auth_headers, "user-b", "bea@example.com", "Bea")
    create_profile(client, auth_headers, "user-a", "al@example.com", "Al")

    users = client.get("/api/get-users").json()["users"]
    assert [user["full_name"] for user in users] == ["Al", "Bea"]

    headers = auth_headers("user-a", "al@example.com")
    assert client.get("/api/profile/me", headers=headers).json()["id"] == "user-a"
    assert client.get("/api/profile/user-b").json()["username"] == "bea"
    missing = client.get("/api/profile/nobody")
    assert missing.status_code == 404
    assert missing.json() == {"error": "Profile not found"}

    updated = client.patch("/api/profile", json={"bio": "Hello there", "username": "al.dev"}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["bio"] == "Hello there"
    assert updated.json()["username"] == "al.dev"

    invalid = client.patch("/api/profile", json={"username": "no spaces!"}, headers=headers)
    assert invalid.status_code == 400


def test_authentication_is_required_for_writes(client: TestClient) -> None:
    missing = client.post("/api/create-post", json={"body": "hi"})
    assert missing.status_code == 401
    assert missing.json() == {"error": "Missing Authorization Bearer token"}

    invalid = client.post("/api/create-post", json={"body": "hi"}, headers={"Authorization": "Bearer nope"})
    assert invalid.status_code == 401
    assert invalid.json() == {"error": "Invalid access token"}


def test_post_lifecycle(client: TestClient, auth_headers) -> None:
    author = auth_headers("user-author")
    other = auth_headers("user-other")

    post = create_post(client, author, body="  First post  ")
    assert post["body"] == "First post"
    assert post["post_type"] == "plain"
    assert post["user_id"] == "user-author"

    feed = client.get("/api/posts").json()["posts"]
    assert [item["id"] for item in feed] == [post["id"]]

    forbidden = client.patch(f"/api/posts/{post['id']}", json={"body": "hijack"}, headers=other)
    assert forbidden.status_code == 403
    assert forbidden.json() == {"error": "Only the author can modify this post"}

    edited = client.patch(f"/api/posts/{post['id']}", json={"body": "Edited"}, headers=author)
    assert edited.status_code == 200
    assert edited.json()["body"] == "Edited"

    liked = client.post(f"/api/posts/{post['id']}/like", headers=other).json()
    assert liked["likes_count"] == 1
    assert liked["liked_by"] == ["user-other"]
    unliked = client.post(f"/api/posts/{post['id']}/like", headers=other).json()
    assert unliked["likes_count"] == 0
    assert unliked["liked_by"] == []

    comment = client.post(
        "/api/create-comment", json={"post_id": post["id"], "body": "Nice!"}, headers=other
    )
    assert comment.status_code == 200
    assert comment.json()["user_id"] == "user-other"
    comments = client.get(f"/api/posts/{post['id']}/comments").json()["comments"]
    assert [item["body"] for item in comments] == ["Nice!"]
    assert client.get("/api/posts").json()["posts"][0]["comments_count"] == 1

    assert client.delete(f"/api/posts/{post['id']}", headers=other).status_code == 403
    deleted = client.delete(f"/api/posts/{post['id']}", headers=author)
    assert deleted.status_code == 204
    assert client.get("/api/posts").json()["posts"] == []
    assert client.get(f"/api/posts/{post['id']}/comments").json()["comments"] == []
    assert client.post(f"/api/posts/{post['id']}/like", headers=other).status_code == 404


def test_post_validation(client: TestClient, auth_headers) -> None:
    headers = auth_headers("user-1")

    empty = client.post("/api/create-post", json={"body": "   "}, headers=headers)
    assert empty.status_code == 400

    free = client.post(
        "/api/create-post",
        json={"body": "Bike", "details": {"type": "product", "price": 0}},
        headers=headers,
    )
    assert free.status_code == 400

    spoofed = client.post("/api/create-post", json={"body": "hi", "user_id": "user-2"}, headers=headers)
    assert spoofed.status_code == 403

    missing_comment_target = client.post(
        "/api/create-comment", json={"post_id": "missing", "body": "hello"}, headers=headers
    )
    assert missing_comment_target.status_code == 404
    assert missing_comment_target.json() == {"error": "Post not found"}


def test_marketplace_and_lost_and_found_boards(client: TestClient, auth_headers) -> None:
    headers = auth_headers("user-1")
    create_post(client, headers, body="Just saying hi")
    product = create_post(
        client,
        headers,
        title="Road bike",
        body="Barely used",
        details={"type": "product", "price": 250, "category": "sports", "condition": "used"},
    )
    lost = create_post(
        client, headers, body="Black wallet", details={"type": "lost_found", "kind": "lost", "location": "Library"}
    )
    found = create_post(client, headers, body="Keys", details={"type": "lost_found", "kind": "found"})

    marketplace = client.get("/api/marketplace").json()["posts"]
    assert [item["id"] for item in marketplace] == [product["id"]]
    assert marketplace[0]["details"]["price"] == 250

    board = client.get("/api/lost-and-found").json()["posts"]
    assert {item["id"] for item in board} == {lost["id"], found["id"]}

    only_lost = client.get("/api/lost-and-found", params={"kind": "lost"}).json()["posts"]
    assert [item["id"] for item in only_lost] == [lost["id"]]
    assert only_lost[0]["details"] == {"type": "lost_found", "kind": "lost", "location": "Library", "contact": None}

    assert len(client.get("/api/posts", params={"limit": 2}).json()["posts"]) == 2
    assert client.get("/api/lost-and-found", params={"kind": "stolen"}).status_code == 400


def test_private_posts_stay_off_the_public_feed(client: TestClient, auth_headers) -> None:
    headers = auth_headers("user-1")
    create_post(client, headers, body="secret", visibility="private")
    visible = create_post(client, headers, body="public")

    assert [item["id"] for item in client.get("/api/posts").json()["posts"]] == [visible["id"]]


def test_conversations_and_messages(client: TestClient, auth_headers) -> None:
    create_profile(client, auth_headers, "user-ana", "ana@example.com", "Ana")
    create_profile(client, auth_headers, "user-ben", "ben@example.com", "Ben")
    ana = auth_headers("user-ana")
    ben = auth_headers("user-ben")
    eve = auth_headers("user-eve")

    self_chat = client.post("/api/create-conversation", json={"target_user_id": "user-ana"}, headers=ana)
    assert self_chat.status_code == 400
    assert self_chat.json() == {"error": "Cannot create conversation with self"}

    created = client.post("/api/create-conversation", json={"target_user_id": "user-ben"}, headers=ana)
    assert created.status_code == 201
    conversation_id = created.json()["conversationId"]

    existing = client.post("/api/create-conversation", json={"target_user_id": "user-ana"}, headers=ben)
    assert existing.status_code == 200
    assert existing.json() == {"conversationId": conversation_id}

    sent = client.post(
        f"/api/conversations/{conversation_id}/messages", json={"text": "Hi Ben"}, headers=ana
    )
    assert sent.status_code == 201
    assert sent.json()["recipient_id"] == "user-ben"
    reply = client.post(
        f"/api/conversations/{conversation_id}/messages", json={"text": "Hey Ana"}, headers=ben
    )
    assert reply.status_code == 201

    history = client.get(f"/api/conversations/{conversation_id}/messages", headers=ben).json()["messages"]
    assert [item["text"] for item in history] == ["Hi Ben", "Hey Ana"]

    listing = client.get("/api/conversations", headers=ana).json()
    assert listing["profile"]["id"] == "user-ana"
    assert len(listing["conversations"]) == 1
    conversation = listing["conversations"][0]
    assert conversation["last_message_text"] == "Hey Ana"
    assert [member["id"] for member in conversation["participants"]] == ["user-ben"]

    outsider = client.get(f"/api/conversations/{conversation_id}/messages", headers=eve)
    assert outsider.status_code == 403
    assert outsider.json() == {"error": "Not a conversation participant"}
    intrusion = client.post(f"/api/conversations/{conversation_id}/messages", json={"text": "hi"}, headers=eve)
    assert intrusion.status_code == 403

    empty = client.post(f"/api/conversations/{conversation_id}/messages", json={"text": ""}, headers=ana)
    assert empty.status_code == 400


def test_presence_endpoint(client: TestClient, backend) -> None:
    import anyio

    async def go_online() -> None:
        await (
            backend.table("presence")
            .upsert({"user_id": "user-1", "online": True, "last_seen": "2024-05-01T12:00:00+00:00"})
            .execute()
        )

    anyio.run(go_online)

    response = client.get("/api/presence", params={"user_ids": "user-1,user-2"})
    assert response.status_code == 200
    rows = response.json()["presence"]
    assert [(row["user_id"], row["online"]) for row in rows] == [("user-1", True)]

    assert client.get("/api/presence").json() == {"presence": []}


def test_metrics_endpoint_renders_counters(client: TestClient) -> None:
    client.post("/api/upload", files={"file": ("a.txt", b"hello", "text/plain")})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert "# TYPE upload_attempts_total counter" in response.text
    assert 'upload_attempts_total{bucket="ft",outcome="unsupported"}' in response.text
    assert "realtime_active_connections" in response.text
