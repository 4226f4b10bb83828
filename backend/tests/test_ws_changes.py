from __future__ import annotations

import time

import pytest
from starlette.testclient import WebSocketTestSession
from starlette.websockets import WebSocketDisconnect

from app.api import ws as ws_module
from app.core.security import create_access_token
from app.monitoring.metrics import realtime_connections


def _connect_url(user_id: str, table: str, filter: str | None = None) -> str:
    url = f"/ws/changes?token={create_access_token(user_id)}&table={table}"
    if filter:
        url += f"&filter={filter}"
    return url


def _expect_rejection(client, url: str) -> int:
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(url) as connection:
            connection.receive_json()
    return excinfo.value.code


def test_post_inserts_are_relayed(client, auth_headers) -> None:
    baseline = realtime_connections.value()

    with client.websocket_connect(_connect_url("user-viewer", "posts")) as connection:
        ready = connection.receive_json()
        assert ready == {"type": "subscribed", "table": "posts", "filter": None}
        assert realtime_connections.value() == baseline + 1

        created = client.post("/api/create-post", json={"body": "live"}, headers=auth_headers("user-author"))
        assert created.status_code == 200

        change = connection.receive_json()
        assert change["type"] == "change"
        assert change["table"] == "posts"
        assert change["eventType"] == "INSERT"
        assert change["new"]["id"] == created.json()["id"]
        assert change["old"] == {}

        client.delete(f"/api/posts/{created.json()['id']}", headers=auth_headers("user-author"))
        removed = connection.receive_json()
        assert removed["eventType"] == "DELETE"
        assert removed["new"] == {}
        assert removed["old"]["id"] == created.json()["id"]

    assert realtime_connections.value() == baseline


def test_connection_marks_presence_online_then_offline(client) -> None:
    with client.websocket_connect(_connect_url("user-present", "posts")) as connection:
        connection.receive_json()
        during = client.get("/api/presence", params={"user_ids": "user-present"}).json()["presence"]
        assert during[0]["online"] is True

    after = client.get("/api/presence", params={"user_ids": "user-present"}).json()["presence"]
    assert after[0]["online"] is False


def test_message_feed_requires_membership(client, auth_headers) -> None:
    created = client.post(
        "/api/create-conversation",
        json={"target_user_id": "user-ben"},
        headers=auth_headers("user-ana"),
    )
    conversation_id = created.json()["conversationId"]

    assert _expect_rejection(client, _connect_url("user-ana", "messages")) == 1008
    assert _expect_rejection(client, _connect_url("user-eve", "messages", f"conversation_id=eq.{conversation_id}")) == 1008
    assert _expect_rejection(client, _connect_url("user-ana", "messages", "sender_id=eq.user-ana")) == 1008
    assert _expect_rejection(client, _connect_url("user-ana", "messages", "conversation_id=gt.1")) == 1008

    url = _connect_url("user-ben", "messages", f"conversation_id=eq.{conversation_id}")
    with client.websocket_connect(url) as connection:
        assert connection.receive_json()["type"] == "subscribed"
        client.post(
            f"/api/conversations/{conversation_id}/messages",
            json={"text": "ping"},
            headers=auth_headers("user-ana"),
        )
        change = connection.receive_json()
        assert change["table"] == "messages"
        assert change["new"]["text"] == "ping"
        assert change["new"]["recipient_id"] == "user-ben"


def test_rejects_missing_token_and_unknown_tables(client) -> None:
    assert _expect_rejection(client, "/ws/changes?table=posts") == 1008
    assert _expect_rejection(client, "/ws/changes?table=posts&token=garbage") == 1008
    assert _expect_rejection(client, _connect_url("user-1", "conversation_participants")) == 1008


def test_change_feed_survives_keepalive_timeout(client) -> None:
    """Ensure that the server side keepalive pings keep the socket open."""

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with client.websocket_connect(_connect_url("keepalive-user", "comments")) as connection:
            _assert_keepalive_sequence(connection)
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def _assert_keepalive_sequence(connection: WebSocketTestSession) -> None:
    """Observe two keepalive pings with client responses to keep the connection active."""

    snapshot = connection.receive_json()
    assert snapshot["type"] == "subscribed"

    time.sleep(0.15)
    ping = connection.receive_json()
    assert ping["type"] == "ping"
    connection.send_json({"type": "pong"})

    time.sleep(0.12)
    ping_again = connection.receive_json()
    assert ping_again["type"] == "ping"
    connection.send_json({"type": "pong"})

    connection.send_json({"type": "ping"})
    for _ in range(5):
        reply = connection.receive_json()
        if reply["type"] == "pong":
            break
        assert reply["type"] == "ping"
    else:
        raise AssertionError("no pong received")
