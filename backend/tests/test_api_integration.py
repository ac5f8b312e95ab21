"""Integration tests exercising API endpoints via FastAPI's TestClient."""

from __future__ import annotations

from datetime import datetime

from fastapi.testclient import TestClient

from app.config import get_settings
from safeyou.realtime.events import ChangeEntity


def test_register_and_login_flow(client: TestClient):
    """End-to-end flow for registering and logging in a user."""

    response = client.post("/api/auth/register", json={"username": "  Alice ", "password": "wonderland"})
    assert response.status_code == 201
    data = response.json()
    assert data["username"] == "Alice"
    assert data["is_online"] is False
    assert data["suspension"] is None

    login_response = client.post("/api/auth/login", json={"username": "alice", "password": "wonderland"})
    assert login_response.status_code == 200
    token_data = login_response.json()
    assert token_data["token_type"] == "bearer"
    assert isinstance(token_data["access_token"], str)

    me = client.get("/api/users/me", headers={"Authorization": f"Bearer {token_data['access_token']}"})
    assert me.status_code == 200
    assert me.json()["is_online"] is True


def test_duplicate_username_is_rejected_case_insensitively(client: TestClient):
    client.post("/api/auth/register", json={"username": "alice", "password": "wonderland"})

    response = client.post("/api/auth/register", json={"username": "ALICE", "password": "wonderland"})

    assert response.status_code == 422
    assert response.json()["code"] == "username_taken"


def test_login_with_wrong_password_is_unauthorized(client: TestClient, make_account):
    make_account("alice")

    response = client.post("/api/auth/login", json={"username": "alice", "password": "nope"})

    assert response.status_code == 401
    assert response.json()["detail"] == "Incorrect username or password"


def test_requests_without_token_are_rejected(client: TestClient):
    assert client.get("/api/messages").status_code == 401
    assert client.post("/api/messages", json={"text": "hi"}).status_code == 401


def test_public_and_private_message_scenario(client: TestClient, make_account):
    alice, alice_headers, _ = make_account("alice")
    bob, bob_headers, _ = make_account("bob")
    carol, carol_headers, _ = make_account("carol")

    m1 = client.post("/api/messages", json={"text": "hello"}, headers=alice_headers)
    assert m1.status_code == 201, m1.text
    m1_data = m1.json()
    assert m1_data["scope"] == "public"
    assert m1_data["read_by"] == [alice["id"]]

    m2 = client.post(
        "/api/messages",
        json={"text": "hi there", "recipient_id": alice["id"], "reply_to_id": m1_data["id"]},
        headers=bob_headers,
    )
    assert m2.status_code == 201, m2.text
    m2_data = m2.json()
    assert m2_data["scope"] == "private"
    assert m2_data["reply_to"]["id"] == m1_data["id"]

    conversation = client.get("/api/messages", params={"recipient_id": bob["id"]}, headers=alice_headers)
    assert [item["id"] for item in conversation.json()["items"]] == [m2_data["id"]]

    public = client.get("/api/messages", headers=carol_headers)
    assert [item["id"] for item in public.json()["items"]] == [m1_data["id"]]

    hidden = client.get(f"/api/messages/{m2_data['id']}", headers=carol_headers)
    assert hidden.status_code == 404
    assert hidden.json()["code"] == "not_found"


def test_empty_message_is_rejected(client: TestClient, make_account):
    _, headers, _ = make_account("alice")

    response = client.post("/api/messages", json={"text": "   "}, headers=headers)

    assert response.status_code == 422
    assert response.json()["code"] == "invalid_body"


def test_media_message_round_trip(client: TestClient, make_account):
    _, headers, _ = make_account("alice")

    response = client.post(
        "/api/messages",
        json={"media": {"kind": "video", "url": "https://cdn.example/clip.mp4"}},
        headers=headers,
    )

    assert response.status_code == 201, response.text
    assert response.json()["media"] == {"kind": "video", "url": "https://cdn.example/clip.mp4"}
    assert response.json()["text"] is None


def test_reaction_command_id_is_applied_once(client: TestClient, make_account):
    _, alice_headers, _ = make_account("alice")
    bob, bob_headers, _ = make_account("bob")
    message = client.post("/api/messages", json={"text": "vote"}, headers=alice_headers).json()

    for _ in range(2):
        response = client.post(
            f"/api/messages/{message['id']}/reactions",
            json={"emoji": "👍", "command_id": "bob-vote-1"},
            headers=bob_headers,
        )
        assert response.status_code == 200, response.text
        assert response.json()["reactions"] == {"👍": [bob["id"]]}

    toggled = client.post(
        f"/api/messages/{message['id']}/reactions", json={"emoji": "👍"}, headers=bob_headers
    )
    assert toggled.json()["reactions"] == {}


def test_read_receipts(client: TestClient, make_account):
    alice, alice_headers, _ = make_account("alice")
    bob, bob_headers, _ = make_account("bob")
    message = client.post("/api/messages", json={"text": "read me"}, headers=alice_headers).json()

    assert client.post(f"/api/messages/{message['id']}/read", headers=bob_headers).status_code == 204
    assert client.post(f"/api/messages/{message['id']}/read", headers=bob_headers).status_code == 204
    assert client.post("/api/messages/9999/read", headers=bob_headers).status_code == 204

    refreshed = client.get(f"/api/messages/{message['id']}", headers=alice_headers).json()
    assert refreshed["read_by"] == [alice["id"], bob["id"]]


def test_only_author_can_delete(client: TestClient, make_account):
    _, alice_headers, _ = make_account("alice")
    _, bob_headers, _ = make_account("bob")
    message = client.post("/api/messages", json={"text": "mine"}, headers=alice_headers).json()

    forbidden = client.delete(f"/api/messages/{message['id']}", headers=bob_headers)
    assert forbidden.status_code == 403
    assert forbidden.json()["code"] == "forbidden"

    assert client.delete(f"/api/messages/{message['id']}", headers=alice_headers).status_code == 204
    assert client.get(f"/api/messages/{message['id']}", headers=alice_headers).status_code == 404


def test_report_suspends_author(client: TestClient, make_account):
    alice, alice_headers, _ = make_account("alice")
    _, bob_headers, _ = make_account("bob")
    message = client.post("/api/messages", json={"text": "spam"}, headers=alice_headers).json()

    report = client.post(f"/api/messages/{message['id']}/report", headers=bob_headers)
    assert report.status_code == 200, report.text
    suspension = report.json()["suspension"]
    assert suspension["reported_by"] == ["bob"]
    until = datetime.fromisoformat(suspension["until"].replace("Z", "+00:00"))
    created = datetime.fromisoformat(message["created_at"].replace("Z", "+00:00"))
    minutes = (until - created).total_seconds() / 60
    assert get_settings().moderation_suspension_minutes - 1 < minutes <= get_settings().moderation_suspension_minutes + 1

    blocked = client.post("/api/messages", json={"text": "more spam"}, headers=alice_headers)
    assert blocked.status_code == 403
    assert blocked.json()["code"] == "author_suspended"
    assert "until" in blocked.json()

    status = client.get(f"/api/moderation/users/{alice['id']}", headers=bob_headers).json()
    assert status["suspended"] is True
    assert status["reported_by"] == ["bob"]

    self_report = client.post(f"/api/messages/{message['id']}/report", headers=alice_headers)
    assert self_report.status_code == 400
    assert self_report.json()["code"] == "invalid_report"


def test_presence_endpoints(client: TestClient, make_account):
    alice, alice_headers, _ = make_account("alice")
    _, bob_headers, _ = make_account("bob")

    assert client.post("/api/presence/offline", headers=alice_headers).json()["is_online"] is False
    listing = {user["username"]: user for user in client.get("/api/users", headers=bob_headers).json()}
    assert listing["alice"]["is_online"] is False
    assert listing["bob"]["is_online"] is True
    assert listing["bob"]["stale"] is False

    beat = client.post("/api/presence/heartbeat", headers=alice_headers).json()
    assert beat["is_online"] is False

    assert client.post("/api/presence/online", headers=alice_headers).json()["is_online"] is True
    assert client.post("/api/auth/logout", headers=alice_headers).status_code == 204
    me = client.get("/api/users/me", headers=alice_headers).json()
    assert me["id"] == alice["id"]
    assert me["is_online"] is False


def test_change_log_hides_private_messages_from_outsiders(client: TestClient, make_account):
    alice, alice_headers, _ = make_account("alice")
    bob, bob_headers, _ = make_account("bob")
    _, carol_headers, _ = make_account("carol")

    client.post("/api/messages", json={"text": "public"}, headers=alice_headers)
    client.post("/api/messages", json={"text": "private", "recipient_id": bob["id"]}, headers=alice_headers)

    bob_view = client.get("/api/changes/message", headers=bob_headers).json()
    assert [item["payload"]["text"] for item in bob_view["items"]] == ["public", "private"]
    assert bob_view["last_sequence"] == 2

    carol_view = client.get("/api/changes/message", headers=carol_headers).json()
    assert [item["payload"]["text"] for item in carol_view["items"]] == ["public"]

    tail = client.get("/api/changes/message", params={"from_sequence": 2}, headers=bob_headers).json()
    assert [item["sequence"] for item in tail["items"]] == [2]

    users = client.get("/api/changes/user", params={"limit": 1}, headers=bob_headers).json()
    assert len(users["items"]) == 1
    assert users["next_sequence"] == 2


def test_committed_changes_reach_the_bus(client: TestClient, make_account, change_bus):
    _, headers, _ = make_account("alice")

    client.post("/api/messages", json={"text": "hello bus"}, headers=headers)

    retained = change_bus.retained(ChangeEntity.MESSAGE)
    assert [event.payload["text"] for event in retained] == ["hello bus"]


def test_metrics_and_health(client: TestClient, make_account):
    _, headers, _ = make_account("alice")
    client.post("/api/messages", json={"text": "count me"}, headers=headers)

    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert 'chat_commands_total{command="send",outcome="ok"}' in metrics.text
