"""Tests for the HTTP and WebSocket gateway."""

from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from openchat.api.auth import SessionTokens
from openchat.api.gateway import create_app, status_for
from openchat.errors import (
    AlreadyLinked,
    GroupNotFound,
    InvalidPassword,
    MissingKeys,
    NotAuthenticated,
    NotCreator,
    PartialLink,
    StoreUnreachable,
    WeakPassword,
)


@pytest.fixture
def client(core):
    with TestClient(create_app(core)) as test_client:
        yield test_client


def signup(client, username, password="secret123"):
    response = client.post("/signup", json={"username": username, "password": password})
    assert response.status_code == 200, response.text
    return response.json()


def auth(account):
    return {"Authorization": f"Bearer {account['token']}"}


def test_status_mapping():
    assert status_for(GroupNotFound()) == 404
    assert status_for(AlreadyLinked()) == 409
    assert status_for(WeakPassword()) == 400
    assert status_for(InvalidPassword()) == 401
    assert status_for(NotAuthenticated()) == 401
    assert status_for(NotCreator()) == 403
    assert status_for(StoreUnreachable()) == 503
    assert status_for(PartialLink(failed=["bob"])) == 207
    assert status_for(MissingKeys()) == 500


class TestSessionTokens:
    def test_issue_and_resolve(self):
        tokens = SessionTokens()
        session = tokens.issue("alice")

        assert tokens.resolve(session.token) == "alice"
        assert tokens.issue("alice").token != session.token

    @pytest.mark.parametrize("token", [None, "", "made-up"])
    def test_unknown_tokens_rejected(self, token):
        with pytest.raises(NotAuthenticated):
            SessionTokens().resolve(token)

    def test_expired_token_rejected(self):
        now = [1000.0]
        tokens = SessionTokens(ttl_seconds=60, clock=lambda: now[0])
        session = tokens.issue("alice")

        now[0] += 61
        with pytest.raises(NotAuthenticated):
            tokens.resolve(session.token)
        assert len(tokens) == 0

    def test_revoke(self):
        tokens = SessionTokens()
        session = tokens.issue("alice")

        assert tokens.revoke(session.token)
        assert not tokens.revoke(session.token)
        with pytest.raises(NotAuthenticated):
            tokens.resolve(session.token)


class TestAccountsApi:
    def test_signup_and_login(self, client):
        created = signup(client, "alice")

        response = client.post("/login", json={"username": "alice", "password": "secret123"})

        assert response.status_code == 200
        assert response.json()["authenticator"] == created["authenticator"]
        assert response.json()["degraded"] is False
        assert response.json()["token"] != created["token"]
        assert client.get("/session", headers=auth(response.json())).json() == {"username": "alice"}

    def test_signup_errors(self, client):
        signup(client, "alice")

        duplicate = client.post("/signup", json={"username": "alice", "password": "secret123"})
        weak = client.post("/signup", json={"username": "bob", "password": "123"})
        malformed = client.post("/signup", json={"username": "carol"})

        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "duplicate_username"
        assert weak.status_code == 400
        assert malformed.status_code == 422

    def test_login_errors(self, client):
        signup(client, "alice")

        assert client.post("/login", json={"username": "alice", "password": "wrong-pass"}).status_code == 401
        assert client.post("/login", json={"username": "ghost", "password": "secret123"}).status_code == 404

    def test_logout_revokes_token(self, client):
        alice = signup(client, "alice")

        assert client.get("/contacts", headers=auth(alice)).json() == {"users": [], "groups": []}
        assert client.post("/logout", headers=auth(alice)).json() == {"offline": True}
        assert client.get("/contacts", headers=auth(alice)).status_code == 401

    def test_health(self, client):
        signup(client, "alice")

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["directory"] == "connected"
        assert response.json()["openStores"] == 1

    def test_health_reports_unreachable_store(self, client, world):
        signup(client, "alice")
        for store in world.stores.values():
            store.unreachable = True

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"
        assert response.json()["unreachableStores"] == 1

    def test_health_reports_lost_directory(self, client, backend):
        backend.healthy = False

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["directory"] == "disconnected"


class TestAuthentication:
    @pytest.mark.parametrize("method,path", [
        ("get", "/contacts"),
        ("get", "/messages/alice"),
        ("get", "/groups/group-1"),
        ("get", "/groups/group-1/messages"),
        ("delete", "/groups/group-1"),
        ("post", "/reconcile"),
        ("post", "/logout"),
    ])
    def test_routes_require_a_session(self, client, method, path):
        response = getattr(client, method)(path)

        assert response.status_code == 401
        assert response.json()["error"] == "not_authenticated"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_bad_token_rejected(self, client):
        response = client.get("/contacts", headers={"Authorization": "Bearer not-a-session"})
        assert response.status_code == 401

    def test_history_cannot_be_read_by_naming_another_user(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))
        client.post("/messages", json={"to": "bob", "msg": "top secret"}, headers=auth(alice))

        anonymous = client.get("/messages/alice", params={"username": "bob"})
        assert anonymous.status_code == 401

        carol = signup(client, "carol")
        as_carol = client.get("/messages/alice", params={"username": "bob"}, headers=auth(carol))
        assert as_carol.status_code == 200
        assert as_carol.json() == []

    def test_sender_comes_from_the_session(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))

        forged = client.post("/messages", json={"from": "bob", "to": "alice", "msg": "hi"})
        assert forged.status_code == 401

        sent = client.post("/messages", json={"from": "bob", "to": "bob", "msg": "hi"}, headers=auth(alice))
        assert sent.status_code == 200
        history = client.get("/messages/bob", headers=auth(alice)).json()
        assert [(m["from"], m["to"]) for m in history] == [("alice", "bob")]

    def test_live_channel_requires_a_session(self, client):
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws"):
                pass
        assert exc_info.value.code == 1008

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws?token=forged"):
                pass


class TestLinkAndMessagesApi:
    def test_link_message_and_history(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")

        linked = client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))
        again = client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))
        sent = client.post("/messages", json={"to": "bob", "msg": "hi"}, headers=auth(alice))

        assert linked.status_code == 200
        assert linked.json()["linkedUsername"] == "bob"
        assert again.status_code == 409
        assert sent.status_code == 200
        assert sent.json()["crossStore"] is True

        history = client.get("/messages/alice", headers=auth(bob))
        assert history.status_code == 200
        assert [m["msg"] for m in history.json()] == ["hi"]

    def test_self_link_conflict(self, client):
        alice = signup(client, "alice")
        response = client.post("/link-database", json={"authenticator": alice["authenticator"]}, headers=auth(alice))
        assert response.status_code == 409
        assert response.json()["error"] == "self_link_rejected"

    def test_partial_link_reports_207(self, client, world):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        for store in world.stores.values():
            if "bob" in store.profiles:
                store.unreachable = True

        response = client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))

        assert response.status_code == 207
        assert response.json()["failed"] == ["bob"]

    def test_reconcile_repairs_reverse_link(self, client, world):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))
        for store in world.stores.values():
            owner = store.profiles.get("bob")
            if owner is not None and owner.password_hash:
                store.links.clear()

        response = client.post("/reconcile", headers=auth(alice))

        assert response.status_code == 200
        assert response.json()["checked"] == 1
        assert response.json()["repaired"] == ["bob"]

    def test_missing_message_text(self, client):
        alice = signup(client, "alice")
        response = client.post("/messages", json={"to": "bob"}, headers=auth(alice))
        assert response.status_code == 400


class TestGroupsApi:
    def test_group_lifecycle(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))

        created = client.post("/groups", json={"name": "pals", "members": ["bob"]}, headers=auth(alice))
        assert created.status_code == 200
        group_id = created.json()["group"]["id"]
        assert created.json()["group"]["creator"] == "alice"
        assert created.json()["delivered"] == ["bob"]

        posted = client.post(f"/groups/{group_id}/messages", json={"msg": "hello pals"}, headers=auth(alice))
        assert posted.status_code == 200
        assert posted.json()["message"]["msg"] == "hello pals"
        assert posted.json()["message"]["from"] == "alice"

        messages = client.get(f"/groups/{group_id}/messages", headers=auth(bob))
        assert [m["msg"] for m in messages.json()] == ["hello pals"]

        details = client.get(f"/groups/{group_id}", headers=auth(alice))
        assert details.json()["availableContacts"] == ["bob"]

        nothing = client.post(f"/groups/{group_id}/members", json={"members": ["bob"]}, headers=auth(alice))
        assert nothing.json()["added"] == []
        assert "already members" in nothing.json()["message"]

        forbidden = client.delete(f"/groups/{group_id}", headers=auth(bob))
        assert forbidden.status_code == 403

        deleted = client.delete(f"/groups/{group_id}", headers=auth(alice))
        assert deleted.status_code == 200
        assert client.get(f"/groups/{group_id}", headers=auth(alice)).status_code == 404


class TestLiveChannel:
    def test_live_delivery_and_client_frames(self, client):
        alice = signup(client, "alice")
        bob = signup(client, "bob")
        client.post("/link-database", json={"authenticator": bob["authenticator"]}, headers=auth(alice))

        with client.websocket_connect(f"/ws?token={bob['token']}") as ws:
            client.post("/messages", json={"to": "bob", "msg": "are you there?"}, headers=auth(alice))
            frame = ws.receive_json()
            assert frame["event"] == "chat message"
            assert frame["data"]["msg"] == "are you there?"
            assert ws.receive_json()["event"] == "notification"

            # A "from" field in the frame does not change the sender
            ws.send_json({"event": "chat message", "data": {"from": "alice", "to": "alice", "msg": "yes"}})
            echo = ws.receive_json()
            assert echo["event"] == "chat message"
            assert echo["data"]["from"] == "bob"

            ws.send_text("not json")
            assert ws.receive_json()["data"]["error"] == "invalid_input"

            ws.send_json({"event": "dance", "data": {}})
            assert ws.receive_json()["data"]["error"] == "unknown_event"

        history = client.get("/messages/bob", headers=auth(alice))
        assert [m["msg"] for m in history.json()] == ["are you there?", "yes"]


def test_degraded_gateway(core):
    core.directory.connect_with_retry = AsyncMock(return_value=False)

    with TestClient(create_app(core)) as client:
        login = client.post("/login", json={"username": "alice", "password": "secret123"})
        assert login.status_code == 200
        assert login.json()["degraded"] is True
        assert login.json()["authenticator"].startswith("temporary-")
        assert client.get("/session", headers=auth(login.json())).json() == {"username": "alice"}

        assert client.post("/signup", json={"username": "bob", "password": "secret123"}).status_code == 503
        assert client.get("/contacts", headers=auth(login.json())).status_code == 503

        health = client.get("/health")
        assert health.status_code == 200
        assert health.json()["status"] == "degraded"
