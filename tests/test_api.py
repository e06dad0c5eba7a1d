"""
Tests for the HTTP API and its error mapping
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from relations_service.dependencies import get_optional_user, get_relations_service
from relations_service.domain.models import Collection
from relations_service.errors import Unexpected
from relations_service.main import app
from relations_service.schemas import User


class Caller:
    """Mutable identity returned by the auth dependency"""

    def __init__(self):
        self.user = None

    def login(self, user_id: str):
        self.user = User(id=user_id, username=user_id)

    def logout(self):
        self.user = None


@pytest.fixture
def caller():
    return Caller()


@pytest.fixture
def client(service, caller):
    """TestClient without lifespan: no database, Redis or Kafka connections"""
    app.dependency_overrides[get_relations_service] = lambda: service
    app.dependency_overrides[get_optional_user] = lambda: caller.user
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestFollowEndpoints:

    def test_follow_and_unfollow(self, client, caller):
        caller.login("alice")

        response = client.post("/api/v1/relations/follow/bob")
        assert response.status_code == 200
        assert response.json()["changed"] is True

        response = client.post("/api/v1/relations/follow/bob")
        assert response.json()["changed"] is False

        response = client.get("/api/v1/relations/followers/bob")
        assert response.json()["users"] == ["alice"]
        assert response.json()["total"] == 1

        response = client.delete("/api/v1/relations/follow/bob")
        assert response.json()["changed"] is True

    def test_anonymous_mutation_is_401(self, client):
        response = client.post("/api/v1/relations/follow/bob")

        assert response.status_code == 401
        assert response.json()["code"] == "not_authenticated"

    def test_anonymous_read_is_401(self, client):
        response = client.get("/api/v1/relations/followers/bob")
        assert response.status_code == 401

    def test_follow_self_is_400(self, client, caller):
        caller.login("alice")

        response = client.post("/api/v1/relations/follow/alice")

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_target"

    def test_backend_fault_is_502(self, client, caller, repo):
        caller.login("alice")
        repo.fail(Collection.FOLLOWS, "insert", Unexpected("connection refused"))

        response = client.post("/api/v1/relations/follow/bob")

        assert response.status_code == 502
        assert response.json()["code"] == "unexpected"


class TestFriendRequestEndpoints:

    def test_request_accept_flow(self, client, caller, profiles):
        profiles.resolve_username.return_value = "bob"
        caller.login("alice")

        response = client.post("/api/v1/relations/requests", json={"username": "@bob"})
        assert response.status_code == 200
        request_id = response.json()["id"]
        assert response.json()["status"] == "pending"
        profiles.resolve_username.assert_awaited_once_with("bob")

        caller.login("bob")
        response = client.get("/api/v1/relations/requests/pending")
        assert response.json()["total"] == 1

        response = client.post(
            f"/api/v1/relations/requests/{request_id}", json={"action": "accept"}
        )
        assert response.status_code == 200
        assert response.json()["status"] == "accepted"

        response = client.get("/api/v1/relations/friends/bob")
        assert [f["id"] for f in response.json()["friends"]] == ["alice"]

        response = client.get("/api/v1/relations/stats/bob")
        assert response.json()["friend_count"] == 1
        assert response.json()["pending_request_count"] == 0

    def test_request_to_self(self, client, caller):
        caller.login("alice")

        response = client.post("/api/v1/relations/requests", json={"to_user": "alice"})

        assert response.status_code == 200
        assert response.json()["changed"] is False

    def test_unknown_username_is_404(self, client, caller):
        caller.login("alice")
        response = client.post("/api/v1/relations/requests", json={"username": "ghost"})
        assert response.status_code == 404

    def test_missing_request_is_404(self, client, caller):
        caller.login("bob")

        response = client.post("/api/v1/relations/requests/999", json={"action": "decline"})

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_sender_cannot_accept(self, client, caller):
        caller.login("alice")
        request_id = client.post("/api/v1/relations/requests", json={"to_user": "bob"}).json()["id"]

        response = client.post(
            f"/api/v1/relations/requests/{request_id}", json={"action": "accept"}
        )

        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"

    def test_invalid_action_is_422(self, client, caller):
        caller.login("bob")
        response = client.post("/api/v1/relations/requests/1", json={"action": "maybe"})
        assert response.status_code == 422

    def test_reconcile_endpoint(self, client, caller):
        caller.login("alice")
        request_id = client.post("/api/v1/relations/requests", json={"to_user": "bob"}).json()["id"]
        caller.login("bob")
        client.post(f"/api/v1/relations/requests/{request_id}", json={"action": "accept"})

        response = client.post(f"/api/v1/relations/requests/{request_id}/reconcile")

        assert response.status_code == 200
        assert response.json() == {
            "request_id": request_id,
            "complete": True,
            "forward_error": None,
            "backward_error": None,
        }


class TestBlockAndRelationshipEndpoints:

    def test_block_unblock(self, client, caller):
        caller.login("alice")

        assert client.post("/api/v1/relations/block/bob").json()["changed"] is True
        assert client.post("/api/v1/relations/block/bob").json()["changed"] is False

        relationship = client.get("/api/v1/relations/relationship/bob").json()
        assert relationship["is_blocked"] is True
        assert relationship["relationship"] == "none"

        assert client.delete("/api/v1/relations/block/bob").json()["changed"] is True

    def test_unfriend(self, client, caller):
        caller.login("alice")
        request_id = client.post("/api/v1/relations/requests", json={"to_user": "bob"}).json()["id"]
        caller.login("bob")
        client.post(f"/api/v1/relations/requests/{request_id}", json={"action": "accept"})

        response = client.delete("/api/v1/relations/friends/alice")

        assert response.status_code == 200
        assert response.json()["changed"] is True
        assert client.get("/api/v1/relations/friends/bob").json()["friends"] == []

    def test_unfriend_stranger_reports_no_change(self, client, caller):
        caller.login("alice")

        response = client.delete("/api/v1/relations/friends/bob")

        assert response.status_code == 200
        assert response.json()["changed"] is False
        assert response.json()["message"] == "Not friends with user"


class TestStatsEndpoint:

    def test_pending_count_only_for_self(self, client, caller):
        caller.login("alice")
        client.post("/api/v1/relations/requests", json={"to_user": "bob"})
        client.post("/api/v1/relations/follow/bob")

        others = client.get("/api/v1/relations/stats/bob").json()
        assert others["follower_count"] == 1
        assert others["pending_request_count"] is None

        caller.login("bob")
        own = client.get("/api/v1/relations/stats/bob").json()
        assert own["pending_request_count"] == 1


class TestWebSocket:

    def test_rejects_missing_token(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/relations"):
                pass
