"""
Tests for the HTTP API.

Tests cover:
- POST /sync status codes: 200, 400, 401, 403, 500
- No provider traffic and no writes for rejected callers
- Response summary fields
- GET /subjects/{subject_id}/messages listing and access control
- Health checks and metrics exposition
"""

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select

from chatsync.config import settings
from chatsync.conftest import SUBJECT_ID, make_token, remote_message, seed_credential, seed_subject
from chatsync.main import app, get_http_client
from chatsync.models import Message
from chatsync.storage import Base, SessionLocal, engine

T0 = 1736935200


def auth_headers(**token_kwargs) -> dict:
    return {"Authorization": f"Bearer {make_token(**token_kwargs)}"}


def count_messages() -> int:
    with SessionLocal() as db:
        return db.execute(select(func.count(Message.id))).scalar()


@pytest.fixture(scope="function")
def client(fake_provider):
    """Test client with fresh tables and provider traffic routed to the fake."""
    Base.metadata.create_all(bind=engine)

    def fake_http_client():
        with fake_provider.client() as http:
            yield http

    app.dependency_overrides[get_http_client] = fake_http_client
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def connected_subject(client, fake_provider):
    """A subject with authorized credentials and two chats waiting on the provider."""
    with SessionLocal() as db:
        seed_subject(db)
        seed_credential(db)

    fake_provider.chats = [
        {"id": "A@c.us", "name": "Alice", "type": "user", "lastMessageTime": T0 + 10},
        {"id": "B@c.us", "name": "Bob", "type": "user", "lastMessageTime": T0 + 5},
    ]
    fake_provider.histories = {
        "A@c.us": [remote_message(f"A{i}", T0 + i, f"alice {i}", chatId="A@c.us") for i in range(3)],
        "B@c.us": [remote_message(f"B{i}", T0 + i, f"bob {i}", chatId="B@c.us") for i in range(3)],
    }
    return client


class TestSyncAuthorization:
    """Rejected callers never reach the provider."""

    def test_missing_header_401(self, connected_subject, fake_provider):
        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID})

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"
        assert fake_provider.calls == []

    def test_invalid_token_401(self, connected_subject, fake_provider):
        response = connected_subject.post(
            "/sync",
            json={"subject_id": SUBJECT_ID},
            headers={"Authorization": "Bearer not-a-token"},
        )

        assert response.status_code == 401
        assert fake_provider.calls == []

    def test_expired_token_401(self, connected_subject, fake_provider):
        response = connected_subject.post(
            "/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers(expires_in=-60)
        )

        assert response.status_code == 401

    def test_non_owner_403(self, connected_subject, fake_provider):
        response = connected_subject.post(
            "/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers(sub="someone-else")
        )

        assert response.status_code == 403
        assert fake_provider.calls == []
        assert count_messages() == 0

    def test_unknown_subject_403(self, connected_subject, fake_provider):
        response = connected_subject.post(
            "/sync", json={"subject_id": "no-such-child"}, headers=auth_headers()
        )

        assert response.status_code == 403
        assert fake_provider.calls == []

    def test_empty_subject_id_422(self, connected_subject):
        response = connected_subject.post("/sync", json={"subject_id": ""}, headers=auth_headers())

        assert response.status_code == 422


class TestSync:
    """POST /sync for an authorized owner."""

    def test_sync_returns_summary(self, connected_subject):
        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["conversations_processed"] == 2
        assert data["messages_imported"] == 6
        assert data["total_conversations_available"] == 2
        assert data["budget_exhausted"] is False
        assert data["elapsed_ms"] >= 0
        assert data["skipped"] == []
        assert count_messages() == 6

    def test_repeat_sync_imports_nothing(self, connected_subject):
        connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())
        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["messages_imported"] == 0
        assert count_messages() == 6

    def test_max_conversations_override(self, connected_subject, fake_provider):
        response = connected_subject.post(
            "/sync", json={"subject_id": SUBJECT_ID, "max_conversations": 1}, headers=auth_headers()
        )

        assert response.status_code == 200
        assert response.json()["conversations_processed"] == 1
        assert [payload["chatId"] for payload in fake_provider.calls_to("getChatHistory")] == ["A@c.us"]

    def test_provider_called_with_subject_credentials(self, connected_subject, fake_provider):
        connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert fake_provider.calls[0][0] == "getChats"

    def test_failed_conversation_reported_as_skipped(self, connected_subject, fake_provider):
        fake_provider.histories["B@c.us"] = 500

        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["conversations_processed"] == 1
        assert data["messages_imported"] == 3
        assert data["skipped"][0]["kind"] == "conversation"
        assert data["skipped"][0]["ref"] == "B@c.us"

    def test_listing_failure_500(self, connected_subject, fake_provider):
        fake_provider.queued["getChats"] = [403]

        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 500
        assert response.json()["detail"] == "Provider error: 403"
        assert fake_provider.calls_to("getChatHistory") == []
        assert count_messages() == 0

    def test_provider_unreachable_500(self, connected_subject, monkeypatch):
        monkeypatch.setattr(settings, "RETRY_MAX_RETRIES", 0)

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        def unreachable_http_client():
            with httpx.Client(transport=httpx.MockTransport(refuse)) as http:
                yield http

        app.dependency_overrides[get_http_client] = unreachable_http_client

        response = connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 500
        assert response.json()["detail"] == "Provider unreachable"
        assert count_messages() == 0


class TestSyncCredentials:

    def test_not_connected_400(self, client, fake_provider):
        with SessionLocal() as db:
            seed_subject(db)

        response = client.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 400
        assert response.json()["detail"] == "WhatsApp not connected. Please connect first."
        assert fake_provider.calls == []

    def test_default_pair_used_when_not_connected(self, client, fake_provider, monkeypatch):
        monkeypatch.setattr(settings, "DEFAULT_PROVIDER_INSTANCE_ID", "9999")
        monkeypatch.setattr(settings, "DEFAULT_PROVIDER_TOKEN", "shared-token")
        with SessionLocal() as db:
            seed_subject(db)

        response = client.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        assert response.status_code == 200
        assert response.json()["conversations_processed"] == 0


class TestMessagesList:
    """GET /subjects/{subject_id}/messages."""

    def test_lists_synced_messages_newest_first(self, connected_subject):
        connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        response = connected_subject.get(f"/subjects/{SUBJECT_ID}/messages", headers=auth_headers())

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 6
        timestamps = [item["message_timestamp"] for item in data["data"]]
        assert timestamps == sorted(timestamps, reverse=True)
        assert {item["conversation_name"] for item in data["data"]} == {"Alice", "Bob"}

    def test_search_and_paging(self, connected_subject):
        connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        response = connected_subject.get(
            f"/subjects/{SUBJECT_ID}/messages",
            params={"q": "ALICE", "limit": 2},
            headers=auth_headers(),
        )

        data = response.json()
        assert data["total"] == 3
        assert len(data["data"]) == 2
        assert data["limit"] == 2

    def test_requires_owner(self, connected_subject):
        response = connected_subject.get(
            f"/subjects/{SUBJECT_ID}/messages", headers=auth_headers(sub="someone-else")
        )

        assert response.status_code == 403

    def test_requires_identity(self, connected_subject):
        response = connected_subject.get(f"/subjects/{SUBJECT_ID}/messages")

        assert response.status_code == 401


class TestHealthAndMetrics:

    def test_liveness(self, client):
        response = client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_readiness(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_metrics_after_sync(self, connected_subject):
        connected_subject.post("/sync", json={"subject_id": SUBJECT_ID}, headers=auth_headers())

        response = connected_subject.get("/metrics")

        assert response.status_code == 200
        assert "sync_runs_total" in response.text
        assert "provider_requests_total" in response.text
