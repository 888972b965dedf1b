import uuid

import pytest
from fastapi.testclient import TestClient

from app.database import get_db
from app.main import app
from app.services.channel_service import get_channel_sender
from app.services.fallback_service import get_llm_provider


@pytest.fixture
def client(db, fake_sender, fake_llm):
    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_channel_sender] = lambda: fake_sender
    app.dependency_overrides[get_llm_provider] = lambda: fake_llm
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _inbound(message_id="wamid.A", body="hi"):
    return {
        "channel": "whatsapp",
        "recipient_address": "971500000002@s.whatsapp.net",
        "message_id": message_id,
        "body": body,
        "contact_name": "Priya",
    }


class TestInbound:
    def test_first_message_gets_reply(self, client, fake_sender):
        response = client.post("/conversations/inbound", json=_inbound())

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "sent"
        assert data["question_key"] == "ASK_SERVICE"
        assert data["was_duplicate"] is False
        assert len(fake_sender.sent) == 1

    def test_redelivered_webhook_is_duplicate(self, client, fake_sender):
        first = client.post("/conversations/inbound", json=_inbound()).json()

        second = client.post("/conversations/inbound", json=_inbound())

        data = second.json()
        assert data["status"] == "duplicate"
        assert data["was_duplicate"] is True
        assert data["idempotency_key"] == first["idempotency_key"]
        assert data["conversation_id"] == first["conversation_id"]
        assert len(fake_sender.sent) == 1

    def test_empty_body_rejected(self, client):
        response = client.post("/conversations/inbound", json=_inbound(body=""))
        assert response.status_code == 422


class TestDeliverEndpoint:
    def test_unknown_conversation(self, client):
        response = client.post(f"/conversations/{uuid.uuid4()}/deliver", json={"trigger_message_id": "wamid.A"})
        assert response.status_code == 404

    def test_retry_after_send(self, client, fake_sender):
        first = client.post("/conversations/inbound", json=_inbound()).json()

        response = client.post(
            f"/conversations/{first['conversation_id']}/deliver",
            json={"trigger_message_id": "wamid.A"},
        )

        assert response.json()["status"] == "duplicate"
        assert len(fake_sender.sent) == 1


class TestStateEndpoint:
    def test_state_after_first_turn(self, client):
        first = client.post("/conversations/inbound", json=_inbound(body="I need a visit visa")).json()

        response = client.get(f"/conversations/{first['conversation_id']}/state")

        assert response.status_code == 200
        data = response.json()
        assert data["known_fields"]["service"] == "visit_visa"
        assert data["last_question_key"] == "ASK_NAME"
        assert data["questions_asked_count"] == 1
        assert data["stage"] == "collecting_core"

    def test_missing_conversation(self, client):
        assert client.get(f"/conversations/{uuid.uuid4()}/state").status_code == 404


class TestAutoReplyEndpoint:
    def test_disable_then_inbound_is_skipped(self, client, fake_sender):
        first = client.post("/conversations/inbound", json=_inbound()).json()

        response = client.put(f"/conversations/{first['conversation_id']}/auto-reply", json={"enabled": False})
        assert response.status_code == 200
        assert response.json()["enabled"] is False

        second = client.post("/conversations/inbound", json=_inbound(message_id="wamid.B", body="visit visa")).json()

        assert second["status"] == "skipped_disabled"
        assert len(fake_sender.sent) == 1

    def test_mute(self, client):
        first = client.post("/conversations/inbound", json=_inbound()).json()

        response = client.put(
            f"/conversations/{first['conversation_id']}/auto-reply",
            json={"enabled": True, "muted_until": "2099-01-01T00:00:00+00:00"},
        )

        assert response.status_code == 200
        assert response.json()["muted_until"].startswith("2099-01-01")

    def test_unknown_conversation(self, client):
        response = client.put(f"/conversations/{uuid.uuid4()}/auto-reply", json={"enabled": False})
        assert response.status_code == 404


class TestAdmin:
    def test_reconcile_requires_token(self, client, mock_env):
        assert client.post("/admin/reconcile").status_code == 401
        assert client.post("/admin/reconcile", headers={"X-Admin-Token": "wrong"}).status_code == 401

    def test_reconcile(self, client, mock_env):
        response = client.post("/admin/reconcile", headers={"X-Admin-Token": "admin-secret"})

        assert response.status_code == 200
        assert response.json()["healed_count"] == 0

    def test_reconcile_without_configured_token(self, client, monkeypatch):
        monkeypatch.delenv("ADMIN_TOKEN", raising=False)
        assert client.post("/admin/reconcile", headers={"X-Admin-Token": "x"}).status_code == 500

    def test_health_counts(self, client):
        client.post("/conversations/inbound", json=_inbound())

        data = client.get("/admin/health").json()

        assert data["dedup_records"]["SENT"] == 1

    def test_version(self, client):
        data = client.get("/admin/version").json()
        assert data["rules_version"]


class TestServiceHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
