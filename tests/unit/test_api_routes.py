"""Tests for the HTTP surface."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from appointment_bot.core.conversation import ConversationSession, ConversationStage, TurnResult
from appointment_bot.main import app

PHONE = "5511987654321"


@pytest.fixture
def client():
    # Not used as a context manager: the lifespan (Redis, scheduler) stays off
    return TestClient(app)


@pytest.fixture
def machine():
    mock = MagicMock()
    mock.handle_message = AsyncMock(
        return_value=TurnResult(reply="Hello!", stage=ConversationStage.IDLE, sent=True)
    )
    return mock


class TestWebhook:
    """Test inbound message intake."""

    def test_plain_payload_is_processed(self, client, machine):
        with patch("appointment_bot.api.routes.webhook.get_state_machine", return_value=machine):
            response = client.post(
                "/webhook/inbound",
                json={"phone": "(11) 98765-4321", "text": " I'd like to book ", "senderName": "Ana"},
            )

        assert response.status_code == 202
        assert response.json() == {"status": "accepted", "reason": None}
        machine.handle_message.assert_awaited_once_with(PHONE, "I'd like to book", sender_name="Ana")

    def test_gateway_payload_shape(self, client, machine):
        with patch("appointment_bot.api.routes.webhook.get_state_machine", return_value=machine):
            response = client.post(
                "/webhook/inbound",
                json={"phone": PHONE, "text": {"message": "Hi"}, "fromMe": False, "isGroup": False},
            )

        assert response.json()["status"] == "accepted"
        machine.handle_message.assert_awaited_once_with(PHONE, "Hi", sender_name=None)

    @pytest.mark.parametrize(
        "payload,reason",
        [
            ({"phone": PHONE, "text": "Hi", "fromMe": True}, "not a patient message"),
            ({"phone": PHONE, "text": "Hi", "isGroup": True}, "not a patient message"),
            ({"phone": "12345678", "text": "Hi"}, "invalid phone"),
            ({"phone": PHONE, "text": "   "}, "empty message"),
        ],
    )
    def test_ignored_messages(self, client, machine, payload, reason):
        with patch("appointment_bot.api.routes.webhook.get_state_machine", return_value=machine):
            response = client.post("/webhook/inbound", json=payload)

        assert response.status_code == 202
        assert response.json() == {"status": "ignored", "reason": reason}
        machine.handle_message.assert_not_called()

    def test_processing_errors_do_not_fail_the_request(self, client, machine):
        machine.handle_message.side_effect = RuntimeError("boom")

        with patch("appointment_bot.api.routes.webhook.get_state_machine", return_value=machine):
            response = client.post("/webhook/inbound", json={"phone": PHONE, "text": "Hi"})

        assert response.status_code == 202

    def test_validation_error(self, client):
        response = client.post("/webhook/inbound", json={"text": "Hi"})

        assert response.status_code == 422
        assert response.json()["error"] == "Validation error"


class TestConversations:
    """Test operator endpoints."""

    @pytest.fixture
    def store(self):
        mock = MagicMock()
        mock.load = AsyncMock(return_value=None)
        mock.reset = AsyncMock(return_value=False)
        return mock

    def test_get_conversation(self, client, store):
        session = ConversationSession(
            phone=PHONE,
            stage=ConversationStage.AWAITING_SLOT_CHOICE,
            updated_at=datetime(2025, 9, 1, 12, 0, tzinfo=timezone.utc),
        )
        session.add_message("patient", "Hi")
        store.load.return_value = session

        with patch("appointment_bot.api.routes.conversations.get_conversation_store", return_value=store):
            response = client.get("/conversations/11987654321")

        assert response.status_code == 200
        body = response.json()
        assert body["stage"] == "awaiting_slot_choice"
        assert body["history"] == [{"role": "patient", "content": "Hi"}]
        store.load.assert_awaited_once_with(PHONE)

    def test_get_missing_conversation(self, client, store):
        with patch("appointment_bot.api.routes.conversations.get_conversation_store", return_value=store):
            response = client.get(f"/conversations/{PHONE}")

        assert response.status_code == 404

    def test_reset_conversation(self, client, store):
        store.reset.return_value = True

        with patch("appointment_bot.api.routes.conversations.get_conversation_store", return_value=store):
            response = client.delete(f"/conversations/{PHONE}")

        assert response.status_code == 204
        store.reset.assert_awaited_once_with(PHONE)

    def test_reset_missing_conversation(self, client, store):
        with patch("appointment_bot.api.routes.conversations.get_conversation_store", return_value=store):
            response = client.delete(f"/conversations/{PHONE}")

        assert response.status_code == 404


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["timezone"] == "America/Sao_Paulo"

    def test_live(self, client):
        response = client.get("/health/live")

        assert response.json()["status"] == "alive"

    def test_ready_reports_missing_credentials(self, client):
        with patch("appointment_bot.api.routes.health.check_db_health", AsyncMock(return_value=True)), \
             patch("appointment_bot.api.routes.health.check_redis_health", AsyncMock(return_value=False)):
            response = client.get("/health/ready")

        assert response.status_code == 503
        checks = response.json()["checks"]
        assert checks["redis"] == "degraded"
        assert checks["calendar"] == "missing_credentials"
