"""Tests for the FastAPI endpoints."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from chatdesk.agent import AgentResult
from chatdesk.conversation import ConversationStateMachine
from chatdesk.errors import ModelInvocationFailure
from chatdesk.models import Organization
from chatdesk.notifications import NotificationDispatcher
from chatdesk.scoring import ScoringEngine
from chatdesk.server import app
from chatdesk.service import FALLBACK_REPLY, RATE_LIMIT_REPLY, SupportService
from chatdesk.services.rate_limiter import FixedWindowRateLimiter
from chatdesk.services.webhooks import WebhookResult

ORG_ID = "org-1"
WIDGET_ID = "widget-1"
PHONE_NUMBER_ID = "pn-1"


@pytest.fixture
def mock_agent():
    agent = MagicMock()
    agent.run.return_value = AgentResult(text="Hello! I'm Fiona. How can I help?", steps=1)
    return agent


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def service(store, mock_agent, dispatcher):
    """Real service over the in-memory store with the model swapped out."""
    svc = SupportService(
        store,
        conversations=ConversationStateMachine(
            store, pubsub=MagicMock(), rate_limiter=FixedWindowRateLimiter(3, 60),
        ),
        agent=mock_agent,
        scoring=MagicMock(),
        scheduler=MagicMock(),
        dispatcher=dispatcher,
    )
    # Attach to app state the same way the lifespan does
    app.state.service = svc
    yield svc
    app.state.service = None


@pytest.fixture
def client(service):
    return TestClient(app)


def _chat(client, message="Hello!", session_id="sess-1", widget_id=WIDGET_ID):
    return client.post(
        "/api/chat",
        json={"message": message, "session_id": session_id, "widget_id": widget_id},
    )


class TestHealthEndpoint:
    def test_health_returns_ok(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "chatdesk"}

    def test_root(self, client):
        assert client.get("/").json()["service"] == "chatdesk"


class TestChatEndpoint:
    def test_chat_returns_response(self, client):
        response = _chat(client)
        assert response.status_code == 200
        data = response.json()
        assert data == {
            "reply": "Hello! I'm Fiona. How can I help?",
            "session_id": "sess-1",
            "mode": "bot_active",
        }

    def test_forwarded_ip_names_the_visitor(self, client, store):
        client.post(
            "/api/chat",
            json={"message": "Hi", "session_id": "sess-9", "widget_id": WIDGET_ID},
            headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
        )
        conv = store.get_conversation("sess-9")
        assert conv.visitor_ip == "198.51.100.4"

    def test_unknown_widget_is_404(self, client):
        response = _chat(client, widget_id="nope")
        assert response.status_code == 404
        assert response.json()["detail"] == "Unknown chat widget."

    def test_rate_limit_is_429_with_retry_after(self, client):
        for _ in range(3):
            assert _chat(client).status_code == 200
        response = _chat(client)
        assert response.status_code == 429
        assert response.json()["detail"] == RATE_LIMIT_REPLY
        assert int(response.headers["Retry-After"]) >= 1

    def test_human_takeover_returns_null_reply(self, client, service, mock_agent):
        _chat(client)
        service.conversations.assign("sess-1", "agent-7")

        data = _chat(client, "Still there?").json()

        assert data["reply"] is None
        assert data["mode"] == "human_takeover"
        assert mock_agent.run.call_count == 1

    def test_model_failure_returns_fallback(self, client, mock_agent):
        mock_agent.run.side_effect = ModelInvocationFailure("down")
        response = _chat(client)
        assert response.status_code == 200
        assert response.json()["reply"] == FALLBACK_REPLY

    def test_unexpected_error_is_500_without_details(self, client, service):
        service.conversations.ingest = MagicMock(side_effect=RuntimeError("secret stack"))
        response = _chat(client)
        assert response.status_code == 500
        assert "secret" not in response.json()["detail"]

    def test_empty_message_rejected(self, client):
        assert _chat(client, message="").status_code == 422

    def test_request_id_is_echoed(self, client):
        response = client.post(
            "/api/chat",
            json={"message": "Hi", "session_id": "s", "widget_id": WIDGET_ID},
            headers={"X-Request-ID": "req-123"},
        )
        assert response.headers["X-Request-ID"] == "req-123"

    def test_service_not_ready_is_503(self, client):
        app.state.service = None
        assert _chat(client).status_code == 503


class TestWhatsAppWebhook:
    def _post(self, client, event="whatsapp.message.created", data=None):
        if data is None:
            data = {"from": "+353871234567", "phoneNumberId": PHONE_NUMBER_ID, "content": "Hi"}
        return client.post("/api/webhooks/whatsapp", json={"event": event, "data": data})

    def test_message_gets_reply(self, client, store):
        response = self._post(client)
        assert response.status_code == 200
        data = response.json()
        assert data["received"] is True
        assert data["to"] == "+353871234567"
        assert data["reply"].startswith("Hello!")
        assert store.get_conversation("+353871234567").channel.value == "whatsapp"

    def test_other_events_are_acknowledged(self, client, mock_agent):
        response = self._post(client, event="whatsapp.message.read", data={})
        assert response.json() == {"received": True, "reply": None, "to": None, "phone_number_id": None}
        mock_agent.run.assert_not_called()

    def test_unknown_number_is_404(self, client):
        response = self._post(
            client, data={"from": "+1555", "phoneNumberId": "unknown", "content": "Hi"},
        )
        assert response.status_code == 404

    def test_malformed_message_is_422(self, client):
        response = self._post(client, data={"from": "+1555"})
        assert response.status_code == 422


class TestTakeover:
    def test_takeover_and_release(self, client):
        _chat(client)

        response = client.post("/api/conversations/sess-1/takeover", json={"agent_id": "agent-7"})
        assert response.status_code == 200
        assert response.json()["mode"] == "human_takeover"
        assert response.json()["human_agent_id"] == "agent-7"

        response = client.delete("/api/conversations/sess-1/takeover")
        assert response.status_code == 200
        assert response.json()["mode"] == "bot_active"

    def test_unknown_conversation_is_404(self, client):
        response = client.post("/api/conversations/ghost/takeover", json={"agent_id": "a"})
        assert response.status_code == 404
        assert client.delete("/api/conversations/ghost/takeover").status_code == 404


class TestBotSettings:
    def test_disable_bot(self, client, store):
        response = client.patch(f"/api/organizations/{ORG_ID}/bot-settings", json={"bot_enabled": False})
        assert response.json() == {"organization_id": ORG_ID, "bot_enabled": False}
        assert store.get_organization(ORG_ID).bot_enabled is False

    def test_unknown_org_is_404(self, client):
        response = client.patch("/api/organizations/nope/bot-settings", json={"bot_enabled": True})
        assert response.status_code == 404


class TestWebhookTest:
    def test_http_url_is_400(self, client, dispatcher):
        response = client.post(
            f"/api/organizations/{ORG_ID}/notifications/webhook-test",
            json={"url": "http://hooks.example.com/x"},
        )
        assert response.status_code == 400
        dispatcher.test_webhook.assert_not_called()

    def test_delivery_result_is_returned(self, client, dispatcher):
        dispatcher.test_webhook.return_value = WebhookResult(success=False, status_code=500, error="HTTP 500")
        response = client.post(
            f"/api/organizations/{ORG_ID}/notifications/webhook-test",
            json={"url": "https://hooks.example.com/x"},
        )
        assert response.status_code == 200
        assert response.json() == {"success": False, "status_code": 500, "error": "HTTP 500"}


@pytest.fixture
def owner_client(client, service, store):
    """Client whose service has real scoring and notification collaborators."""
    service.scoring = ScoringEngine(store)
    service.dispatcher = NotificationDispatcher(
        store, email_client=MagicMock(), pubsub=MagicMock(), webhook_sender=MagicMock(),
    )
    return client


class TestScoringRules:
    URL = f"/api/organizations/{ORG_ID}/scoring-rules"

    def test_first_read_seeds_defaults(self, owner_client):
        first = owner_client.get(self.URL).json()
        assert first["seeded"] is True
        assert len(first["rules"]) == 7

        second = owner_client.get(self.URL).json()
        assert second["seeded"] is False
        assert [r["id"] for r in second["rules"]] == [r["id"] for r in first["rules"]]

    def test_update_only_touches_own_rules(self, owner_client, store):
        mine = owner_client.get(self.URL).json()["rules"][0]
        store.save_organization(Organization(id="org-2", name="Other"))
        theirs = owner_client.get("/api/organizations/org-2/scoring-rules").json()["rules"][0]

        response = owner_client.put(
            self.URL,
            json={"rules": [
                {"id": mine["id"], "score_change": 40, "is_active": False},
                {"id": theirs["id"], "score_change": 99},
            ]},
        )

        assert response.status_code == 200
        assert response.json() == {"success": True, "updated": [mine["id"]], "ignored": [theirs["id"]]}
        stored = next(r for r in store.list_rules(ORG_ID) if r.id == mine["id"])
        assert (stored.score_change, stored.is_active) == (40, False)
        assert store.list_rules("org-2")[0].score_change == theirs["score_change"]

    def test_out_of_range_score_is_422(self, owner_client):
        response = owner_client.put(self.URL, json={"rules": [{"id": "r1", "score_change": 500}]})
        assert response.status_code == 422

    def test_empty_update_is_422(self, owner_client):
        assert owner_client.put(self.URL, json={"rules": []}).status_code == 422

    def test_unknown_org_is_404(self, owner_client):
        assert owner_client.get("/api/organizations/nope/scoring-rules").status_code == 404
        response = owner_client.put(
            "/api/organizations/nope/scoring-rules", json={"rules": [{"id": "r1", "is_active": False}]},
        )
        assert response.status_code == 404

    def test_store_error_is_500_without_details(self, owner_client, store):
        store.list_rules = MagicMock(side_effect=RuntimeError("secret dsn"))
        response = owner_client.get(self.URL)
        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to load scoring rules."


class TestNotificationSettings:
    URL = f"/api/organizations/{ORG_ID}/notifications"

    def test_defaults_before_anything_is_saved(self, owner_client):
        data = owner_client.get(self.URL).json()
        assert data["email_enabled"] is True
        assert data["sms_enabled"] is False
        assert data["webhook_enabled"] is False
        assert data["webhook_verification_status"] == "pending"

    def test_save_webhook_and_toggles(self, owner_client, store):
        response = owner_client.patch(
            self.URL,
            json={"webhook_url": "https://hooks.example.com/x", "webhook_enabled": True, "sms_enabled": True},
        )

        assert response.status_code == 200
        assert response.json()["webhook_url"] == "https://hooks.example.com/x"
        config = store.get_notification_config(ORG_ID)
        assert config.webhook_enabled is True
        assert config.sms_enabled is True
        assert config.email_enabled is True

    def test_insecure_url_is_400_and_not_saved(self, owner_client, store):
        response = owner_client.patch(self.URL, json={"webhook_url": "http://hooks.example.com/x"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Webhook URL must use HTTPS"
        assert store.get_notification_config(ORG_ID) is None

    def test_enabling_webhook_without_url_is_400(self, owner_client):
        assert owner_client.patch(self.URL, json={"webhook_enabled": True}).status_code == 400

    def test_unknown_field_is_422(self, owner_client):
        assert owner_client.patch(self.URL, json={"webhook_failure_count": 0}).status_code == 422

    def test_null_toggle_is_ignored(self, owner_client, store):
        owner_client.patch(self.URL, json={"email_enabled": None, "notification_email": "ops@acme.com"})
        config = store.get_notification_config(ORG_ID)
        assert config.email_enabled is True
        assert config.notification_email == "ops@acme.com"

    def test_unknown_org_is_404(self, owner_client):
        assert owner_client.get("/api/organizations/nope/notifications").status_code == 404
        response = owner_client.patch("/api/organizations/nope/notifications", json={"sms_enabled": True})
        assert response.status_code == 404


class TestUnexpectedErrors:
    def test_bot_settings_store_error_is_500(self, client, service):
        service.conversations.set_bot_enabled = MagicMock(side_effect=RuntimeError("secret"))
        response = client.patch(f"/api/organizations/{ORG_ID}/bot-settings", json={"bot_enabled": False})
        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to update bot settings."

    def test_webhook_test_crash_is_500(self, client, dispatcher):
        dispatcher.test_webhook.side_effect = RuntimeError("secret")
        response = client.post(
            f"/api/organizations/{ORG_ID}/notifications/webhook-test",
            json={"url": "https://hooks.example.com/x"},
        )
        assert response.status_code == 500
        assert response.json()["detail"] == "Failed to send the test event."
