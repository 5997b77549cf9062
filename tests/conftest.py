"""Shared test fixtures for the chatdesk test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ["PUBSUB_EMIT_URL"] = ""
    os.environ["RESEND_API_KEY"] = ""
    os.environ["WEBHOOK_SECRET"] = "test-webhook-secret"


ORG_ID = "org-1"
WIDGET_ID = "widget-1"
PHONE_NUMBER_ID = "pn-1"


@pytest.fixture
def store():
    """In-memory store with one organization and its channel bindings."""
    from chatdesk.models import Channel, ChannelBinding, Organization
    from chatdesk.store import InMemoryStore

    s = InMemoryStore()
    s.save_organization(
        Organization(id=ORG_ID, name="Acme", owner_email="owner@acme.com", timezone="Europe/Dublin")
    )
    s.save_binding(ChannelBinding(chatbot_id=WIDGET_ID, organization_id=ORG_ID))
    s.save_binding(
        ChannelBinding(
            chatbot_id="wa-1",
            organization_id=ORG_ID,
            channel=Channel.WHATSAPP,
            whatsapp_phone_number_id=PHONE_NUMBER_ID,
        )
    )
    return s


@pytest.fixture
def mock_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
