"""A ready-made tenant for local development against :class:`InMemoryStore`."""

from __future__ import annotations

import os

from chatdesk.models import (
    Channel,
    ChannelBinding,
    KnowledgeSnippet,
    NotificationChannelConfig,
    Organization,
)
from chatdesk.store import InMemoryStore

DEMO_ORG_ID = "demo-org"
DEMO_WIDGET_ID = "demo-widget"
DEMO_WHATSAPP_NUMBER_ID = "demo-whatsapp"

_KNOWLEDGE = [
    "Acme Analytics sells a dashboarding product for small e-commerce teams.",
    "Plans: Starter $49/month (3 seats), Growth $199/month (10 seats), Enterprise on request.",
    "Every plan includes a 14-day free trial. No credit card is needed to start.",
    "Support hours are Monday to Friday, 09:00-17:00 Europe/Dublin.",
]


def seed_demo_tenant(store: InMemoryStore) -> Organization:
    """Create the demo organization with web and WhatsApp bindings and a few FAQs."""
    org = store.save_organization(
        Organization(
            id=DEMO_ORG_ID,
            name="Acme Analytics",
            owner_email=os.getenv("DEMO_OWNER_EMAIL") or None,
            timezone="Europe/Dublin",
        )
    )
    store.save_binding(ChannelBinding(chatbot_id=DEMO_WIDGET_ID, organization_id=org.id))
    store.save_binding(
        ChannelBinding(
            chatbot_id=f"{DEMO_WIDGET_ID}-wa",
            organization_id=org.id,
            channel=Channel.WHATSAPP,
            whatsapp_phone_number_id=DEMO_WHATSAPP_NUMBER_ID,
        )
    )
    store.save_notification_config(NotificationChannelConfig(organization_id=org.id))
    if not store.list_knowledge(org.id):
        for content in _KNOWLEDGE:
            store.add_knowledge(KnowledgeSnippet(organization_id=org.id, content=content))
    return org
