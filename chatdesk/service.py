"""Composition root: runs one inbound message through the whole core.

    ingest (rate limit, persist, mode) ─▶ bot silent? ─▶ return
                                       └▶ history + knowledge ─▶ compaction
                                          ─▶ agent turn (tools) ─▶ persist reply
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from chatdesk.agent import AgentOrchestrator, compact_history, to_langchain
from chatdesk.conversation import ChannelMeta, ConversationStateMachine
from chatdesk.errors import InvalidSession, ModelInvocationFailure
from chatdesk.models import Channel, ConversationMode, MessageRole
from chatdesk.notifications import NotificationDispatcher
from chatdesk.prompts import get_system_prompt
from chatdesk.scheduler import Scheduler
from chatdesk.scoring import ScoringEngine
from chatdesk.services.calendar_client import get_calendar_client
from chatdesk.services.email_client import ResendEmailClient
from chatdesk.services.pubsub import build_pubsub
from chatdesk.store import Store
from chatdesk.tools.toolset import ToolContext, build_toolset

logger = logging.getLogger(__name__)

FALLBACK_REPLY = "Sorry, I encountered an error. Please try again."
RATE_LIMIT_REPLY = "You're sending messages too quickly. Please slow down."


@dataclass
class Reply:
    session_id: str
    mode: ConversationMode
    # None when a human owns the conversation or the bot is switched off
    text: str | None = None
    bot_enabled: bool = True
    degraded: bool = False


class SupportService:
    def __init__(
        self,
        store: Store,
        *,
        conversations: ConversationStateMachine,
        agent: AgentOrchestrator,
        scoring: ScoringEngine,
        scheduler: Scheduler,
        dispatcher: NotificationDispatcher,
    ):
        self.store = store
        self.conversations = conversations
        self.agent = agent
        self.scoring = scoring
        self.scheduler = scheduler
        self.dispatcher = dispatcher

    @classmethod
    def from_config(cls, store: Store) -> SupportService:
        """Wire every component from environment configuration."""
        pubsub = build_pubsub()
        dispatcher = NotificationDispatcher(store, email_client=ResendEmailClient(), pubsub=pubsub)
        return cls(
            store,
            conversations=ConversationStateMachine(store, pubsub=pubsub),
            agent=AgentOrchestrator(),
            scoring=ScoringEngine(store),
            scheduler=Scheduler(store, get_calendar_client(), dispatcher),
            dispatcher=dispatcher,
        )

    # ── Tenant resolution ────────────────────────────────────────────

    def web_meta(self, widget_id: str, visitor_ip: str | None = None) -> ChannelMeta:
        binding = self.store.get_binding_by_chatbot(widget_id)
        if binding is None:
            raise InvalidSession(f"Unknown widget {widget_id}")
        return ChannelMeta(
            channel=Channel.WEB,
            organization_id=binding.organization_id,
            chatbot_id=binding.chatbot_id,
            visitor_ip=visitor_ip,
            name=f"#Visitor({visitor_ip or 'unknown'})",
        )

    def whatsapp_meta(self, phone_number_id: str, customer_phone: str) -> ChannelMeta:
        binding = self.store.get_binding_by_phone_number_id(phone_number_id)
        if binding is None:
            raise InvalidSession(f"Unknown WhatsApp number {phone_number_id}")
        return ChannelMeta(
            channel=Channel.WHATSAPP,
            organization_id=binding.organization_id,
            chatbot_id=binding.chatbot_id,
            name=customer_phone,
            visitor_ip="WhatsApp User",
        )

    # ── Message handling ─────────────────────────────────────────────

    def handle_message(self, session_key: str, text: str, meta: ChannelMeta) -> Reply:
        """Process one inbound message and return the bot's reply, if any.

        Raises :class:`RateLimited` (nothing persisted).  Every other
        failure is absorbed into a fixed sentence.
        """
        ingest = self.conversations.ingest(session_key, text, meta)
        if not ingest.bot_should_reply:
            logger.info(
                "Bot silent for %s (mode=%s, bot_enabled=%s)",
                session_key, ingest.mode.value, ingest.bot_enabled,
            )
            return Reply(session_id=session_key, mode=ingest.mode, bot_enabled=ingest.bot_enabled)

        org_id = meta.organization_id
        try:
            stored = self.conversations.history(session_key)
        except Exception:
            logger.exception("Could not load history for %s", session_key)
            stored = []
        # The inbound write may have failed; the model still needs this turn
        if all(m.id != ingest.message.id for m in stored):
            stored = [*stored, ingest.message]
        history = to_langchain(stored)

        try:
            knowledge = [k.content for k in self.store.list_knowledge(org_id, limit=10)]
        except Exception:
            logger.exception("Knowledge lookup failed for org %s", org_id)
            knowledge = []

        history, summary = compact_history(history)

        try:
            org = self.store.get_organization(org_id)
        except Exception:
            logger.exception("Could not load organization %s", org_id)
            org = None
        prompt = get_system_prompt(org.name if org else "", knowledge, summary)

        try:
            lead_captured = self.store.has_lead(session_key)
        except Exception:
            logger.exception("Lead lookup failed for %s", session_key)
            lead_captured = False

        context = ToolContext(
            organization_id=org_id,
            conversation_id=session_key,
            store=self.store,
            scoring=self.scoring,
            scheduler=self.scheduler,
            dispatcher=self.dispatcher,
            conversations=self.conversations,
            customer_phone=meta.name if meta.channel is Channel.WHATSAPP else None,
            questions_asked=sum(
                1 for m in stored if m.role is MessageRole.USER and "?" in m.content
            ),
        )

        try:
            result = self.agent.run(prompt, history, build_toolset(context), lead_captured=lead_captured)
        except ModelInvocationFailure:
            return Reply(session_id=session_key, mode=ingest.mode, text=FALLBACK_REPLY, degraded=True)

        self.conversations.record_reply(session_key, result.text)

        # A tool may have escalated during the turn
        try:
            current = self.store.get_conversation(session_key)
        except Exception:
            logger.exception("Could not re-read conversation %s", session_key)
            current = None
        mode = current.mode if current else ingest.mode
        return Reply(session_id=session_key, mode=mode, text=result.text)
