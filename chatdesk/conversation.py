"""Conversation mode state machine.

::

    bot_active ──escalate/assign──▶ human_takeover ──release──▶ bot_active

The organization-level ``bot_enabled`` flag is orthogonal: when it is off
the bot stays silent for every conversation, but no conversation's mode
is touched.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from chatdesk.config import RATE_LIMIT_MAX_MESSAGES, RATE_LIMIT_WINDOW_SECONDS
from chatdesk.errors import (
    DuplicateKeyError,
    InvalidSession,
    OrgNotFound,
    PersistenceFailure,
    RateLimited,
)
from chatdesk.models import (
    Channel,
    Conversation,
    ConversationMode,
    EscalationTicket,
    Message,
    MessageRole,
    Organization,
)
from chatdesk.services.metrics import metrics
from chatdesk.services.pubsub import NullPubSub, PubSub, escalation_event
from chatdesk.services.rate_limiter import FixedWindowRateLimiter
from chatdesk.store import Store

logger = logging.getLogger(__name__)


class ChannelMeta(BaseModel):
    """Transport-side facts about an inbound message."""

    channel: Channel
    organization_id: str
    chatbot_id: str
    name: str | None = None
    visitor_ip: str | None = None


class IngestResult(BaseModel):
    mode: ConversationMode
    message: Message
    conversation: Conversation
    bot_enabled: bool = True

    @property
    def bot_should_reply(self) -> bool:
        return self.bot_enabled and self.mode is ConversationMode.BOT_ACTIVE


class ConversationStateMachine:
    def __init__(
        self,
        store: Store,
        *,
        pubsub: PubSub | None = None,
        rate_limiter: FixedWindowRateLimiter | None = None,
    ):
        self._store = store
        self._pubsub = pubsub or NullPubSub()
        self._limiter = rate_limiter or FixedWindowRateLimiter(
            RATE_LIMIT_MAX_MESSAGES, RATE_LIMIT_WINDOW_SECONDS,
        )

    # ── Inbound ──────────────────────────────────────────────────────

    def ingest(self, session_key: str, text: str, meta: ChannelMeta) -> IngestResult:
        """Rate-limit, persist and classify one inbound message.

        Raises :class:`RateLimited` before anything is written.  Other
        persistence problems are logged and the message is still handed
        back so the caller can answer.
        """
        if not self._limiter.hit(session_key):
            metrics.record_event("RateLimited", channel=meta.channel.value)
            raise RateLimited(session_key, self._limiter.retry_after(session_key))

        conversation = self._ensure_conversation(session_key, meta)

        message = Message(conversation_id=session_key, role=MessageRole.USER, content=text)
        try:
            self._store.append_message(message)
        except Exception:
            logger.exception("Could not persist inbound message for %s", session_key)

        # Mode may have been flipped by a human while we were writing
        try:
            current = self._store.get_conversation(session_key) or conversation
        except Exception:
            logger.exception("Could not re-read conversation %s", session_key)
            current = conversation

        return IngestResult(
            mode=current.mode,
            message=message,
            conversation=current,
            bot_enabled=self._bot_enabled(meta.organization_id),
        )

    def _ensure_conversation(self, session_key: str, meta: ChannelMeta) -> Conversation:
        fresh = Conversation(
            id=session_key,
            channel=meta.channel,
            organization_id=meta.organization_id,
            chatbot_id=meta.chatbot_id,
            name=meta.name or session_key,
            visitor_ip=meta.visitor_ip,
        )
        try:
            existing = self._store.get_conversation(session_key)
            if existing is not None:
                return existing
            return self._store.insert_conversation(fresh)
        except DuplicateKeyError:
            # Lost the first-message race; the other insert is as good as ours
            logger.debug("Conversation %s created concurrently", session_key)
            return self._store.get_conversation(session_key) or fresh
        except Exception:
            logger.exception("Could not persist conversation %s", session_key)
            return fresh

    def _bot_enabled(self, organization_id: str) -> bool:
        try:
            org = self._store.get_organization(organization_id)
        except Exception:
            logger.exception("Could not read bot settings for org %s", organization_id)
            return True
        return org.bot_enabled if org else True

    def record_reply(self, conversation_id: str, text: str) -> Message | None:
        message = Message(conversation_id=conversation_id, role=MessageRole.ASSISTANT, content=text)
        try:
            return self._store.append_message(message)
        except Exception:
            logger.exception("Could not persist reply for %s", conversation_id)
            return None

    # ── Mode transitions ─────────────────────────────────────────────

    def _conversation(self, conversation_id: str) -> Conversation:
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise InvalidSession(f"Conversation {conversation_id} not found")
        return conversation

    def escalate(self, conversation_id: str, reason: str, last_message: str) -> EscalationTicket:
        """Open a ticket and hand the conversation to humans in one write.

        Escalating an already escalated conversation opens another ticket.
        """
        try:
            conversation = self._conversation(conversation_id)
            ticket = EscalationTicket(
                conversation_id=conversation_id,
                organization_id=conversation.organization_id,
                reason=reason,
                last_message=last_message,
            )
            conversation = self._store.open_escalation(ticket)
        except PersistenceFailure:
            raise
        except Exception as exc:
            raise PersistenceFailure(f"Escalation of {conversation_id} failed: {exc}") from exc

        logger.info("Conversation %s escalated: %s", conversation_id, reason)
        self._emit_mode_change(conversation, reason=reason, ticket_id=ticket.id)
        return ticket

    def assign(self, conversation_id: str, agent_id: str) -> Conversation:
        conversation = self._conversation(conversation_id)
        conversation.mode = ConversationMode.HUMAN_TAKEOVER
        conversation.human_agent_id = agent_id
        conversation.takeover_started_at = datetime.now(UTC)
        conversation = self._store.update_conversation(conversation)
        logger.info("Agent %s took over conversation %s", agent_id, conversation_id)
        self._emit_mode_change(conversation)
        return conversation

    def release(self, conversation_id: str) -> None:
        conversation = self._conversation(conversation_id)
        conversation.mode = ConversationMode.BOT_ACTIVE
        conversation.human_agent_id = None
        conversation.takeover_started_at = None
        conversation = self._store.update_conversation(conversation)
        logger.info("Conversation %s handed back to the bot", conversation_id)
        self._emit_mode_change(conversation)

    def set_bot_enabled(self, organization_id: str, enabled: bool) -> Organization:
        org = self._store.get_organization(organization_id)
        if org is None:
            raise OrgNotFound(f"Organization {organization_id} not found")
        org.bot_enabled = enabled
        org = self._store.save_organization(org)
        logger.info("Bot %s for org %s", "enabled" if enabled else "disabled", organization_id)
        return org

    def history(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        return self._store.list_messages(conversation_id, limit)

    def _emit_mode_change(self, conversation: Conversation, **extra: Any) -> None:
        payload = {
            "conversation_id": conversation.id,
            "mode": conversation.mode.value,
            "human_agent_id": conversation.human_agent_id,
            **extra,
        }
        try:
            self._pubsub.emit(escalation_event(conversation.organization_id), payload)
        except Exception:
            logger.warning(
                "Mode-change event for %s not delivered", conversation.id, exc_info=True,
            )
