"""Persistence collaborator contract and an in-memory reference implementation.

The core never talks to a database directly.  Everything it needs is
expressed as the :class:`Store` interface below; production deployments
plug in a database-backed subclass, tests and the CLI use
:class:`InMemoryStore`.

Contract highlights
───────────────────
• ``insert_*`` methods raise :class:`DuplicateKeyError` when the key already
  exists.  Callers that race on first insert (conversation creation, rule
  seeding) treat that as success.
• ``open_escalation`` is atomic: the ticket row and the conversation's
  takeover fields are written together or not at all.
• Conversation updates are last-writer-wins; no optimistic locking.
• Any other backend failure surfaces as :class:`PersistenceFailure`.
"""

from __future__ import annotations

import abc
import logging
import threading
from datetime import UTC, datetime

from chatdesk.errors import DuplicateKeyError, PersistenceFailure
from chatdesk.models import (
    Appointment,
    CalendarCredential,
    ChannelBinding,
    Conversation,
    ConversationMode,
    EscalationTicket,
    KnowledgeSnippet,
    Lead,
    Message,
    NotificationChannelConfig,
    Organization,
    RuleUpdate,
    ScoringRule,
)

logger = logging.getLogger(__name__)


class Store(abc.ABC):
    """Everything the orchestration core requires from persistence."""

    # ── Tenancy ──────────────────────────────────────────────────────

    @abc.abstractmethod
    def get_organization(self, organization_id: str) -> Organization | None: ...

    @abc.abstractmethod
    def save_organization(self, organization: Organization) -> Organization: ...

    @abc.abstractmethod
    def get_binding_by_chatbot(self, chatbot_id: str) -> ChannelBinding | None: ...

    @abc.abstractmethod
    def get_binding_by_phone_number_id(self, phone_number_id: str) -> ChannelBinding | None: ...

    @abc.abstractmethod
    def save_binding(self, binding: ChannelBinding) -> ChannelBinding: ...

    # ── Conversations & messages ─────────────────────────────────────

    @abc.abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    @abc.abstractmethod
    def insert_conversation(self, conversation: Conversation) -> Conversation: ...

    @abc.abstractmethod
    def update_conversation(self, conversation: Conversation) -> Conversation: ...

    @abc.abstractmethod
    def append_message(self, message: Message) -> Message: ...

    @abc.abstractmethod
    def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        """Return messages ordered by ``created_at`` (most recent ``limit``)."""

    @abc.abstractmethod
    def open_escalation(self, ticket: EscalationTicket) -> Conversation:
        """Insert *ticket* and flip its conversation to human takeover atomically."""

    @abc.abstractmethod
    def list_tickets(self, conversation_id: str) -> list[EscalationTicket]: ...

    # ── Lead scoring ─────────────────────────────────────────────────

    @abc.abstractmethod
    def list_active_rules(self, organization_id: str) -> list[ScoringRule]: ...

    @abc.abstractmethod
    def list_rules(self, organization_id: str) -> list[ScoringRule]:
        """All of the organization's rules, active or not, in insertion order."""

    @abc.abstractmethod
    def update_rule(self, organization_id: str, update: RuleUpdate) -> ScoringRule | None:
        """Apply *update* to a rule owned by *organization_id*.

        Returns ``None`` when the organization has no rule with that id.
        """

    @abc.abstractmethod
    def insert_rules(self, rules: list[ScoringRule]) -> list[ScoringRule]:
        """Insert a batch of rules; all-or-nothing on duplicate rule names."""

    @abc.abstractmethod
    def insert_lead(self, lead: Lead) -> Lead: ...

    @abc.abstractmethod
    def has_lead(self, conversation_id: str) -> bool: ...

    # ── Appointments & calendar ──────────────────────────────────────

    @abc.abstractmethod
    def insert_appointment(self, appointment: Appointment) -> Appointment: ...

    @abc.abstractmethod
    def list_appointments(self, organization_id: str) -> list[Appointment]: ...

    @abc.abstractmethod
    def get_calendar_credential(self, organization_id: str) -> CalendarCredential | None: ...

    @abc.abstractmethod
    def save_calendar_credential(self, credential: CalendarCredential) -> CalendarCredential: ...

    # ── Notifications & knowledge ────────────────────────────────────

    @abc.abstractmethod
    def get_notification_config(self, organization_id: str) -> NotificationChannelConfig | None: ...

    @abc.abstractmethod
    def save_notification_config(self, config: NotificationChannelConfig) -> NotificationChannelConfig: ...

    @abc.abstractmethod
    def list_knowledge(self, organization_id: str, limit: int = 10) -> list[KnowledgeSnippet]: ...


class InMemoryStore(Store):
    """Thread-safe dict-backed store.

    Values are deep-copied on the way in and out so callers cannot mutate
    stored rows behind the store's back, mirroring a real database.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._organizations: dict[str, Organization] = {}
        self._bindings: dict[str, ChannelBinding] = {}
        self._conversations: dict[str, Conversation] = {}
        self._messages: dict[str, list[Message]] = {}
        self._tickets: dict[str, list[EscalationTicket]] = {}
        self._rules: dict[str, list[ScoringRule]] = {}
        self._leads: list[Lead] = []
        self._appointments: list[Appointment] = []
        self._credentials: dict[str, CalendarCredential] = {}
        self._notification_configs: dict[str, NotificationChannelConfig] = {}
        self._knowledge: dict[str, list[KnowledgeSnippet]] = {}

    # ── Tenancy ──────────────────────────────────────────────────────

    def get_organization(self, organization_id: str) -> Organization | None:
        with self._lock:
            org = self._organizations.get(organization_id)
            return org.model_copy(deep=True) if org else None

    def save_organization(self, organization: Organization) -> Organization:
        with self._lock:
            self._organizations[organization.id] = organization.model_copy(deep=True)
        return organization

    def get_binding_by_chatbot(self, chatbot_id: str) -> ChannelBinding | None:
        with self._lock:
            binding = self._bindings.get(chatbot_id)
            return binding.model_copy() if binding else None

    def get_binding_by_phone_number_id(self, phone_number_id: str) -> ChannelBinding | None:
        with self._lock:
            for binding in self._bindings.values():
                if binding.whatsapp_phone_number_id == phone_number_id:
                    return binding.model_copy()
        return None

    def save_binding(self, binding: ChannelBinding) -> ChannelBinding:
        with self._lock:
            self._bindings[binding.chatbot_id] = binding.model_copy()
        return binding

    # ── Conversations & messages ─────────────────────────────────────

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            conv = self._conversations.get(conversation_id)
            return conv.model_copy(deep=True) if conv else None

    def insert_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.id in self._conversations:
                raise DuplicateKeyError(f"Conversation {conversation.id} already exists")
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    def update_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            if conversation.id not in self._conversations:
                raise PersistenceFailure(f"Conversation {conversation.id} not found")
            self._conversations[conversation.id] = conversation.model_copy(deep=True)
        return conversation

    def append_message(self, message: Message) -> Message:
        with self._lock:
            self._messages.setdefault(message.conversation_id, []).append(
                message.model_copy(),
            )
        return message

    def list_messages(self, conversation_id: str, limit: int | None = None) -> list[Message]:
        with self._lock:
            rows = sorted(
                self._messages.get(conversation_id, []), key=lambda m: m.created_at,
            )
        if limit is not None:
            rows = rows[-limit:]
        return [m.model_copy() for m in rows]

    def open_escalation(self, ticket: EscalationTicket) -> Conversation:
        with self._lock:
            conv = self._conversations.get(ticket.conversation_id)
            if conv is None:
                raise PersistenceFailure(
                    f"Conversation {ticket.conversation_id} not found",
                )
            updated = conv.model_copy(
                update={
                    "mode": ConversationMode.HUMAN_TAKEOVER,
                    "takeover_started_at": conv.takeover_started_at or datetime.now(UTC),
                },
            )
            self._tickets.setdefault(ticket.conversation_id, []).append(ticket.model_copy())
            self._conversations[conv.id] = updated
            return updated.model_copy(deep=True)

    def list_tickets(self, conversation_id: str) -> list[EscalationTicket]:
        with self._lock:
            return [t.model_copy() for t in self._tickets.get(conversation_id, [])]

    # ── Lead scoring ─────────────────────────────────────────────────

    def list_active_rules(self, organization_id: str) -> list[ScoringRule]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in self._rules.get(organization_id, [])
                if r.is_active
            ]

    def list_rules(self, organization_id: str) -> list[ScoringRule]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._rules.get(organization_id, [])]

    def update_rule(self, organization_id: str, update: RuleUpdate) -> ScoringRule | None:
        changes = update.model_dump(exclude={"id"}, exclude_none=True)
        with self._lock:
            rules = self._rules.get(organization_id, [])
            for i, rule in enumerate(rules):
                if rule.id == update.id:
                    rules[i] = rule.model_copy(update=changes)
                    return rules[i].model_copy(deep=True)
        return None

    def insert_rules(self, rules: list[ScoringRule]) -> list[ScoringRule]:
        with self._lock:
            for rule in rules:
                existing = self._rules.get(rule.organization_id, [])
                if any(r.rule_name == rule.rule_name for r in existing):
                    raise DuplicateKeyError(
                        f"Rule {rule.rule_name!r} already exists for "
                        f"organization {rule.organization_id}"
                    )
            for rule in rules:
                self._rules.setdefault(rule.organization_id, []).append(
                    rule.model_copy(deep=True),
                )
        return rules

    def insert_lead(self, lead: Lead) -> Lead:
        with self._lock:
            self._leads.append(lead.model_copy())
        return lead

    def has_lead(self, conversation_id: str) -> bool:
        with self._lock:
            return any(lead.conversation_id == conversation_id for lead in self._leads)

    def list_leads(self, organization_id: str) -> list[Lead]:
        with self._lock:
            return [
                lead.model_copy()
                for lead in self._leads
                if lead.organization_id == organization_id
            ]

    # ── Appointments & calendar ──────────────────────────────────────

    def insert_appointment(self, appointment: Appointment) -> Appointment:
        with self._lock:
            self._appointments.append(appointment.model_copy())
        return appointment

    def list_appointments(self, organization_id: str) -> list[Appointment]:
        with self._lock:
            return [
                a.model_copy()
                for a in self._appointments
                if a.organization_id == organization_id
            ]

    def get_calendar_credential(self, organization_id: str) -> CalendarCredential | None:
        with self._lock:
            cred = self._credentials.get(organization_id)
            return cred.model_copy() if cred else None

    def save_calendar_credential(self, credential: CalendarCredential) -> CalendarCredential:
        with self._lock:
            self._credentials[credential.organization_id] = credential.model_copy()
        return credential

    # ── Notifications & knowledge ────────────────────────────────────

    def get_notification_config(self, organization_id: str) -> NotificationChannelConfig | None:
        with self._lock:
            cfg = self._notification_configs.get(organization_id)
            return cfg.model_copy() if cfg else None

    def save_notification_config(self, config: NotificationChannelConfig) -> NotificationChannelConfig:
        with self._lock:
            self._notification_configs[config.organization_id] = config.model_copy()
        return config

    def list_knowledge(self, organization_id: str, limit: int = 10) -> list[KnowledgeSnippet]:
        with self._lock:
            return [k.model_copy() for k in self._knowledge.get(organization_id, [])[:limit]]

    def add_knowledge(self, snippet: KnowledgeSnippet) -> KnowledgeSnippet:
        with self._lock:
            self._knowledge.setdefault(snippet.organization_id, []).append(snippet.model_copy())
        return snippet
