"""Domain models shared by the state machine, tools and persistence layer."""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Enums ────────────────────────────────────────────────────────────


class Channel(str, Enum):
    WEB = "web"
    WHATSAPP = "whatsapp"


class ConversationMode(str, Enum):
    """Per-conversation reply mode.

    The organization-wide "bot disabled" switch is deliberately *not* a
    member: it lives on :class:`Organization` so that toggling it never
    rewrites conversation state.
    """

    BOT_ACTIVE = "bot_active"
    HUMAN_TAKEOVER = "human_takeover"


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    ARCHIVED = "archived"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class RuleType(str, Enum):
    EMAIL_DOMAIN = "email_domain"
    PHONE_PROVIDED = "phone_provided"
    NOTES_LENGTH = "notes_length"
    KEYWORD_MATCH = "keyword_match"
    RESPONSE_TIME = "response_time"
    ENGAGEMENT = "engagement"


class ConditionType(str, Enum):
    IN_LIST = "in_list"
    NOT_IN_LIST = "not_in_list"
    EXISTS = "exists"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    EQUALS = "equals"
    CONTAINS_ANY = "contains_any"
    CONTAINS_ALL = "contains_all"


class LeadQuality(str, Enum):
    HOT = "hot"
    WARM = "warm"
    COLD = "cold"
    UNQUALIFIED = "unqualified"


class AppointmentStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class TicketStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class WebhookVerificationStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    FAILED = "failed"


class NotificationKind(str, Enum):
    HOT_LEAD = "hot_lead"
    WARM_LEAD = "warm_lead"
    ESCALATION = "escalation"
    APPOINTMENT_BOOKED = "appointment_booked"


# ── Tenancy ──────────────────────────────────────────────────────────


class Organization(BaseModel):
    id: str
    name: str = ""
    owner_email: str | None = None
    owner_phone: str | None = None
    timezone: str | None = None
    bot_enabled: bool = True


class ChannelBinding(BaseModel):
    """Maps a web widget id or WhatsApp phone-number id to its organization."""

    chatbot_id: str
    organization_id: str
    channel: Channel = Channel.WEB
    whatsapp_phone_number_id: str | None = None


class CalendarCredential(BaseModel):
    organization_id: str
    access_token: str | None = None
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None


# ── Conversations ────────────────────────────────────────────────────


class Conversation(BaseModel):
    id: str
    channel: Channel
    organization_id: str
    chatbot_id: str
    mode: ConversationMode = ConversationMode.BOT_ACTIVE
    human_agent_id: str | None = None
    takeover_started_at: datetime | None = None
    status: ConversationStatus = ConversationStatus.ACTIVE
    name: str | None = None
    visitor_ip: str | None = None
    created_at: datetime = Field(default_factory=_now)


class Message(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    role: MessageRole
    content: str
    created_at: datetime = Field(default_factory=_now)


class EscalationTicket(BaseModel):
    id: str = Field(default_factory=_new_id)
    conversation_id: str
    organization_id: str
    reason: str
    last_message: str
    status: TicketStatus = TicketStatus.OPEN
    created_at: datetime = Field(default_factory=_now)


# ── Lead scoring ─────────────────────────────────────────────────────


class TriggerCondition(BaseModel):
    """Predicate stored alongside a scoring rule.

    ``type`` selects the comparison; ``values`` holds list operands and
    ``value`` the scalar threshold.  Interpretation depends on the owning
    rule's ``rule_type``.
    """

    model_config = ConfigDict(extra="ignore")

    type: str
    field: str | None = None
    value: float | None = None
    values: list[str] = Field(default_factory=list)


class ScoringRule(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    rule_name: str
    # Kept as a plain string: rows written by other tools may carry types
    # this engine does not understand, which must evaluate to "no match".
    rule_type: str
    trigger_condition: TriggerCondition
    score_change: int
    is_active: bool = True


class RuleUpdate(BaseModel):
    """Owner-editable fields of one scoring rule; unset fields stay as they are."""

    id: str
    score_change: int | None = Field(default=None, ge=-100, le=100)
    is_active: bool | None = None


class ScoringFactors(BaseModel):
    email_domain: str | None = None
    phone_provided: bool = False
    notes: str | None = None
    keywords_mentioned: list[str] = Field(default_factory=list)
    response_time_seconds: float | None = None
    num_questions_asked: int | None = None


class ScoreResult(BaseModel):
    score: int
    quality: LeadQuality
    reasoning: list[str] = Field(default_factory=list)
    applied_rules: list[str] = Field(default_factory=list)


class Lead(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    conversation_id: str | None = None
    first_name: str
    last_name: str = ""
    email: str
    phone: str | None = None
    notes: str = ""
    score: int = 0
    quality: LeadQuality = LeadQuality.UNQUALIFIED
    status: str = "new"
    created_at: datetime = Field(default_factory=_now)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


# ── Appointments ─────────────────────────────────────────────────────


class Appointment(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    service_type: str
    scheduled_at: datetime
    duration_minutes: int = 30
    external_event_id: str | None = None
    external_meeting_link: str | None = None
    status: AppointmentStatus = AppointmentStatus.CONFIRMED
    notes: str | None = None
    created_at: datetime = Field(default_factory=_now)


# ── Notifications ────────────────────────────────────────────────────


class NotificationChannelConfig(BaseModel):
    organization_id: str
    email_enabled: bool = True
    sms_enabled: bool = False
    webhook_enabled: bool = False
    notification_email: str | None = None
    notification_phone: str | None = None
    webhook_url: str | None = None
    webhook_template: str = "generic"
    webhook_verification_status: WebhookVerificationStatus = WebhookVerificationStatus.PENDING
    webhook_failure_count: int = 0
    webhook_last_delivered_at: datetime | None = None


class KnowledgeSnippet(BaseModel):
    id: str = Field(default_factory=_new_id)
    organization_id: str
    content: str


def tool_failure(message: str, error_type: str, **extra: Any) -> dict[str, Any]:
    """Build the structured failure dict that tools hand back to the model."""
    return {"success": False, "message": message, "error_type": error_type, **extra}
