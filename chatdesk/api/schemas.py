"""Pydantic schemas for the FastAPI endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from chatdesk.models import RuleUpdate, ScoringRule


class ChatRequest(BaseModel):
    """Incoming message from the web widget."""

    message: str = Field(..., min_length=1, max_length=2000, description="The visitor's message")
    session_id: str = Field(
        ...,
        min_length=1,
        max_length=100,
        description="Unique session identifier for conversation continuity",
    )
    widget_id: str = Field(..., min_length=1, max_length=100, description="Chatbot widget id")


class ChatResponse(BaseModel):
    reply: str | None = Field(None, description="The assistant's reply; null while a human is handling it")
    session_id: str
    mode: str = Field(..., description="bot_active or human_takeover")


class WhatsAppMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    sender: str = Field(..., alias="from", min_length=1)
    phone_number_id: str = Field(..., alias="phoneNumberId", min_length=1)
    content: str = Field(..., min_length=1, max_length=4096)


class WhatsAppWebhook(BaseModel):
    """Envelope posted by the WhatsApp provider."""

    model_config = ConfigDict(extra="ignore")

    event: str
    data: dict[str, Any] | None = None


class WhatsAppWebhookResponse(BaseModel):
    received: bool = True
    reply: str | None = None
    to: str | None = None
    phone_number_id: str | None = None


class TakeoverRequest(BaseModel):
    agent_id: str = Field(..., min_length=1, max_length=200)


class ConversationModeResponse(BaseModel):
    success: bool = True
    conversation_id: str
    mode: str
    human_agent_id: str | None = None


class BotSettingsRequest(BaseModel):
    bot_enabled: bool


class BotSettingsResponse(BaseModel):
    organization_id: str
    bot_enabled: bool


class WebhookTestRequest(BaseModel):
    url: str = Field(..., min_length=1, max_length=2048)


class WebhookTestResponse(BaseModel):
    success: bool
    status_code: int | None = None
    error: str | None = None


class ScoringRulesResponse(BaseModel):
    rules: list[ScoringRule]
    seeded: bool = Field(False, description="True when the default rules were created by this request")


class ScoringRulesUpdateRequest(BaseModel):
    rules: list[RuleUpdate] = Field(..., min_length=1)


class ScoringRulesUpdateResponse(BaseModel):
    success: bool = True
    updated: list[str]
    ignored: list[str] = Field(default_factory=list, description="Ids this organization does not own")


# Fields where an explicit null clears the stored value
_CLEARABLE_SETTINGS = {"notification_email", "notification_phone", "webhook_url"}


class NotificationSettingsUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    model_config = ConfigDict(extra="forbid")

    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    webhook_enabled: bool | None = None
    notification_email: str | None = Field(None, max_length=320)
    notification_phone: str | None = Field(None, max_length=40)
    webhook_url: str | None = Field(None, max_length=2048)
    webhook_template: Literal["generic", "slack"] | None = None

    def changes(self) -> dict[str, Any]:
        sent = self.model_dump(exclude_unset=True)
        return {k: v for k, v in sent.items() if v is not None or k in _CLEARABLE_SETTINGS}


class NotificationSettingsResponse(BaseModel):
    organization_id: str
    email_enabled: bool
    sms_enabled: bool
    webhook_enabled: bool
    notification_email: str | None = None
    notification_phone: str | None = None
    webhook_url: str | None = None
    webhook_template: str
    webhook_verification_status: str
    webhook_failure_count: int
    webhook_last_delivered_at: datetime | None = None


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "chatdesk"
