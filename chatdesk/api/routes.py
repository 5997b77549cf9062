"""FastAPI route definitions for the support core."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from chatdesk.api.schemas import (
    BotSettingsRequest,
    BotSettingsResponse,
    ChatRequest,
    ChatResponse,
    ConversationModeResponse,
    HealthResponse,
    NotificationSettingsResponse,
    NotificationSettingsUpdate,
    ScoringRulesResponse,
    ScoringRulesUpdateRequest,
    ScoringRulesUpdateResponse,
    TakeoverRequest,
    WebhookTestRequest,
    WebhookTestResponse,
    WhatsAppMessage,
    WhatsAppWebhook,
    WhatsAppWebhookResponse,
)
from chatdesk.errors import InvalidSession, InvalidSettings, OrgNotFound, RateLimited
from chatdesk.models import ConversationMode
from chatdesk.service import RATE_LIMIT_REPLY, SupportService
from chatdesk.services.webhooks import validate_webhook_url

logger = logging.getLogger(__name__)

router = APIRouter()

WHATSAPP_MESSAGE_EVENT = "whatsapp.message.created"
INTERNAL_ERROR = "An internal error occurred. Please try again."


def _get_service(request: Request) -> SupportService:
    """Retrieve the service built during the FastAPI lifespan."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(
            status_code=503,
            detail="The assistant is still starting up. Please try again in a moment.",
        )
    return service


def _rate_limited(exc: RateLimited) -> HTTPException:
    return HTTPException(
        status_code=429,
        detail=RATE_LIMIT_REPLY,
        headers={"Retry-After": str(max(1, int(exc.retry_after)))},
    )


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Handle one web-widget message.

    ``handle_message`` blocks on the model and calendar APIs, so it runs
    in the default thread pool via ``asyncio.to_thread``.
    """
    service = _get_service(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    try:
        meta = service.web_meta(request.widget_id, _client_ip(http_request))
        reply = await asyncio.to_thread(
            service.handle_message, request.session_id, request.message, meta,
        )
    except InvalidSession as e:
        raise HTTPException(status_code=404, detail="Unknown chat widget.") from e
    except RateLimited as e:
        raise _rate_limited(e) from e
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR) from e

    return ChatResponse(reply=reply.text, session_id=reply.session_id, mode=reply.mode.value)


@router.post("/webhooks/whatsapp", response_model=WhatsAppWebhookResponse)
async def whatsapp_webhook(payload: WhatsAppWebhook, http_request: Request):
    """Inbound WhatsApp events.  Anything other than a new message is acknowledged."""
    if payload.event != WHATSAPP_MESSAGE_EVENT:
        return WhatsAppWebhookResponse()

    service = _get_service(http_request)
    request_id = getattr(http_request.state, "request_id", "?")
    try:
        message = WhatsAppMessage.model_validate(payload.data or {})
    except ValidationError as e:
        raise HTTPException(status_code=422, detail="Malformed WhatsApp message.") from e

    try:
        meta = service.whatsapp_meta(message.phone_number_id, message.sender)
        reply = await asyncio.to_thread(
            service.handle_message, message.sender, message.content, meta,
        )
    except InvalidSession as e:
        logger.error("[%s] Tenant not found for phoneNumberId %s", request_id, message.phone_number_id)
        raise HTTPException(status_code=404, detail="Tenant not found.") from e
    except RateLimited as e:
        raise _rate_limited(e) from e
    except Exception as e:
        logger.exception("[%s] Error processing WhatsApp message", request_id)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR) from e

    return WhatsAppWebhookResponse(
        reply=reply.text, to=message.sender, phone_number_id=message.phone_number_id,
    )


@router.post("/conversations/{conversation_id}/takeover", response_model=ConversationModeResponse)
async def take_over(conversation_id: str, body: TakeoverRequest, http_request: Request):
    service = _get_service(http_request)
    try:
        conversation = await asyncio.to_thread(
            service.conversations.assign, conversation_id, body.agent_id,
        )
    except InvalidSession as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except Exception as e:
        logger.exception("Takeover of %s failed", conversation_id)
        raise HTTPException(status_code=500, detail="Failed to enable handoff.") from e

    return ConversationModeResponse(
        conversation_id=conversation.id,
        mode=conversation.mode.value,
        human_agent_id=conversation.human_agent_id,
    )


@router.delete("/conversations/{conversation_id}/takeover", response_model=ConversationModeResponse)
async def release(conversation_id: str, http_request: Request):
    service = _get_service(http_request)
    try:
        await asyncio.to_thread(service.conversations.release, conversation_id)
    except InvalidSession as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except Exception as e:
        logger.exception("Release of %s failed", conversation_id)
        raise HTTPException(status_code=500, detail="Failed to release conversation.") from e

    return ConversationModeResponse(
        conversation_id=conversation_id, mode=ConversationMode.BOT_ACTIVE.value,
    )


@router.patch("/organizations/{organization_id}/bot-settings", response_model=BotSettingsResponse)
async def update_bot_settings(organization_id: str, body: BotSettingsRequest, http_request: Request):
    service = _get_service(http_request)
    try:
        org = await asyncio.to_thread(
            service.conversations.set_bot_enabled, organization_id, body.bot_enabled,
        )
    except OrgNotFound as e:
        raise HTTPException(status_code=404, detail="Organization not found.") from e
    except Exception as e:
        logger.exception("Bot settings update for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to update bot settings.") from e

    return BotSettingsResponse(organization_id=org.id, bot_enabled=org.bot_enabled)


@router.post(
    "/organizations/{organization_id}/notifications/webhook-test",
    response_model=WebhookTestResponse,
)
async def test_webhook(organization_id: str, body: WebhookTestRequest, http_request: Request):
    """Send a sample event to a webhook URL before saving it."""
    service = _get_service(http_request)
    problem = validate_webhook_url(body.url)
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    try:
        result = await asyncio.to_thread(service.dispatcher.test_webhook, organization_id, body.url)
    except Exception as e:
        logger.exception("Webhook test for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to send the test event.") from e
    return WebhookTestResponse(
        success=result.success, status_code=result.status_code, error=result.error,
    )


# ── Owner configuration ──────────────────────────────────────────────


def _require_org(service: SupportService, organization_id: str) -> None:
    if service.store.get_organization(organization_id) is None:
        raise OrgNotFound(f"Organization {organization_id} not found")


@router.get("/organizations/{organization_id}/scoring-rules", response_model=ScoringRulesResponse)
async def list_scoring_rules(organization_id: str, http_request: Request):
    """List the organization's scoring rules, seeding the defaults on first use."""
    service = _get_service(http_request)

    def _load():
        _require_org(service, organization_id)
        return service.scoring.rules_for(organization_id)

    try:
        rules, seeded = await asyncio.to_thread(_load)
    except OrgNotFound as e:
        raise HTTPException(status_code=404, detail="Organization not found.") from e
    except Exception as e:
        logger.exception("Loading scoring rules for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to load scoring rules.") from e

    return ScoringRulesResponse(rules=rules, seeded=seeded)


@router.put("/organizations/{organization_id}/scoring-rules", response_model=ScoringRulesUpdateResponse)
async def update_scoring_rules(organization_id: str, body: ScoringRulesUpdateRequest, http_request: Request):
    """Change point values or switch rules on and off."""
    service = _get_service(http_request)

    def _apply():
        _require_org(service, organization_id)
        return service.scoring.update_rules(organization_id, body.rules)

    try:
        updated, ignored = await asyncio.to_thread(_apply)
    except OrgNotFound as e:
        raise HTTPException(status_code=404, detail="Organization not found.") from e
    except Exception as e:
        logger.exception("Updating scoring rules for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to update scoring rules.") from e

    return ScoringRulesUpdateResponse(updated=updated, ignored=ignored)


@router.get("/organizations/{organization_id}/notifications", response_model=NotificationSettingsResponse)
async def get_notification_settings(organization_id: str, http_request: Request):
    service = _get_service(http_request)

    def _load():
        _require_org(service, organization_id)
        return service.dispatcher.settings(organization_id)

    try:
        config = await asyncio.to_thread(_load)
    except OrgNotFound as e:
        raise HTTPException(status_code=404, detail="Organization not found.") from e
    except Exception as e:
        logger.exception("Loading notification settings for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to fetch notifications.") from e

    return NotificationSettingsResponse.model_validate(config.model_dump(mode="json"))


@router.patch("/organizations/{organization_id}/notifications", response_model=NotificationSettingsResponse)
async def update_notification_settings(
    organization_id: str, body: NotificationSettingsUpdate, http_request: Request,
):
    """Save channel toggles, recipients and the webhook target."""
    service = _get_service(http_request)
    try:
        config = await asyncio.to_thread(
            service.dispatcher.update_settings, organization_id, body.changes(),
        )
    except OrgNotFound as e:
        raise HTTPException(status_code=404, detail="Organization not found.") from e
    except InvalidSettings as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except Exception as e:
        logger.exception("Updating notification settings for org %s failed", organization_id)
        raise HTTPException(status_code=500, detail="Failed to update notifications.") from e

    return NotificationSettingsResponse.model_validate(config.model_dump(mode="json"))
