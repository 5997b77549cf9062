"""``createLead``: save the visitor's contact details to the CRM with a score."""

from __future__ import annotations

import logging

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from chatdesk.models import Lead, LeadQuality, NotificationKind, ScoringFactors, tool_failure
from chatdesk.services.metrics import metrics
from chatdesk.tools.toolset import ToolContext, validate_email

logger = logging.getLogger(__name__)

_NOTIFY_KIND = {
    LeadQuality.HOT: NotificationKind.HOT_LEAD,
    LeadQuality.WARM: NotificationKind.WARM_LEAD,
}


class CreateLeadArgs(BaseModel):
    first_name: str = Field(description="First name")
    last_name: str = Field(default="", description="Last name")
    email: str = Field(description="Email address")
    phone_number: str | None = Field(default=None, description="Phone number")
    notes: str = Field(default="", description="Context of the inquiry")
    intent_keywords: list[str] = Field(
        default_factory=list, description="Keywords indicating purchase intent",
    )


def make_create_lead_tool(ctx: ToolContext) -> StructuredTool:
    def create_lead(
        first_name: str,
        email: str,
        last_name: str = "",
        phone_number: str | None = None,
        notes: str = "",
        intent_keywords: list[str] | None = None,
    ) -> dict:
        error = validate_email(email)
        if error:
            return tool_failure(error, "invalid_email")
        email = email.strip()
        phone = phone_number or ctx.customer_phone

        result = ctx.scoring.score(
            ScoringFactors(
                email_domain=email.split("@")[1],
                phone_provided=bool(phone),
                notes=notes,
                keywords_mentioned=intent_keywords or [],
                num_questions_asked=ctx.questions_asked,
            ),
            ctx.organization_id,
        )

        lead = Lead(
            organization_id=ctx.organization_id,
            conversation_id=ctx.conversation_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            phone=phone,
            notes=notes,
            score=result.score,
            quality=result.quality,
        )
        try:
            lead = ctx.store.insert_lead(lead)
        except Exception:
            logger.exception("Lead insert failed for conversation %s", ctx.conversation_id)
            metrics.record_event("ToolFailure", tool="createLead")
            return tool_failure(
                "I couldn't save your contact details right now. "
                "Our team will follow up with you manually.",
                "persistence_failure",
            )
        ctx.lead_ids.append(lead.id)
        logger.info(
            "Lead %s scored %d/100 (%s): %s",
            lead.id, result.score, result.quality.value, result.reasoning,
        )

        kind = _NOTIFY_KIND.get(result.quality)
        if kind is not None:
            try:
                ctx.dispatcher.notify(
                    kind,
                    ctx.organization_id,
                    {
                        "lead_name": lead.full_name,
                        "lead_email": lead.email,
                        "lead_phone": lead.phone,
                        "notes": notes,
                        "score": result.score,
                        "reasoning": result.reasoning,
                        "conversation_id": ctx.conversation_id,
                    },
                )
            except Exception:
                logger.exception("Lead notification failed for %s", lead.id)

        return {
            "success": True,
            "message": "Lead saved successfully",
            "score": result.score,
            "quality": result.quality.value,
        }

    return StructuredTool.from_function(
        func=create_lead,
        name="createLead",
        description="Saves user contact info to the CRM for follow-up.",
        args_schema=CreateLeadArgs,
    )
