"""``escalateIssue``: hand the conversation to a human agent."""

from __future__ import annotations

import logging

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from chatdesk.errors import ChatdeskError
from chatdesk.models import NotificationKind, tool_failure
from chatdesk.services.metrics import metrics
from chatdesk.tools.toolset import ToolContext

logger = logging.getLogger(__name__)


class EscalateIssueArgs(BaseModel):
    reason: str = Field(description="Why the issue was escalated")
    user_message: str = Field(description="The user's last message")


def make_escalate_issue_tool(ctx: ToolContext) -> StructuredTool:
    def escalate_issue(reason: str, user_message: str) -> dict:
        try:
            ticket = ctx.conversations.escalate(ctx.conversation_id, reason, user_message)
        except ChatdeskError as exc:
            logger.error("Escalation failed for %s: %s", ctx.conversation_id, exc)
            metrics.record_event("ToolFailure", tool="escalateIssue")
            return tool_failure(
                "I couldn't create a support ticket right now. "
                "Our team has been alerted and will follow up manually.",
                exc.error_type,
            )

        try:
            report = ctx.dispatcher.notify(
                NotificationKind.ESCALATION,
                ctx.organization_id,
                {
                    "reason": reason,
                    "last_message": user_message,
                    "conversation_id": ctx.conversation_id,
                    "ticket_id": ticket.id,
                },
            )
            if report.failed:
                logger.warning(
                    "Escalation %s notified with failures: %s", ticket.id, report.failed,
                )
        except Exception:
            logger.exception("Escalation notification failed for %s", ticket.id)

        return {
            "success": True,
            "message": "Ticket created and notification sent",
            "ticket_id": ticket.id,
        }

    return StructuredTool.from_function(
        func=escalate_issue,
        name="escalateIssue",
        description="Escalates a conversation to a human support agent.",
        args_schema=EscalateIssueArgs,
    )
