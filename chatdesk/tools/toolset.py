"""Per-turn tool set for the agent.

Tools are built fresh for every turn as closures over a :class:`ToolContext`
so that they know which organization and conversation they act on without
the model ever seeing (or being able to forge) those ids.

Every tool returns a JSON-serialisable dict.  Failures never raise: they
come back as ``{"success": False, "message": ..., "error_type": ...}``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from langchain_core.tools import BaseTool

if TYPE_CHECKING:
    from chatdesk.conversation import ConversationStateMachine
    from chatdesk.notifications import NotificationDispatcher
    from chatdesk.scheduler import Scheduler
    from chatdesk.scoring import ScoringEngine
    from chatdesk.store import Store

# RFC 5322-ish pattern; covers the vast majority of real-world emails
_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)


def validate_email(email: str) -> str | None:
    """Return an error message if *email* looks invalid, else ``None``."""
    if not email or not email.strip():
        return "No email address was provided. Please ask the customer for their email."
    email = email.strip()
    if not _EMAIL_RE.match(email):
        return (
            f'"{email}" does not look like a valid email address. '
            "Please ask the customer to double-check it."
        )
    return None


@dataclass
class ToolContext:
    organization_id: str
    conversation_id: str
    store: Store
    scoring: ScoringEngine
    scheduler: Scheduler
    dispatcher: NotificationDispatcher
    conversations: ConversationStateMachine
    # WhatsApp sessions always know the customer's number
    customer_phone: str | None = None
    questions_asked: int = 0
    lead_ids: list[str] = field(default_factory=list)


def build_toolset(context: ToolContext) -> list[BaseTool]:
    from chatdesk.tools.appointments import make_book_appointment_tool
    from chatdesk.tools.escalation import make_escalate_issue_tool
    from chatdesk.tools.leads import make_create_lead_tool

    return [
        make_create_lead_tool(context),
        make_escalate_issue_tool(context),
        make_book_appointment_tool(context),
    ]
