"""``bookAppointment``: book a slot on the organization's calendar.

If the requested time is taken the result carries up to three
``alternatives`` on the same day for the model to offer.
"""

from __future__ import annotations

import logging

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from chatdesk.models import tool_failure
from chatdesk.scheduler import DEFAULT_DURATION_MINUTES, BookingDetails
from chatdesk.services.metrics import metrics
from chatdesk.tools.toolset import ToolContext, validate_email

logger = logging.getLogger(__name__)


class BookAppointmentArgs(BaseModel):
    customer_name: str = Field(description="Customer's full name")
    customer_email: str = Field(description="Customer's email address")
    customer_phone: str | None = Field(default=None, description="Customer's phone number")
    service_type: str = Field(default="Consultation", description="What the meeting is about")
    date: str = Field(description='Date in YYYY-MM-DD format (e.g. "2026-02-17")')
    time: str = Field(description='Start time in 24h HH:MM format (e.g. "14:00")')
    duration_minutes: int = Field(default=DEFAULT_DURATION_MINUTES, ge=15, le=240)
    notes: str | None = Field(default=None, description="Anything the team should know")


def make_book_appointment_tool(ctx: ToolContext) -> StructuredTool:
    def book_appointment(**kwargs) -> dict:
        details = BookingDetails(**kwargs)
        error = validate_email(details.customer_email)
        if error:
            return tool_failure(error, "invalid_email")
        if not details.customer_phone:
            details.customer_phone = ctx.customer_phone

        try:
            result = ctx.scheduler.book(ctx.organization_id, details)
        except Exception:
            logger.exception("Booking crashed for org %s", ctx.organization_id)
            metrics.record_event("ToolFailure", tool="bookAppointment")
            return tool_failure(
                "I couldn't complete the booking right now. "
                "Our team will contact you to confirm a time.",
                "api_failure",
            )

        if not result.success and result.error_type != "slot_unavailable":
            metrics.record_event("ToolFailure", tool="bookAppointment")
        return result.to_tool_result()

    return StructuredTool.from_function(
        func=book_appointment,
        name="bookAppointment",
        description=(
            "Books an appointment on the business calendar. Only call this after "
            "the customer's details were saved with createLead."
        ),
        args_schema=BookAppointmentArgs,
    )
