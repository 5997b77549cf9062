"""Tests for the createLead, escalateIssue and bookAppointment tools."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from chatdesk.conversation import ChannelMeta, ConversationStateMachine
from chatdesk.errors import PersistenceFailure
from chatdesk.models import Channel, LeadQuality, NotificationKind, ScoreResult
from chatdesk.scheduler import BookingResult, Slot
from chatdesk.tools.toolset import ToolContext, build_toolset, validate_email

ORG_ID = "org-1"
SESSION = "sess-1"


@pytest.fixture
def conversations(store):
    machine = ConversationStateMachine(store, pubsub=MagicMock())
    machine.ingest(
        SESSION, "Hi", ChannelMeta(channel=Channel.WEB, organization_id=ORG_ID, chatbot_id="widget-1"),
    )
    return machine


@pytest.fixture
def ctx(store, conversations):
    scoring = MagicMock()
    scoring.score.return_value = ScoreResult(
        score=85, quality=LeadQuality.HOT, reasoning=["Corporate Email Domain (+20)"],
    )
    return ToolContext(
        organization_id=ORG_ID,
        conversation_id=SESSION,
        store=store,
        scoring=scoring,
        scheduler=MagicMock(),
        dispatcher=MagicMock(),
        conversations=conversations,
        questions_asked=2,
    )


def _tool(ctx, name):
    return {t.name: t for t in build_toolset(ctx)}[name]


# ── Email validation ─────────────────────────────────────────────────


class TestValidateEmail:
    @pytest.mark.parametrize(
        "email",
        [
            "alice@example.com",
            "bob.jones@acme.co.uk",
            "jane+tag@gmail.com",
            "UPPER@CASE.COM",
            "  padded@example.com  ",
        ],
    )
    def test_accepts_valid_emails(self, email: str):
        assert validate_email(email) is None

    @pytest.mark.parametrize(
        "email",
        ["", "   ", "not-an-email", "missing@", "@no-local.com", "double@@at.com", "no-tld@localhost"],
    )
    def test_rejects_invalid_emails(self, email: str):
        result = validate_email(email)
        assert "does not look like a valid email" in result or "No email" in result


def test_toolset_names(ctx):
    assert [t.name for t in build_toolset(ctx)] == ["createLead", "escalateIssue", "bookAppointment"]


# ── createLead ───────────────────────────────────────────────────────


class TestCreateLead:
    def test_saves_scored_lead_and_notifies(self, store, ctx):
        result = _tool(ctx, "createLead").invoke(
            {
                "first_name": "Ada",
                "last_name": "Lovelace",
                "email": "ada@acme.com",
                "notes": "Wants pricing for 50 seats",
                "intent_keywords": ["pricing"],
            }
        )

        assert result == {
            "success": True,
            "message": "Lead saved successfully",
            "score": 85,
            "quality": "hot",
        }
        (lead,) = store.list_leads(ORG_ID)
        assert lead.conversation_id == SESSION
        assert lead.score == 85
        assert ctx.lead_ids == [lead.id]
        factors = ctx.scoring.score.call_args.args[0]
        assert factors.email_domain == "acme.com"
        assert factors.num_questions_asked == 2
        kind, org, payload = ctx.dispatcher.notify.call_args.args
        assert kind is NotificationKind.HOT_LEAD
        assert payload["lead_name"] == "Ada Lovelace"

    def test_invalid_email_is_structured_failure(self, store, ctx):
        result = _tool(ctx, "createLead").invoke({"first_name": "Ada", "email": "ada-at-acme"})
        assert result["success"] is False
        assert result["error_type"] == "invalid_email"
        assert store.list_leads(ORG_ID) == []

    def test_cold_lead_does_not_notify(self, ctx):
        ctx.scoring.score.return_value = ScoreResult(score=25, quality=LeadQuality.COLD)
        _tool(ctx, "createLead").invoke({"first_name": "Bo", "email": "bo@gmail.com"})
        ctx.dispatcher.notify.assert_not_called()

    def test_notification_failure_still_reports_success(self, store, ctx):
        ctx.dispatcher.notify.side_effect = RuntimeError("resend down")
        result = _tool(ctx, "createLead").invoke({"first_name": "Ada", "email": "ada@acme.com"})
        assert result["success"] is True
        assert len(store.list_leads(ORG_ID)) == 1

    def test_persistence_failure(self, store, ctx):
        store.insert_lead = MagicMock(side_effect=PersistenceFailure("db down"))
        with patch("chatdesk.tools.leads.metrics") as mock_metrics:
            result = _tool(ctx, "createLead").invoke({"first_name": "Ada", "email": "ada@acme.com"})
        assert result["error_type"] == "persistence_failure"
        mock_metrics.record_event.assert_called_once_with("ToolFailure", tool="createLead")
        ctx.dispatcher.notify.assert_not_called()

    def test_whatsapp_number_counts_as_phone(self, ctx):
        ctx.customer_phone = "+353871234567"
        _tool(ctx, "createLead").invoke({"first_name": "Ada", "email": "ada@acme.com"})
        assert ctx.scoring.score.call_args.args[0].phone_provided is True


# ── escalateIssue ────────────────────────────────────────────────────


class TestEscalateIssue:
    def test_opens_ticket_and_notifies(self, store, ctx):
        result = _tool(ctx, "escalateIssue").invoke(
            {"reason": "Billing dispute", "user_message": "I was charged twice"}
        )

        assert result["success"] is True
        (ticket,) = store.list_tickets(SESSION)
        assert result["ticket_id"] == ticket.id
        assert ctx.dispatcher.notify.call_args.args[0] is NotificationKind.ESCALATION

    def test_persistence_failure_is_structured(self, ctx):
        ctx.conversations = MagicMock()
        ctx.conversations.escalate.side_effect = PersistenceFailure("write failed")
        result = _tool(ctx, "escalateIssue").invoke({"reason": "r", "user_message": "m"})
        assert result["success"] is False
        assert result["error_type"] == "persistence_failure"
        ctx.dispatcher.notify.assert_not_called()

    def test_notification_failure_keeps_ticket(self, store, ctx):
        ctx.dispatcher.notify.side_effect = RuntimeError("boom")
        result = _tool(ctx, "escalateIssue").invoke({"reason": "r", "user_message": "m"})
        assert result["success"] is True
        assert len(store.list_tickets(SESSION)) == 1


# ── bookAppointment ──────────────────────────────────────────────────


BOOKING_ARGS = {
    "customer_name": "Ada Lovelace",
    "customer_email": "ada@acme.com",
    "date": "2026-03-02",
    "time": "10:00",
}


class TestBookAppointment:
    def test_passes_details_to_scheduler(self, ctx):
        ctx.scheduler.book.return_value = BookingResult(success=True, message="Appointment confirmed")
        ctx.customer_phone = "+353871234567"

        result = _tool(ctx, "bookAppointment").invoke(BOOKING_ARGS)

        assert result == {"success": True, "message": "Appointment confirmed"}
        org, details = ctx.scheduler.book.call_args.args
        assert org == ORG_ID
        assert details.customer_phone == "+353871234567"
        assert details.duration_minutes == 30
        assert details.service_type == "Consultation"

    def test_invalid_email_never_reaches_calendar(self, ctx):
        result = _tool(ctx, "bookAppointment").invoke({**BOOKING_ARGS, "customer_email": "nope"})
        assert result["error_type"] == "invalid_email"
        ctx.scheduler.book.assert_not_called()

    def test_slot_unavailable_returns_alternatives(self, ctx):
        from datetime import UTC, datetime

        slot = Slot(
            date="2026-03-02", time="11:00",
            start=datetime(2026, 3, 2, 11, tzinfo=UTC), end=datetime(2026, 3, 2, 11, 30, tzinfo=UTC),
        )
        ctx.scheduler.book.return_value = BookingResult(
            success=False, message="taken", error_type="slot_unavailable", alternatives=[slot],
        )
        with patch("chatdesk.tools.appointments.metrics") as mock_metrics:
            result = _tool(ctx, "bookAppointment").invoke(BOOKING_ARGS)

        assert result["error_type"] == "slot_unavailable"
        assert result["alternatives"][0]["time"] == "11:00"
        mock_metrics.record_event.assert_not_called()

    def test_calendar_not_connected_counts_as_tool_failure(self, ctx):
        ctx.scheduler.book.return_value = BookingResult(
            success=False, message="not set up", error_type="calendar_not_connected",
        )
        with patch("chatdesk.tools.appointments.metrics") as mock_metrics:
            result = _tool(ctx, "bookAppointment").invoke(BOOKING_ARGS)
        assert result["error_type"] == "calendar_not_connected"
        mock_metrics.record_event.assert_called_once_with("ToolFailure", tool="bookAppointment")

    def test_unexpected_crash_is_api_failure(self, ctx):
        ctx.scheduler.book.side_effect = RuntimeError("boom")
        result = _tool(ctx, "bookAppointment").invoke(BOOKING_ARGS)
        assert result["success"] is False
        assert result["error_type"] == "api_failure"
