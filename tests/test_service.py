"""End-to-end tests for SupportService.handle_message with a scripted model."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage

from chatdesk.agent import AgentOrchestrator
from chatdesk.conversation import ConversationStateMachine
from chatdesk.errors import InvalidSession, PersistenceFailure, RateLimited
from chatdesk.models import ConversationMode, KnowledgeSnippet, Lead, MessageRole
from chatdesk.scoring import ScoringEngine
from chatdesk.service import FALLBACK_REPLY, SupportService
from chatdesk.services.rate_limiter import FixedWindowRateLimiter

ORG_ID = "org-1"
WIDGET_ID = "widget-1"
PHONE_NUMBER_ID = "pn-1"


class ScriptedModel:
    def __init__(self, *responses):
        self._responses = list(responses)
        self.calls: list[list] = []

    def invoke(self, messages):
        self.calls.append(messages)
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _call(name: str, args: dict, call_id: str) -> AIMessage:
    return AIMessage(content="", tool_calls=[{"name": name, "args": args, "id": call_id}])


@pytest.fixture
def dispatcher():
    return MagicMock()


def _service(store, model, dispatcher, *, rate_limit: int = 30) -> SupportService:
    conversations = ConversationStateMachine(
        store, pubsub=MagicMock(), rate_limiter=FixedWindowRateLimiter(rate_limit, 60),
    )
    return SupportService(
        store,
        conversations=conversations,
        agent=AgentOrchestrator(lambda tools: model, max_steps=5),
        scoring=ScoringEngine(store),
        scheduler=MagicMock(),
        dispatcher=dispatcher,
    )


class TestWebChat:
    def test_reply_is_generated_and_persisted(self, store, dispatcher):
        store.add_knowledge(KnowledgeSnippet(organization_id=ORG_ID, content="We open at 9am."))
        model = ScriptedModel(AIMessage(content="Hi! How can I help?"))
        service = _service(store, model, dispatcher)

        meta = service.web_meta(WIDGET_ID, "203.0.113.9")
        reply = service.handle_message("sess-1", "Hello", meta)

        assert reply.text == "Hi! How can I help?"
        assert reply.mode is ConversationMode.BOT_ACTIVE
        assert reply.degraded is False
        roles = [m.role for m in store.list_messages("sess-1")]
        assert roles == [MessageRole.USER, MessageRole.ASSISTANT]
        system_prompt = model.calls[0][0].content
        assert "Acme" in system_prompt
        assert "We open at 9am." in system_prompt
        assert store.get_conversation("sess-1").name == "#Visitor(203.0.113.9)"

    def test_unknown_widget(self, store, dispatcher):
        service = _service(store, ScriptedModel(), dispatcher)
        with pytest.raises(InvalidSession):
            service.web_meta("nope")

    def test_human_takeover_keeps_bot_silent(self, store, dispatcher):
        model = ScriptedModel(AIMessage(content="Hi"))
        service = _service(store, model, dispatcher)
        meta = service.web_meta(WIDGET_ID)
        service.handle_message("sess-1", "Hello", meta)
        service.conversations.assign("sess-1", "agent-7")

        reply = service.handle_message("sess-1", "Are you human?", meta)

        assert reply.text is None
        assert reply.mode is ConversationMode.HUMAN_TAKEOVER
        assert len(model.calls) == 1
        assert store.list_messages("sess-1")[-1].content == "Are you human?"

    def test_org_switch_off(self, store, dispatcher):
        model = ScriptedModel()
        service = _service(store, model, dispatcher)
        service.conversations.set_bot_enabled(ORG_ID, False)

        reply = service.handle_message("sess-1", "Hello", service.web_meta(WIDGET_ID))

        assert reply.text is None
        assert reply.bot_enabled is False
        assert model.calls == []

    def test_model_failure_degrades_to_fixed_sentence(self, store, dispatcher):
        service = _service(store, ScriptedModel(TimeoutError("slow")), dispatcher)
        reply = service.handle_message("sess-1", "Hello", service.web_meta(WIDGET_ID))

        assert reply.text == FALLBACK_REPLY
        assert reply.degraded is True
        assert [m.role for m in store.list_messages("sess-1")] == [MessageRole.USER]

    def test_unsaved_inbound_message_still_reaches_model(self, store, dispatcher):
        model = ScriptedModel(AIMessage(content="Growth is $99 a month."))
        service = _service(store, model, dispatcher)
        store.append_message = MagicMock(side_effect=PersistenceFailure("disk full"))

        reply = service.handle_message(
            "sess-1", "What does the Growth plan cost?", service.web_meta(WIDGET_ID),
        )

        assert reply.text == "Growth is $99 a month."
        assert reply.degraded is False
        sent = model.calls[0]
        assert sent[-1].content == "What does the Growth plan cost?"

    def test_rate_limit_propagates(self, store, dispatcher):
        model = ScriptedModel(AIMessage(content="one"))
        service = _service(store, model, dispatcher, rate_limit=1)
        meta = service.web_meta(WIDGET_ID)
        service.handle_message("sess-1", "first", meta)

        with pytest.raises(RateLimited):
            service.handle_message("sess-1", "second", meta)
        assert len(store.list_messages("sess-1")) == 2


class TestToolsThroughService:
    def test_escalation_flips_reply_mode(self, store, dispatcher):
        model = ScriptedModel(
            _call("escalateIssue", {"reason": "refund", "user_message": "I want my money back"}, "c1"),
            AIMessage(content="[ESCALATED] I have created a support ticket."),
        )
        service = _service(store, model, dispatcher)

        reply = service.handle_message("sess-1", "I want my money back", service.web_meta(WIDGET_ID))

        assert reply.mode is ConversationMode.HUMAN_TAKEOVER
        assert reply.text.startswith("[ESCALATED]")
        assert len(store.list_tickets("sess-1")) == 1

    def test_whatsapp_number_is_used_as_lead_phone(self, store, dispatcher):
        model = ScriptedModel(
            _call("createLead", {"first_name": "Ada", "email": "ada@acme.com"}, "c1"),
            AIMessage(content="Thanks Ada!"),
        )
        service = _service(store, model, dispatcher)
        meta = service.whatsapp_meta(PHONE_NUMBER_ID, "+353871234567")

        service.handle_message("wa:+353871234567", "I'd like a demo", meta)

        (lead,) = store.list_leads(ORG_ID)
        assert lead.phone == "+353871234567"
        assert lead.conversation_id == "wa:+353871234567"

    def test_existing_lead_is_passed_to_agent(self, store, dispatcher):
        agent = MagicMock()
        agent.run.return_value = MagicMock(text="ok")
        service = _service(store, ScriptedModel(), dispatcher)
        service.agent = agent
        meta = service.web_meta(WIDGET_ID)

        service.handle_message("sess-1", "Hi", meta)
        assert agent.run.call_args.kwargs["lead_captured"] is False

        store.insert_lead(Lead(organization_id=ORG_ID, conversation_id="sess-1", first_name="A", email="a@b.com"))
        service.handle_message("sess-1", "Book me in?", meta)
        assert agent.run.call_args.kwargs["lead_captured"] is True


def test_unknown_whatsapp_number(store, dispatcher):
    service = _service(store, ScriptedModel(), dispatcher)
    with pytest.raises(InvalidSession):
        service.whatsapp_meta("unknown", "+1555")
