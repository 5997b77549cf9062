"""LangGraph tool-calling loop that drives one assistant turn.

Architecture:
  A two-node StateGraph:

    1. **agent** – chat model bound to the turn's tools
    2. **tools** – executes the tool calls the model requested

  Routing:
    agent → (tool calls?) → tools → (budget left?) → agent (loop)
                                  → (budget spent?) → END
    agent → (plain text?) → END

  ``steps`` counts model invocations and never exceeds ``max_steps``.
  When the budget runs out the best text produced so far is returned.

  Tool failures never escape the tools node: tools report their own
  errors and the node converts anything else (bad arguments, unknown
  tool names, stray exceptions) into the same structured failure dict.
  Only a failing model invocation ends the turn, as
  :class:`ModelInvocationFailure`.

  The model is injected as a factory ``tools -> runnable`` so tests can
  swap in a scripted fake.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.messages.utils import count_tokens_approximately
from langchain_core.tools import BaseTool
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from chatdesk.config import (
    ANTHROPIC_API_KEY,
    FAST_MODEL_NAME,
    HISTORY_RECENT_MESSAGES,
    HISTORY_TOKEN_LIMIT,
    MAX_AGENT_STEPS,
    MODEL_NAME,
    MODEL_TIMEOUT_SECONDS,
)
from chatdesk.errors import ModelInvocationFailure, ToolFailure
from chatdesk.models import Message, MessageRole, tool_failure
from chatdesk.prompts import SUMMARY_PROMPT
from chatdesk.services.metrics import metrics

logger = logging.getLogger(__name__)

BUDGET_EXHAUSTED_REPLY = (
    "Thanks for your patience. I've passed this on and our team will follow up with you shortly."
)

# Tools that need a saved lead before they run
_REQUIRES_LEAD = {"bookAppointment"}
_LEAD_TOOL = "createLead"


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """State flowing through the graph.

    ``messages`` uses the ``add_messages`` reducer so nodes append rather
    than overwrite.  ``lead_captured`` starts from persistence and flips
    when ``createLead`` succeeds during the turn.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    steps: int
    lead_captured: bool


@dataclass
class AgentResult:
    text: str
    steps: int
    tool_calls: list[str] = field(default_factory=list)
    budget_exhausted: bool = False


# ── LLM builders ────────────────────────────────────────────────────


def build_chat_model(tools: list[BaseTool]):
    """Primary model with tool bindings."""
    llm = ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.1,
        max_tokens=1024,
        timeout=MODEL_TIMEOUT_SECONDS,
        max_retries=1,
    )
    return llm.bind_tools(tools)


def build_summary_model() -> ChatAnthropic:
    """Cheap model for history summarisation (no tools)."""
    return ChatAnthropic(
        model=FAST_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,
        max_tokens=512,
        timeout=MODEL_TIMEOUT_SECONDS,
    )


# ── Message helpers ─────────────────────────────────────────────────


def message_text(message: BaseMessage) -> str:
    """Plain text of *message*, joining text blocks when content is a list."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts).strip()


def to_langchain(history: list[Message]) -> list[AnyMessage]:
    converted: list[AnyMessage] = []
    for m in history:
        if m.role is MessageRole.USER:
            converted.append(HumanMessage(content=m.content))
        elif m.role is MessageRole.ASSISTANT:
            converted.append(AIMessage(content=m.content))
    return converted


# ── History compaction ──────────────────────────────────────────────


def _transcript(messages: list[AnyMessage]) -> str:
    lines = []
    for msg in messages:
        speaker = "Customer" if isinstance(msg, HumanMessage) else "Assistant"
        lines.append(f"{speaker}: {message_text(msg)}")
    return "\n".join(lines)


def compact_history(
    messages: list[AnyMessage],
    summarize: Callable[[list[AnyMessage]], str] | None = None,
    *,
    token_limit: int = HISTORY_TOKEN_LIMIT,
    keep_recent: int = HISTORY_RECENT_MESSAGES,
) -> tuple[list[AnyMessage], str | None]:
    """Summarise all but the last *keep_recent* messages when over *token_limit*.

    Returns ``(messages_to_send, summary)``.  On summariser failure the
    full history is returned with no summary.
    """
    if count_tokens_approximately(messages) <= token_limit or len(messages) <= keep_recent:
        return messages, None

    older, recent = messages[:-keep_recent], messages[-keep_recent:]
    # The model expects the conversation to open with the customer
    while recent and not isinstance(recent[0], HumanMessage):
        older.append(recent.pop(0))
    if not recent:
        return messages, None

    summarize = summarize or summarize_with_fast_model
    try:
        summary = summarize(older)
    except Exception:
        logger.exception("History summarisation failed; sending full history")
        return messages, None
    logger.info("Compacted %d older messages into a summary", len(older))
    return recent, summary


def summarize_with_fast_model(messages: list[AnyMessage]) -> str:
    prompt = SUMMARY_PROMPT.format(transcript=_transcript(messages))
    with metrics.timed("anthropic", "summarize"):
        response = build_summary_model().invoke([HumanMessage(content=prompt)])
    return message_text(response)


# ── Orchestrator ────────────────────────────────────────────────────


class AgentOrchestrator:
    def __init__(
        self,
        model_factory: Callable[[list[BaseTool]], Any] = build_chat_model,
        *,
        max_steps: int = MAX_AGENT_STEPS,
    ):
        self._model_factory = model_factory
        self._max_steps = max_steps

    def _make_agent_node(self, model, system_prompt: str):
        def agent_node(state: AgentState) -> dict:
            logger.debug("agent node step %d/%d", state["steps"] + 1, self._max_steps)
            with metrics.timed("anthropic", "llm_invoke"):
                response = model.invoke([SystemMessage(content=system_prompt)] + state["messages"])
            return {"messages": [response], "steps": state["steps"] + 1}

        return agent_node

    def _make_tools_node(self, tools: list[BaseTool], called: list[str]):
        by_name = {t.name: t for t in tools}

        def tools_node(state: AgentState) -> dict:
            lead_captured = state["lead_captured"]
            results: list[ToolMessage] = []
            for call in state["messages"][-1].tool_calls:
                name = call["name"]
                called.append(name)
                if name in _REQUIRES_LEAD and not lead_captured:
                    logger.warning("%s requested before any lead was captured", name)
                    metrics.record_event("BookingBeforeLead")

                try:
                    tool = by_name.get(name)
                    if tool is None:
                        raise ToolFailure(f"Unknown tool {name!r}", "unknown_tool")
                    result = tool.invoke(call["args"])
                except ToolFailure as exc:
                    logger.warning("Tool %s failed: %s", name, exc)
                    result = tool_failure(str(exc), exc.error_type)
                except Exception as exc:
                    logger.exception("Tool %s raised", name)
                    result = tool_failure(
                        "That action could not be completed. Our team will follow up manually.",
                        "tool_failure",
                        detail=type(exc).__name__,
                    )

                if name == _LEAD_TOOL and isinstance(result, dict) and result.get("success"):
                    lead_captured = True
                results.append(
                    ToolMessage(
                        content=json.dumps(result, default=str),
                        tool_call_id=call["id"],
                        name=name,
                    )
                )
            return {"messages": results, "lead_captured": lead_captured}

        return tools_node

    def _should_use_tools(self, state: AgentState) -> str:
        last = state["messages"][-1]
        if getattr(last, "tool_calls", None):
            return "tools"
        return END

    def _has_budget(self, state: AgentState) -> str:
        return "agent" if state["steps"] < self._max_steps else END

    def build_graph(self, system_prompt: str, tools: list[BaseTool], called: list[str]):
        graph = StateGraph(AgentState)
        graph.add_node("agent", self._make_agent_node(self._model_factory(tools), system_prompt))
        graph.add_node("tools", self._make_tools_node(tools, called))
        graph.set_entry_point("agent")
        graph.add_conditional_edges("agent", self._should_use_tools, {"tools": "tools", END: END})
        graph.add_conditional_edges("tools", self._has_budget, {"agent": "agent", END: END})
        return graph.compile()

    def run(
        self,
        system_prompt: str,
        history: list[AnyMessage],
        tools: list[BaseTool],
        *,
        lead_captured: bool = False,
    ) -> AgentResult:
        """Run one turn.  Raises :class:`ModelInvocationFailure` if the model fails."""
        called: list[str] = []
        try:
            compiled = self.build_graph(system_prompt, tools, called)
            final = compiled.invoke(
                {"messages": history, "steps": 0, "lead_captured": lead_captured},
                config={"recursion_limit": 2 * self._max_steps + 2},
            )
        except Exception as exc:
            logger.exception("Agent turn failed")
            raise ModelInvocationFailure(str(exc)) from exc

        messages = final["messages"]
        steps = final["steps"]
        last = messages[-1]
        if isinstance(last, AIMessage) and not last.tool_calls and message_text(last):
            return AgentResult(text=message_text(last), steps=steps, tool_calls=called)

        # Budget spent mid-loop: fall back to the latest text the model produced
        logger.warning("Agent stopped after %d steps without a final answer", steps)
        for msg in reversed(messages[len(history):]):
            if isinstance(msg, AIMessage) and message_text(msg):
                return AgentResult(
                    text=message_text(msg), steps=steps, tool_calls=called, budget_exhausted=True,
                )
        return AgentResult(
            text=BUDGET_EXHAUSTED_REPLY, steps=steps, tool_calls=called, budget_exhausted=True,
        )
