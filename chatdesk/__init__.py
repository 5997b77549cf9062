"""chatdesk: a multi-channel support and sales assistant core.

Architecture Overview
=====================

Every inbound message (web widget or WhatsApp) goes through the same path:

1. **ConversationStateMachine** rate-limits the session, persists the
   conversation and message, and decides who answers.  A conversation is
   either ``bot_active`` or ``human_takeover``; an organization-wide
   ``bot_enabled`` switch can silence the bot without touching any
   conversation.

2. **AgentOrchestrator** runs a bounded LangGraph tool-calling loop
   (at most ``MAX_AGENT_STEPS`` model calls) with three tools:
   ``createLead``, ``escalateIssue`` and ``bookAppointment``.

3. The tools call into the **ScoringEngine** (per-organization lead
   scoring rules with a built-in fallback), the **Scheduler** (Google
   Calendar free/busy and event creation) and the state machine.

4. Outcomes fan out through the **NotificationDispatcher** to email
   (Resend), the dashboard pub/sub socket and signed outbound webhooks.

Key Design Decisions
--------------------
- **Degraded success**: side effects are never rolled back.  A lead that
  was saved stays saved even if its notification fails; a calendar event
  stays even if the appointment row could not be written.
- **Tool isolation**: tools report failures as structured results the
  model can apologise for; only a failing model ends the turn, and the
  user then gets a fixed apology.
- **Persistence as an interface**: :class:`chatdesk.store.Store`;
  :class:`chatdesk.store.InMemoryStore` backs tests and the CLI.

Package Structure
-----------------
- ``chatdesk/service.py`` – composition root for one inbound message
- ``chatdesk/conversation.py`` – mode state machine
- ``chatdesk/agent.py`` – LangGraph loop and history compaction
- ``chatdesk/tools/`` – the three agent tools
- ``chatdesk/scoring.py`` – lead scoring rule engine
- ``chatdesk/scheduler.py`` – availability and booking
- ``chatdesk/notifications.py`` – multi-channel owner notifications
- ``chatdesk/services/`` – HTTP clients (Calendar, Resend, webhooks, pub/sub), metrics, rate limiter
- ``chatdesk/api/`` – FastAPI routes and Pydantic schemas
- ``chatdesk/server.py`` / ``chatdesk/main.py`` – API server and CLI
"""
