"""CLI entry point for the chatdesk assistant.

A terminal chat loop against an in-memory store seeded with a demo
tenant.  For production, use the FastAPI server (chatdesk/server.py).

Usage:
    python -m chatdesk.main            # normal mode (quiet)
    python -m chatdesk.main --debug    # debug mode (shows API calls)
    python -m chatdesk.main --whatsapp +353870000000

Commands inside the loop: ``quit``, ``new`` (fresh session),
``takeover`` / ``release`` (simulate a human agent), ``history``.
"""

from __future__ import annotations

import argparse
import logging
import uuid

from dotenv import load_dotenv

from chatdesk.config import ASSISTANT_NAME
from chatdesk.demo import DEMO_WHATSAPP_NUMBER_ID, DEMO_WIDGET_ID, seed_demo_tenant
from chatdesk.errors import RateLimited
from chatdesk.service import RATE_LIMIT_REPLY, SupportService
from chatdesk.store import InMemoryStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("chatdesk").setLevel(logging.DEBUG if debug else logging.INFO)


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="chatdesk assistant CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument(
        "--whatsapp", metavar="PHONE",
        help="Chat as a WhatsApp customer with this phone number instead of the web widget",
    )
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    store = InMemoryStore()
    seed_demo_tenant(store)
    service = SupportService.from_config(store)

    def new_session() -> tuple[str, object]:
        if args.whatsapp:
            return args.whatsapp, service.whatsapp_meta(DEMO_WHATSAPP_NUMBER_ID, args.whatsapp)
        return str(uuid.uuid4()), service.web_meta(DEMO_WIDGET_ID, "127.0.0.1")

    print("\n" + "=" * 60)
    print("  chatdesk - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit', 'new', 'takeover', 'release', 'history'.")
    print("=" * 60 + "\n")

    session_id, meta = new_session()
    logger.info("Started new session: %s", session_id)

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        command = user_input.lower()
        if command in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if command == "new":
            session_id, meta = new_session()
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        if command in ("takeover", "release", "history"):
            if store.get_conversation(session_id) is None:
                print("\n>> Say something first to start the conversation.\n")
            elif command == "takeover":
                service.conversations.assign(session_id, "cli-agent")
                print("\n>> A human agent now owns this conversation.\n")
            elif command == "release":
                service.conversations.release(session_id)
                print("\n>> Conversation handed back to the bot.\n")
            else:
                for message in service.conversations.history(session_id):
                    print(f"  [{message.role.value}] {message.content}")
                print()
            continue

        try:
            reply = service.handle_message(session_id, user_input, meta)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except RateLimited:
            print(f"\n{ASSISTANT_NAME}: {RATE_LIMIT_REPLY}\n")
            continue

        if reply.text is None:
            print(f"\n>> ({reply.mode.value}: the bot stays silent)\n")
        else:
            print(f"\n{ASSISTANT_NAME}: {reply.text}\n")


if __name__ == "__main__":
    main()
