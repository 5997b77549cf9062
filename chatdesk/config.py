"""Centralized configuration for the chatdesk support core.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/chatdesk/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 — lazy import to avoid boto3 dep in tests

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/chatdesk/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /chatdesk/{name} (AWS)."
    )


def _optional_secret(name: str) -> str:
    """Like ``_require_env`` but returns an empty string when unset.

    Used for integrations that degrade gracefully (email, pub/sub, calendar)
    so that a missing key disables the channel instead of the whole service.
    """
    try:
        return _require_env(name)
    except OSError:
        logger.debug("Optional secret %s not configured", name)
        return ""


# ── LLM ─────────────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
MODEL_NAME: str = os.getenv("MODEL_NAME", "claude-sonnet-4-5")
# Cheap model used for history summarisation
FAST_MODEL_NAME: str = os.getenv("FAST_MODEL_NAME", "claude-haiku-4-5")
MODEL_TIMEOUT_SECONDS: float = float(os.getenv("MODEL_TIMEOUT_SECONDS", "30"))

# ── Agent loop ──────────────────────────────────────────────────────
MAX_AGENT_STEPS: int = int(os.getenv("MAX_AGENT_STEPS", "5"))
HISTORY_TOKEN_LIMIT: int = int(os.getenv("HISTORY_TOKEN_LIMIT", "6000"))
HISTORY_RECENT_MESSAGES: int = int(os.getenv("HISTORY_RECENT_MESSAGES", "10"))
ASSISTANT_NAME: str = os.getenv("ASSISTANT_NAME", "Fiona")

# ── Rate limiting ───────────────────────────────────────────────────
RATE_LIMIT_MAX_MESSAGES: int = int(os.getenv("RATE_LIMIT_MAX_MESSAGES", "30"))
RATE_LIMIT_WINDOW_SECONDS: float = float(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))

# ── Google Calendar ─────────────────────────────────────────────────
GOOGLE_CLIENT_ID: str = _optional_secret("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET: str = _optional_secret("GOOGLE_CLIENT_SECRET")
GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_BASE_URL: str = os.getenv(
    "GOOGLE_CALENDAR_BASE_URL", "https://www.googleapis.com/calendar/v3",
)

# ── Notifications ───────────────────────────────────────────────────
RESEND_API_KEY: str = _optional_secret("RESEND_API_KEY")
RESEND_BASE_URL: str = "https://api.resend.com"
NOTIFY_FROM_EMAIL: str = os.getenv("NOTIFY_FROM_EMAIL", "Fiona AI <alerts@resend.dev>")
PUBSUB_EMIT_URL: str = os.getenv("PUBSUB_EMIT_URL", "")
WEBHOOK_SECRET: str = _optional_secret("WEBHOOK_SECRET")
HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "8000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
