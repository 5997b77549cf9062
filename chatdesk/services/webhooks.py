"""Outbound webhook delivery (Slack, Discord, Zapier, custom endpoints).

Every delivery is an HTTPS POST of the fixed envelope::

    {"event": "lead.hot", "timestamp": "2026-...Z", "data": {...}}

signed with ``X-Webhook-Signature = HMAC-SHA256(secret, "<ts>.<body>")``.
Non-HTTPS or loopback/private targets are rejected before any network I/O.
"""

from __future__ import annotations

import hashlib
import hmac
import ipaddress
import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlparse

import httpx

from chatdesk.config import HTTP_TIMEOUT_SECONDS, WEBHOOK_SECRET
from chatdesk.services.metrics import metrics

logger = logging.getLogger(__name__)

USER_AGENT = "chatdesk-notifications/1.0"


@dataclass
class WebhookResult:
    success: bool
    status_code: int | None = None
    error: str | None = None


def validate_webhook_url(url: str | None) -> str | None:
    """Return an error message if *url* is not an acceptable target, else ``None``."""
    if not url or not url.strip():
        return "No webhook URL configured"
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return "Webhook URL could not be parsed"

    if parsed.scheme != "https":
        return "Webhook URL must use HTTPS"
    host = parsed.hostname
    if not host:
        return "Webhook URL has no host"
    if host == "localhost" or host.endswith(".localhost"):
        return "Webhook URL must not point at localhost"
    try:
        addr = ipaddress.ip_address(host)
    except ValueError:
        return None  # a DNS name
    if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
        return "Webhook URL must not point at a private address"
    return None


def build_envelope(event: str, data: dict[str, Any], *, template: str = "generic") -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event": event,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": data,
    }
    if template == "slack":
        title = data.get("title", event)
        message = data.get("message", "")
        envelope["text"] = f"*{title}*\n{message}".strip()
    return envelope


def sign(body: bytes, timestamp: str, secret: str) -> str:
    return hmac.new(
        secret.encode("utf-8"), f"{timestamp}.".encode() + body, hashlib.sha256,
    ).hexdigest()


class WebhookSender:
    def __init__(self, secret: str | None = None, *, http_client: httpx.Client | None = None):
        self._secret = secret if secret is not None else WEBHOOK_SECRET
        self._client = http_client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)

    def deliver(self, url: str, envelope: dict[str, Any]) -> WebhookResult:
        """POST *envelope* to *url*.  Never raises."""
        problem = validate_webhook_url(url)
        if problem:
            return WebhookResult(success=False, error=problem)

        body = json.dumps(envelope, default=str).encode("utf-8")
        timestamp = str(int(time.time()))
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Webhook-Id": f"wh_{uuid.uuid4()}",
            "X-Webhook-Timestamp": timestamp,
        }
        if self._secret:
            headers["X-Webhook-Signature"] = sign(body, timestamp, self._secret)

        try:
            with metrics.timed("webhook", envelope.get("event", "unknown")):
                response = self._client.post(url, content=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Webhook %s answered %d", url, exc.response.status_code)
            return WebhookResult(
                success=False,
                status_code=exc.response.status_code,
                error=f"HTTP {exc.response.status_code}",
            )
        except httpx.HTTPError as exc:
            logger.warning("Webhook %s unreachable: %s", url, exc)
            return WebhookResult(success=False, error=type(exc).__name__)

        return WebhookResult(success=True, status_code=response.status_code)
