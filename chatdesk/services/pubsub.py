"""Fire-and-forget real-time events for the dashboard.

The dashboard listens on a socket server; this module only knows how to
ask that server to broadcast ``{event, payload}``.  Delivery is
best-effort: callers log failures and move on.
"""

from __future__ import annotations

import abc
import logging
from typing import Any

import httpx

from chatdesk.config import HTTP_TIMEOUT_SECONDS, PUBSUB_EMIT_URL
from chatdesk.services.metrics import metrics

logger = logging.getLogger(__name__)


def escalation_event(organization_id: str) -> str:
    return f"org_{organization_id}_escalation"


def owner_notification_event(organization_id: str) -> str:
    return f"org_{organization_id}_notification"


class PubSub(abc.ABC):
    @abc.abstractmethod
    def emit(self, event: str, payload: dict[str, Any]) -> None:
        """Broadcast *payload* under *event*.  May raise; callers absorb."""


class NullPubSub(PubSub):
    """Used when no emit endpoint is configured (local dev, tests)."""

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        logger.debug("PubSub disabled; dropping %s", event)


class HttpPubSub(PubSub):
    """POSTs events to the socket server's emit endpoint."""

    def __init__(self, url: str, *, http_client: httpx.Client | None = None):
        self._url = url
        self._client = http_client or httpx.Client(timeout=HTTP_TIMEOUT_SECONDS)

    def emit(self, event: str, payload: dict[str, Any]) -> None:
        with metrics.timed("pubsub", "emit"):
            response = self._client.post(self._url, json={"event": event, "payload": payload})
            response.raise_for_status()
        logger.debug("PubSub emitted %s", event)


def build_pubsub(url: str | None = None) -> PubSub:
    url = PUBSUB_EMIT_URL if url is None else url
    return HttpPubSub(url) if url else NullPubSub()
