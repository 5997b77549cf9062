"""Transactional email via the Resend HTTP API.

Resend API docs: https://resend.com/docs/api-reference/emails/send-email
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from chatdesk.config import HTTP_TIMEOUT_SECONDS, NOTIFY_FROM_EMAIL, RESEND_API_KEY, RESEND_BASE_URL
from chatdesk.services.metrics import metrics

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    """Raised when Resend rejects or cannot be reached for a send."""


class ResendEmailClient:
    def __init__(
        self,
        api_key: str | None = None,
        *,
        sender: str | None = None,
        http_client: httpx.Client | None = None,
    ):
        self._api_key = api_key if api_key is not None else RESEND_API_KEY
        self._sender = sender or NOTIFY_FROM_EMAIL
        self._client = http_client or httpx.Client(
            base_url=RESEND_BASE_URL,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            timeout=HTTP_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def send(self, to: str, subject: str, html: str) -> dict[str, Any]:
        """Send one email.  Returns the Resend response body (contains ``id``)."""
        if not self.configured:
            raise EmailDeliveryError("RESEND_API_KEY is not configured")

        try:
            with metrics.timed("resend", "send_email"):
                response = self._client.post(
                    "/emails",
                    json={"from": self._sender, "to": [to], "subject": subject, "html": html},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise EmailDeliveryError(
                f"Resend returned {exc.response.status_code}: {exc.response.text}"
            ) from exc
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Resend request failed: {exc}") from exc

        logger.info("Email %r sent to %s", subject, to)
        return response.json()
