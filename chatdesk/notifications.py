"""Owner notifications for lead, escalation and booking events.

Each enabled channel (email, owner pub/sub event, webhook) is delivered
concurrently and independently.  Nothing here ever raises into the
caller: failures end up in the :class:`DispatchReport` and the log.
"""

from __future__ import annotations

import html
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable

from chatdesk.errors import InvalidSettings, OrgNotFound
from chatdesk.models import (
    NotificationChannelConfig,
    NotificationKind,
    WebhookVerificationStatus,
)
from chatdesk.services.email_client import ResendEmailClient
from chatdesk.services.metrics import metrics
from chatdesk.services.pubsub import NullPubSub, PubSub, owner_notification_event
from chatdesk.services.webhooks import WebhookResult, WebhookSender, build_envelope, validate_webhook_url
from chatdesk.store import Store

logger = logging.getLogger(__name__)

WEBHOOK_EVENTS = {
    NotificationKind.HOT_LEAD: "lead.hot",
    NotificationKind.WARM_LEAD: "lead.warm",
    NotificationKind.ESCALATION: "conversation.escalated",
    NotificationKind.APPOINTMENT_BOOKED: "appointment.booked",
}


@dataclass
class DispatchReport:
    kind: NotificationKind
    delivered: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


# ── Message rendering ───────────────────────────────────────────────


def _title(kind: NotificationKind, payload: dict[str, Any]) -> str:
    name = payload.get("lead_name") or payload.get("customer_name") or "A visitor"
    score = payload.get("score")
    if kind is NotificationKind.HOT_LEAD:
        return f"🔥 HOT Lead Alert: {name} (Score: {score}/100)"
    if kind is NotificationKind.WARM_LEAD:
        return f"💼 New Qualified Lead: {name} (Score: {score}/100)"
    if kind is NotificationKind.ESCALATION:
        return "🚨 New Escalated Support Issue"
    return f"📅 New Appointment: {name}"


def _summary_lines(kind: NotificationKind, payload: dict[str, Any]) -> list[tuple[str, str]]:
    if kind in (NotificationKind.HOT_LEAD, NotificationKind.WARM_LEAD):
        rows = [
            ("Name", payload.get("lead_name")),
            ("Email", payload.get("lead_email")),
            ("Phone", payload.get("lead_phone")),
            ("Score", payload.get("score")),
            ("Notes", payload.get("notes")),
        ]
        reasoning = payload.get("reasoning") or []
        if reasoning:
            rows.append(("Why", "; ".join(reasoning)))
    elif kind is NotificationKind.ESCALATION:
        rows = [
            ("Reason", payload.get("reason")),
            ("Last message", payload.get("last_message")),
            ("Conversation", payload.get("conversation_id")),
        ]
    else:
        rows = [
            ("Customer", payload.get("customer_name")),
            ("Email", payload.get("customer_email")),
            ("Service", payload.get("service_type")),
            ("When", payload.get("scheduled_at")),
            ("Meeting link", payload.get("meeting_link")),
        ]
    return [(label, str(value)) for label, value in rows if value not in (None, "")]


def render_email(kind: NotificationKind, payload: dict[str, Any]) -> tuple[str, str]:
    """Return ``(subject, html_body)``."""
    subject = _title(kind, payload)
    rows = "".join(
        f"<tr><td style='padding:4px 12px 4px 0;color:#666'>{html.escape(label)}</td>"
        f"<td style='padding:4px 0'>{html.escape(value)}</td></tr>"
        for label, value in _summary_lines(kind, payload)
    )
    body = (
        "<!DOCTYPE html><html><body style=\"font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif\">"
        f"<h2>{html.escape(subject)}</h2><table>{rows}</table>"
        "<p style='color:#999;font-size:12px'>Sent by your chat assistant.</p>"
        "</body></html>"
    )
    return subject, body


def render_text(kind: NotificationKind, payload: dict[str, Any]) -> str:
    return "\n".join(f"{label}: {value}" for label, value in _summary_lines(kind, payload))


# ── Dispatcher ──────────────────────────────────────────────────────


class NotificationDispatcher:
    def __init__(
        self,
        store: Store,
        *,
        email_client: ResendEmailClient | None = None,
        pubsub: PubSub | None = None,
        webhook_sender: WebhookSender | None = None,
    ):
        self._store = store
        self._email = email_client
        self._pubsub = pubsub or NullPubSub()
        self._webhooks = webhook_sender or WebhookSender()
        # Guards read-modify-write of per-org channel config
        self._config_lock = threading.Lock()

    def _channel_config(self, organization_id: str) -> NotificationChannelConfig:
        try:
            config = self._store.get_notification_config(organization_id)
        except Exception:
            logger.exception("Could not load notification config for org %s", organization_id)
            config = None
        return config or NotificationChannelConfig(organization_id=organization_id)

    def _recipient(self, organization_id: str, config: NotificationChannelConfig) -> str | None:
        if config.notification_email:
            return config.notification_email
        try:
            org = self._store.get_organization(organization_id)
        except Exception:
            logger.exception("Could not load organization %s for email recipient", organization_id)
            return None
        return org.owner_email if org else None

    def notify(
        self, kind: NotificationKind, organization_id: str, payload: dict[str, Any],
    ) -> DispatchReport:
        """Fan *payload* out to every enabled channel.  Never raises."""
        report = DispatchReport(kind=kind)
        config = self._channel_config(organization_id)
        subject, body = render_email(kind, payload)

        tasks: dict[str, Callable[[], None]] = {}

        recipient = self._recipient(organization_id, config) if config.email_enabled else None
        if recipient and self._email is not None and self._email.configured:
            tasks["email"] = lambda: self._email.send(recipient, subject, body)
        else:
            report.skipped.append("email")

        event_payload = {"type": kind.value, "title": subject, **payload}
        tasks["pubsub"] = lambda: self._pubsub.emit(owner_notification_event(organization_id), event_payload)

        if config.webhook_enabled and config.webhook_url:
            data = {
                "organization_id": organization_id,
                "title": subject,
                "message": render_text(kind, payload),
                **payload,
            }
            envelope = build_envelope(WEBHOOK_EVENTS[kind], data, template=config.webhook_template)

            def _webhook() -> None:
                result = self._deliver_webhook(organization_id, config.webhook_url, envelope)
                if not result.success:
                    raise RuntimeError(result.error or "webhook delivery failed")

            tasks["webhook"] = _webhook
        else:
            report.skipped.append("webhook")

        with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="notify") as pool:
            futures = {name: pool.submit(task) for name, task in tasks.items()}
            for name, future in futures.items():
                try:
                    future.result()
                    report.delivered.append(name)
                except Exception as exc:
                    logger.warning(
                        "%s notification via %s failed for org %s: %s",
                        kind.value, name, organization_id, exc,
                    )
                    report.failed[name] = type(exc).__name__
                    metrics.record_event("NotificationFailed", channel=name, kind=kind.value)

        logger.info(
            "Dispatched %s for org %s (delivered=%s failed=%s)",
            kind.value, organization_id, report.delivered, list(report.failed),
        )
        return report

    # ── Webhooks ─────────────────────────────────────────────────────

    def test_webhook(self, organization_id: str, url: str) -> WebhookResult:
        """Send a sample event to *url* through the production delivery path."""
        problem = validate_webhook_url(url)
        if problem:
            return WebhookResult(success=False, error=problem)

        config = self._channel_config(organization_id)
        envelope = build_envelope(
            "webhook.test",
            {
                "organization_id": organization_id,
                "title": "Webhook test",
                "message": "Your webhook is connected.",
            },
            template=config.webhook_template,
        )
        return self._deliver_webhook(organization_id, url, envelope)

    def _deliver_webhook(self, organization_id: str, url: str, envelope: dict[str, Any]) -> WebhookResult:
        result = self._webhooks.deliver(url, envelope)
        self._track_webhook(organization_id, result)
        return result

    def _track_webhook(self, organization_id: str, result: WebhookResult) -> None:
        with self._config_lock:
            config = self._channel_config(organization_id)
            if result.success:
                config.webhook_verification_status = WebhookVerificationStatus.VERIFIED
                config.webhook_failure_count = 0
                config.webhook_last_delivered_at = datetime.now(UTC)
            else:
                config.webhook_verification_status = WebhookVerificationStatus.FAILED
                config.webhook_failure_count += 1
            try:
                self._store.save_notification_config(config)
            except Exception:
                logger.exception("Could not record webhook status for org %s", organization_id)

    # ── Owner settings ───────────────────────────────────────────────

    def settings(self, organization_id: str) -> NotificationChannelConfig:
        """Stored channel settings, or the defaults if the owner never saved any."""
        config = self._store.get_notification_config(organization_id)
        return config or NotificationChannelConfig(organization_id=organization_id)

    def update_settings(self, organization_id: str, changes: dict[str, Any]) -> NotificationChannelConfig:
        """Upsert owner-editable channel settings.

        An empty ``webhook_url`` clears it.  A new URL starts over as
        ``pending`` with a clean failure count.
        """
        if self._store.get_organization(organization_id) is None:
            raise OrgNotFound(f"Organization {organization_id} not found")

        changes = dict(changes)
        if "webhook_url" in changes:
            url = (changes["webhook_url"] or "").strip() or None
            if url:
                problem = validate_webhook_url(url)
                if problem:
                    raise InvalidSettings(problem)
            changes["webhook_url"] = url

        with self._config_lock:
            current = self.settings(organization_id)
            updated = current.model_copy(update=changes)
            if updated.webhook_enabled and not updated.webhook_url:
                raise InvalidSettings("A webhook URL is required to enable webhook delivery")
            if updated.webhook_url != current.webhook_url:
                updated.webhook_verification_status = WebhookVerificationStatus.PENDING
                updated.webhook_failure_count = 0
                updated.webhook_last_delivered_at = None
            self._store.save_notification_config(updated)

        logger.info("Notification settings updated for org %s: %s", organization_id, sorted(changes))
        return updated
