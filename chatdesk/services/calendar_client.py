"""HTTP client for the Google Calendar API v3 with retry logic and timeouts.

Only the two capabilities the scheduler needs are wrapped:

* ``POST /freeBusy`` – busy intervals for a time range
* ``POST /calendars/{id}/events`` – create an event (with a Meet link)

Each organization connects its own Google account, so the OAuth access
token is passed per call instead of living on the client.  Token refresh
is delegated to ``google-auth``.

Calendar API docs: https://developers.google.com/calendar/api/v3/reference
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from datetime import UTC, datetime
from typing import Any

import httpx
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2.credentials import Credentials

from chatdesk.config import (
    GOOGLE_CALENDAR_BASE_URL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_TOKEN_URI,
    HTTP_TIMEOUT_SECONDS,
)
from chatdesk.errors import ChatdeskError
from chatdesk.models import CalendarCredential
from chatdesk.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0

# Refresh tokens this close to expiry
TOKEN_REFRESH_MARGIN_SECONDS = 60

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]


class CalendarAPIError(ChatdeskError):
    """Raised when a Calendar API call fails after all retries."""

    error_type = "api_failure"

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class CredentialRefreshError(Exception):
    """The stored OAuth credential could not be refreshed."""


BusyInterval = tuple[datetime, datetime]


def _parse_rfc3339(value: str) -> datetime:
    dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


class _TimeoutRequest(GoogleAuthRequest):
    """google-auth transport that always applies our HTTP timeout."""

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        return super().__call__(
            url, method=method, body=body, headers=headers,
            timeout=timeout or HTTP_TIMEOUT_SECONDS, **kwargs,
        )


def needs_refresh(credential: CalendarCredential, *, now: datetime | None = None) -> bool:
    """Return ``True`` if the access token is missing or about to expire."""
    if not credential.access_token:
        return True
    if credential.expires_at is None:
        return False
    now = now or datetime.now(UTC)
    expires_at = credential.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=UTC)
    return (expires_at - now).total_seconds() < TOKEN_REFRESH_MARGIN_SECONDS


def refresh_credential(credential: CalendarCredential) -> CalendarCredential:
    """Exchange the refresh token for a new access token.

    Returns an updated copy of *credential*; the caller persists it.
    """
    if not credential.refresh_token:
        raise CredentialRefreshError("No refresh token stored for this organization")

    creds = Credentials(
        token=credential.access_token,
        refresh_token=credential.refresh_token,
        token_uri=GOOGLE_TOKEN_URI,
        client_id=GOOGLE_CLIENT_ID,
        client_secret=GOOGLE_CLIENT_SECRET,
        scopes=credential.scope.split() if credential.scope else CALENDAR_SCOPES,
    )
    try:
        with metrics.timed("google_oauth", "refresh"):
            creds.refresh(_TimeoutRequest())
    except (RefreshError, TransportError) as exc:
        raise CredentialRefreshError(f"Token refresh failed: {exc}") from exc

    expiry = creds.expiry.replace(tzinfo=UTC) if creds.expiry else None
    logger.info("Refreshed calendar token for org %s", credential.organization_id)
    return credential.model_copy(
        update={
            "access_token": creds.token,
            # Google only re-issues the refresh token occasionally
            "refresh_token": creds.refresh_token or credential.refresh_token,
            "expires_at": expiry,
        },
    )


class GoogleCalendarClient:
    """Thin wrapper around the Calendar REST API with automatic retries.

    Timeouts, connection errors and 5xx responses are retried with
    exponential backoff; 4xx responses fail immediately.  Every call is
    bounded by ``REQUEST_TIMEOUT_SECONDS``.
    """

    def __init__(self, base_url: str | None = None, *, http_client: httpx.Client | None = None):
        self._base_url = base_url or GOOGLE_CALENDAR_BASE_URL
        self._client = http_client or httpx.Client(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                if response.status_code >= 500:
                    raise CalendarAPIError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                if response.status_code >= 400:
                    raise CalendarAPIError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise CalendarAPIError(
                        f"Unreadable response body: {exc}", status_code=response.status_code,
                    ) from exc

            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Calendar API attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except CalendarAPIError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Calendar API server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise CalendarAPIError(
            f"Calendar API request failed after {MAX_RETRIES} retries: {last_error}"
        )

    # ── Public API methods ───────────────────────────────────────────

    def query_free_busy(
        self,
        access_token: str,
        time_min: datetime,
        time_max: datetime,
        *,
        timezone: str = "UTC",
        calendar_id: str = "primary",
    ) -> list[BusyInterval]:
        """Return busy ``(start, end)`` intervals between *time_min* and *time_max*.

        **Never cached**: availability changes in real time.
        """
        with metrics.timed("google_calendar", "freebusy"):
            data = self._request(
                "POST",
                "/freeBusy",
                access_token,
                json_body={
                    "timeMin": time_min.isoformat(),
                    "timeMax": time_max.isoformat(),
                    "timeZone": timezone,
                    "items": [{"id": calendar_id}],
                },
            )

        calendar = data.get("calendars", {}).get(calendar_id, {})
        if calendar.get("errors"):
            raise CalendarAPIError(f"Free/busy query rejected: {calendar['errors']}")
        try:
            return [
                (_parse_rfc3339(b["start"]), _parse_rfc3339(b["end"]))
                for b in calendar.get("busy", [])
            ]
        except (KeyError, TypeError, ValueError) as exc:
            raise CalendarAPIError(f"Malformed free/busy interval: {exc}") from exc

    def insert_event(
        self,
        access_token: str,
        *,
        summary: str,
        description: str,
        start: datetime,
        end: datetime,
        timezone: str,
        attendees: list[dict[str, str]],
        calendar_id: str = "primary",
    ) -> dict[str, Any]:
        """Create an event with a Google Meet conference and email reminders.

        Returns the event resource; ``id`` is guaranteed present.
        """
        body = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": start.isoformat(), "timeZone": timezone},
            "end": {"dateTime": end.isoformat(), "timeZone": timezone},
            "attendees": attendees,
            "conferenceData": {
                "createRequest": {
                    "requestId": str(uuid.uuid4()),
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                },
            },
            "reminders": {
                "useDefault": False,
                "overrides": [
                    {"method": "email", "minutes": 24 * 60},
                    {"method": "popup", "minutes": 30},
                ],
            },
            "guestsCanModify": False,
            "guestsCanInviteOthers": False,
            "guestsCanSeeOtherGuests": False,
        }
        with metrics.timed("google_calendar", "events_insert"):
            event = self._request(
                "POST",
                f"/calendars/{calendar_id}/events",
                access_token,
                params={"conferenceDataVersion": 1, "sendUpdates": "all"},
                json_body=body,
            )
        if not event.get("id"):
            raise CalendarAPIError("Event ID is missing from Google Calendar response")
        return event


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: GoogleCalendarClient | None = None
_client_lock = threading.Lock()


def get_calendar_client() -> GoogleCalendarClient:
    """Return a module-level client singleton (double-checked locking)."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = GoogleCalendarClient()
    return _client
