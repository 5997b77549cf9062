"""Tests for the Google Calendar client and OAuth refresh helpers."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock, patch

import httpx
import pytest
from google.auth.exceptions import RefreshError

from chatdesk.models import CalendarCredential
from chatdesk.services.calendar_client import (
    INITIAL_BACKOFF_SECONDS,
    MAX_RETRIES,
    CalendarAPIError,
    CredentialRefreshError,
    GoogleCalendarClient,
    needs_refresh,
    refresh_credential,
)

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)
END = datetime(2026, 3, 2, 17, 0, tzinfo=UTC)


# ── Tests: query_free_busy ───────────────────────────────────────────


class TestQueryFreeBusy:
    def test_returns_busy_intervals(self, mock_response):
        client = GoogleCalendarClient()
        data = {
            "calendars": {
                "primary": {
                    "busy": [
                        {"start": "2026-03-02T10:00:00Z", "end": "2026-03-02T11:00:00Z"},
                        {"start": "2026-03-02T13:30:00+00:00", "end": "2026-03-02T14:00:00+00:00"},
                    ]
                }
            }
        }
        with patch.object(client._client, "request", return_value=mock_response(data)) as mock_req:
            busy = client.query_free_busy("tok", START, END, timezone="Europe/Dublin")

        assert busy[0] == (
            datetime(2026, 3, 2, 10, 0, tzinfo=UTC),
            datetime(2026, 3, 2, 11, 0, tzinfo=UTC),
        )
        assert len(busy) == 2
        kwargs = mock_req.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer tok"
        assert kwargs["json"]["timeZone"] == "Europe/Dublin"
        assert kwargs["json"]["items"] == [{"id": "primary"}]

    def test_empty_calendar_is_free(self, mock_response):
        client = GoogleCalendarClient()
        data = {"calendars": {"primary": {"busy": []}}}
        with patch.object(client._client, "request", return_value=mock_response(data)):
            assert client.query_free_busy("tok", START, END) == []

    def test_calendar_errors_raise(self, mock_response):
        client = GoogleCalendarClient()
        data = {"calendars": {"primary": {"errors": [{"reason": "notFound"}]}}}
        with patch.object(client._client, "request", return_value=mock_response(data)):
            with pytest.raises(CalendarAPIError, match="rejected"):
                client.query_free_busy("tok", START, END)


# ── Tests: insert_event ──────────────────────────────────────────────


class TestInsertEvent:
    def test_creates_event_with_meet_link(self, mock_response):
        client = GoogleCalendarClient()
        event = {"id": "evt-1", "hangoutLink": "https://meet.google.com/abc"}
        with patch.object(client._client, "request", return_value=mock_response(event)) as mock_req:
            result = client.insert_event(
                "tok",
                summary="Demo with Ada",
                description="Booked via chat",
                start=START,
                end=START + timedelta(minutes=30),
                timezone="UTC",
                attendees=[{"email": "ada@acme.com"}],
            )

        assert result["id"] == "evt-1"
        args, kwargs = mock_req.call_args
        assert args == ("POST", "/calendars/primary/events")
        assert kwargs["params"] == {"conferenceDataVersion": 1, "sendUpdates": "all"}
        body = kwargs["json"]
        assert body["conferenceData"]["createRequest"]["conferenceSolutionKey"] == {"type": "hangoutsMeet"}
        assert body["attendees"] == [{"email": "ada@acme.com"}]

    def test_missing_event_id_raises(self, mock_response):
        client = GoogleCalendarClient()
        with patch.object(client._client, "request", return_value=mock_response({"status": "ok"})):
            with pytest.raises(CalendarAPIError, match="Event ID"):
                client.insert_event(
                    "tok", summary="s", description="d", start=START, end=END,
                    timezone="UTC", attendees=[],
                )


# ── Tests: retry logic ───────────────────────────────────────────────


class TestRetryLogic:
    @patch("chatdesk.services.calendar_client.time.sleep")
    def test_retries_on_timeout_then_succeeds(self, mock_sleep, mock_response):
        client = GoogleCalendarClient()
        ok = mock_response({"calendars": {"primary": {"busy": []}}})
        with patch.object(
            client._client, "request",
            side_effect=[httpx.TimeoutException("slow"), ok],
        ) as mock_req:
            assert client.query_free_busy("tok", START, END) == []
        assert mock_req.call_count == 2
        mock_sleep.assert_called_once_with(INITIAL_BACKOFF_SECONDS)

    @patch("chatdesk.services.calendar_client.time.sleep")
    def test_retries_on_5xx_and_gives_up(self, mock_sleep, mock_response):
        client = GoogleCalendarClient()
        with patch.object(
            client._client, "request", return_value=mock_response({}, status_code=503),
        ) as mock_req:
            with pytest.raises(CalendarAPIError, match="after 3 retries"):
                client.query_free_busy("tok", START, END)
        assert mock_req.call_count == MAX_RETRIES
        # No sleep after the final attempt
        assert mock_sleep.call_count == MAX_RETRIES - 1

    @patch("chatdesk.services.calendar_client.time.sleep")
    def test_4xx_is_not_retried(self, mock_sleep, mock_response):
        client = GoogleCalendarClient()
        with patch.object(
            client._client, "request", return_value=mock_response({}, status_code=401),
        ) as mock_req:
            with pytest.raises(CalendarAPIError) as exc_info:
                client.query_free_busy("tok", START, END)
        assert exc_info.value.status_code == 401
        assert mock_req.call_count == 1
        mock_sleep.assert_not_called()

    @patch("chatdesk.services.calendar_client.time.sleep")
    def test_backoff_is_exponential(self, mock_sleep):
        client = GoogleCalendarClient()
        with patch.object(client._client, "request", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(CalendarAPIError):
                client.query_free_busy("tok", START, END)
        delays = [c.args[0] for c in mock_sleep.call_args_list]
        assert delays == [INITIAL_BACKOFF_SECONDS, INITIAL_BACKOFF_SECONDS * 2]

    @patch("chatdesk.services.calendar_client.time.sleep")
    @pytest.mark.parametrize(
        "error", [httpx.ReadError("connection reset"), httpx.RemoteProtocolError("bad framing")],
    )
    def test_any_transport_error_is_retried_and_wrapped(self, mock_sleep, error):
        client = GoogleCalendarClient()
        with patch.object(client._client, "request", side_effect=error) as mock_req:
            with pytest.raises(CalendarAPIError, match="after 3 retries"):
                client.query_free_busy("tok", START, END)
        assert mock_req.call_count == MAX_RETRIES

    def test_non_json_body_is_wrapped(self, mock_response):
        client = GoogleCalendarClient()
        garbled = mock_response({})
        garbled.json.side_effect = ValueError("Expecting value")
        with patch.object(client._client, "request", return_value=garbled):
            with pytest.raises(CalendarAPIError, match="Unreadable"):
                client.query_free_busy("tok", START, END)

    def test_malformed_busy_interval_is_wrapped(self, mock_response):
        client = GoogleCalendarClient()
        data = {"calendars": {"primary": {"busy": [{"start": "2026-03-02T10:00:00Z"}]}}}
        with patch.object(client._client, "request", return_value=mock_response(data)):
            with pytest.raises(CalendarAPIError, match="Malformed"):
                client.query_free_busy("tok", START, END)


# ── Tests: credential refresh ────────────────────────────────────────


class TestNeedsRefresh:
    NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

    def test_missing_access_token(self):
        cred = CalendarCredential(organization_id="o", refresh_token="r")
        assert needs_refresh(cred, now=self.NOW)

    def test_expiring_within_margin(self):
        cred = CalendarCredential(
            organization_id="o", access_token="a", expires_at=self.NOW + timedelta(seconds=30),
        )
        assert needs_refresh(cred, now=self.NOW)

    def test_valid_token(self):
        cred = CalendarCredential(
            organization_id="o", access_token="a", expires_at=self.NOW + timedelta(hours=1),
        )
        assert not needs_refresh(cred, now=self.NOW)

    def test_no_expiry_is_trusted(self):
        cred = CalendarCredential(organization_id="o", access_token="a")
        assert not needs_refresh(cred, now=self.NOW)


class TestRefreshCredential:
    def test_without_refresh_token_raises(self):
        with pytest.raises(CredentialRefreshError):
            refresh_credential(CalendarCredential(organization_id="o", access_token="a"))

    @patch("chatdesk.services.calendar_client.Credentials")
    def test_returns_updated_copy(self, mock_credentials_cls):
        creds = MagicMock()
        creds.token = "new-access"
        creds.refresh_token = None
        creds.expiry = datetime(2026, 3, 2, 13, 0)
        mock_credentials_cls.return_value = creds

        original = CalendarCredential(organization_id="o", access_token="old", refresh_token="r")
        updated = refresh_credential(original)

        creds.refresh.assert_called_once()
        assert updated.access_token == "new-access"
        assert updated.refresh_token == "r"
        assert updated.expires_at == datetime(2026, 3, 2, 13, 0, tzinfo=UTC)
        assert original.access_token == "old"

    @patch("chatdesk.services.calendar_client.Credentials")
    def test_google_refusal_is_wrapped(self, mock_credentials_cls):
        creds = MagicMock()
        creds.refresh.side_effect = RefreshError("invalid_grant")
        mock_credentials_cls.return_value = creds

        with pytest.raises(CredentialRefreshError, match="invalid_grant"):
            refresh_credential(CalendarCredential(organization_id="o", refresh_token="r"))
