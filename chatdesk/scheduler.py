"""Appointment booking against each organization's Google Calendar.

All wall-clock inputs (``date`` = ``YYYY-MM-DD``, ``time`` = ``HH:MM``) are
interpreted in the organization's timezone, falling back to UTC when the
organization has none or an unknown one.  Availability is **never cached**.
"""

from __future__ import annotations

import logging
from datetime import datetime, time as dtime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from chatdesk.errors import (
    AvailabilityCheckFailed,
    CalendarNotConnected,
    OrgNotFound,
    PersistenceFailure,
)
from chatdesk.models import Appointment, NotificationKind, Organization
from chatdesk.services.calendar_client import (
    BusyInterval,
    CalendarAPIError,
    CredentialRefreshError,
    GoogleCalendarClient,
    needs_refresh,
    refresh_credential,
)
from chatdesk.store import Store

logger = logging.getLogger(__name__)

# ── Business-hours grid ─────────────────────────────────────────────
BUSINESS_DAY_START = dtime(9, 0)
BUSINESS_DAY_END = dtime(17, 0)
SLOT_STEP = timedelta(hours=1)
MAX_ALTERNATIVES = 3
DEFAULT_DURATION_MINUTES = 30


class Slot(BaseModel):
    date: str
    time: str
    start: datetime
    end: datetime

    def label(self) -> str:
        return self.start.strftime("%a %d %b %Y at %H:%M")


class BookingDetails(BaseModel):
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    service_type: str = "Consultation"
    date: str
    time: str
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    notes: str | None = None


class BookingResult(BaseModel):
    success: bool
    message: str
    error_type: str | None = None
    appointment: Appointment | None = None
    # Event exists on the calendar but the local row could not be written
    tentative: bool = False
    alternatives: list[Slot] = Field(default_factory=list)

    def to_tool_result(self) -> dict:
        result: dict = {"success": self.success, "message": self.message}
        if self.error_type:
            result["error_type"] = self.error_type
        if self.appointment is not None:
            result["appointment_id"] = self.appointment.id
            result["scheduled_at"] = self.appointment.scheduled_at.isoformat()
            result["meeting_link"] = self.appointment.external_meeting_link
        if self.alternatives:
            result["alternatives"] = [
                {"date": s.date, "time": s.time, "label": s.label()} for s in self.alternatives
            ]
        return result


def resolve_timezone(name: str | None) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def _overlaps(start: datetime, end: datetime, intervals: list[BusyInterval]) -> bool:
    return any(start < busy_end and busy_start < end for busy_start, busy_end in intervals)


def candidate_grid(day: datetime, duration: timedelta) -> list[tuple[datetime, datetime]]:
    """Hourly ``(start, end)`` candidates for *day* that finish by close of business."""
    opening = day.replace(hour=BUSINESS_DAY_START.hour, minute=BUSINESS_DAY_START.minute)
    closing = day.replace(hour=BUSINESS_DAY_END.hour, minute=BUSINESS_DAY_END.minute)
    grid = []
    start = opening
    while start + duration <= closing:
        grid.append((start, start + duration))
        start += SLOT_STEP
    return grid


class Scheduler:
    """Availability checks, alternative-slot search and booking."""

    def __init__(self, store: Store, calendar: GoogleCalendarClient, dispatcher=None):
        self._store = store
        self._calendar = calendar
        self._dispatcher = dispatcher

    # ── Internal helpers ─────────────────────────────────────────────

    def _organization(self, organization_id: str) -> Organization:
        org = self._store.get_organization(organization_id)
        if org is None:
            raise OrgNotFound(f"Organization {organization_id} not found")
        return org

    def _access_token(self, organization_id: str) -> str:
        credential = self._store.get_calendar_credential(organization_id)
        if credential is None or not (credential.access_token or credential.refresh_token):
            raise CalendarNotConnected(f"No calendar connected for organization {organization_id}")

        if needs_refresh(credential):
            try:
                credential = refresh_credential(credential)
            except CredentialRefreshError as exc:
                raise CalendarNotConnected(str(exc)) from exc
            try:
                self._store.save_calendar_credential(credential)
            except PersistenceFailure:
                logger.exception("Could not persist refreshed token for org %s", organization_id)

        return credential.access_token

    @staticmethod
    def _local(date: str, time: str, tz: ZoneInfo) -> datetime:
        return datetime.strptime(f"{date} {time}", "%Y-%m-%d %H:%M").replace(tzinfo=tz)

    def _busy(self, token: str, start: datetime, end: datetime, tz: ZoneInfo) -> list[BusyInterval]:
        try:
            return self._calendar.query_free_busy(token, start, end, timezone=tz.key)
        except CalendarAPIError as exc:
            raise AvailabilityCheckFailed(str(exc)) from exc

    # ── Public API ───────────────────────────────────────────────────

    def check_availability(
        self, organization_id: str, date: str, time: str,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
    ) -> bool:
        """Return ``True`` if nothing on the calendar overlaps the requested interval."""
        org = self._organization(organization_id)
        tz = resolve_timezone(org.timezone)
        start = self._local(date, time, tz)
        end = start + timedelta(minutes=duration_minutes)
        busy = self._busy(self._access_token(organization_id), start, end, tz)
        return not _overlaps(start, end, busy)

    def find_alternatives(
        self, organization_id: str, date: str,
        duration_minutes: int = DEFAULT_DURATION_MINUTES,
    ) -> list[Slot]:
        """First free hourly slots of *date* (at most three, chronological).

        A single free/busy query covers the whole business day.  Returned
        slots never overlap a busy interval or each other.
        """
        org = self._organization(organization_id)
        tz = resolve_timezone(org.timezone)
        day = self._local(date, "00:00", tz)
        duration = timedelta(minutes=duration_minutes)
        grid = candidate_grid(day, duration)
        if not grid:
            return []

        busy = self._busy(self._access_token(organization_id), grid[0][0], grid[-1][1], tz)

        slots: list[Slot] = []
        taken: list[BusyInterval] = []
        for start, end in grid:
            if _overlaps(start, end, busy) or _overlaps(start, end, taken):
                continue
            slots.append(Slot(date=date, time=start.strftime("%H:%M"), start=start, end=end))
            taken.append((start, end))
            if len(slots) == MAX_ALTERNATIVES:
                break
        return slots

    def book(self, organization_id: str, details: BookingDetails) -> BookingResult:
        """Create the calendar event, persist the appointment and notify the owner.

        Never raises: every failure is reported through ``error_type``.
        """
        # 1. Organization and timezone
        try:
            org = self._organization(organization_id)
        except OrgNotFound:
            return BookingResult(
                success=False, error_type="org_not_found",
                message="This business could not be found, so the booking could not be made.",
            )
        except Exception:
            logger.exception("Organization lookup failed for %s", organization_id)
            return BookingResult(
                success=False, error_type="org_fetch_failed",
                message="I couldn't load the business calendar settings right now.",
            )
        tz = resolve_timezone(org.timezone)

        try:
            start = self._local(details.date, details.time, tz)
        except ValueError:
            return BookingResult(
                success=False, error_type="invalid_datetime",
                message="The date or time was not understood. Use YYYY-MM-DD and HH:MM.",
            )
        end = start + timedelta(minutes=details.duration_minutes)

        # 2. Calendar credential
        try:
            token = self._access_token(organization_id)
        except CalendarNotConnected:
            logger.warning("Booking attempted for org %s without a connected calendar", organization_id)
            return BookingResult(
                success=False, error_type="calendar_not_connected",
                message="Online booking isn't set up for this business yet.",
            )
        except Exception:
            logger.exception("Could not load calendar credential for org %s", organization_id)
            return BookingResult(
                success=False, error_type="calendar_not_connected",
                message="I couldn't reach the business calendar right now.",
            )

        # 3. Availability
        try:
            free = not _overlaps(start, end, self._busy(token, start, end, tz))
        except Exception:
            logger.exception("Availability check failed for org %s", organization_id)
            return BookingResult(
                success=False, error_type="availability_check_failed",
                message="I couldn't check the calendar right now.",
            )
        if not free:
            try:
                alternatives = self.find_alternatives(
                    organization_id, details.date, details.duration_minutes,
                )
            except (AvailabilityCheckFailed, CalendarNotConnected):
                logger.exception("Alternative slot search failed for org %s", organization_id)
                alternatives = []
            message = (
                "That time is already taken. Here are some other times that day."
                if alternatives
                else "That time is already taken and the day is fully booked. Please try a different date."
            )
            return BookingResult(
                success=False, error_type="slot_unavailable",
                message=message, alternatives=alternatives,
            )

        # 4. External event
        try:
            event = self._calendar.insert_event(
                token,
                summary=f"{details.service_type} with {details.customer_name}",
                description=details.notes or f"Booked via chat by {details.customer_name}",
                start=start,
                end=end,
                timezone=tz.key,
                attendees=[{"email": details.customer_email, "displayName": details.customer_name}],
            )
        except Exception:
            logger.exception("Calendar event creation failed for org %s", organization_id)
            return BookingResult(
                success=False, error_type="api_failure",
                message="The calendar service didn't accept the booking.",
            )

        appointment = Appointment(
            organization_id=organization_id,
            customer_name=details.customer_name,
            customer_email=details.customer_email,
            customer_phone=details.customer_phone,
            service_type=details.service_type,
            scheduled_at=start,
            duration_minutes=details.duration_minutes,
            external_event_id=event["id"],
            external_meeting_link=event.get("hangoutLink") or event.get("htmlLink"),
            notes=details.notes,
        )

        # 5. Persist; the calendar event stays even if this fails
        tentative = False
        try:
            appointment = self._store.insert_appointment(appointment)
        except Exception:
            logger.exception(
                "Appointment row not saved for event %s (org %s)", event["id"], organization_id,
            )
            tentative = True

        # 6. Owner notification
        if self._dispatcher is not None:
            try:
                self._dispatcher.notify(
                    NotificationKind.APPOINTMENT_BOOKED,
                    organization_id,
                    {
                        "customer_name": details.customer_name,
                        "customer_email": details.customer_email,
                        "customer_phone": details.customer_phone,
                        "service_type": details.service_type,
                        "scheduled_at": start.isoformat(),
                        "meeting_link": appointment.external_meeting_link,
                    },
                )
            except Exception:
                logger.exception("Appointment notification failed for org %s", organization_id)

        logger.info("Booked %s for org %s at %s", appointment.id, organization_id, start.isoformat())
        return BookingResult(
            success=True,
            tentative=tentative,
            appointment=appointment,
            message=f"Appointment confirmed for {start.strftime('%a %d %b %Y at %H:%M')}.",
        )
