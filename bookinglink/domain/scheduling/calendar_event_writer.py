"""
Calendar event writer.

Creates the booking's Google Calendar event on the host's calendar with every
internal participant, the client and (for in-person meetings) the room
resource as attendees. Failures become calendar warnings and never undo the
booking.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from sqlalchemy.orm import Session

from ...models import LOCATION_IN_PERSON, Meeting, Room, User
from ...services.google_calendar_service import GoogleCalendarService
from ...services.integration_errors import CALENDAR, IntegrationError, IntegrationFailure
from .progress import LEVEL_INFO, LEVEL_SUCCESS, LEVEL_WARN, ProgressLogSink
from .repository import SchedulingRepository
from .time_calculator import ensure_utc, to_local_iso_with_offset

logger = logging.getLogger(__name__)


@dataclass
class CalendarWriteResult:
    event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    html_link: Optional[str] = None
    skipped: bool = False
    warning: Optional[IntegrationError] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventId": self.event_id,
            "calendarId": self.calendar_id,
            "htmlLink": self.html_link,
            "skipped": self.skipped,
            "warning": self.warning.to_dict() if self.warning else None,
        }


def build_attendees(
    host: User,
    participants: list[User],
    client_email: Optional[str],
    room: Optional[Room],
    location_mode: str,
) -> list[dict[str, Any]]:
    """Host first, other participants, the client, then the room resource"""
    attendees: list[dict[str, Any]] = []
    seen: set[str] = set()

    def add(email: Optional[str], **extra) -> None:
        if not email:
            return
        key = email.strip().lower()
        if key in seen:
            return
        seen.add(key)
        attendees.append({"email": email.strip(), **extra})

    add(host.email)
    for user in participants:
        add(user.email)
    add(client_email)
    if location_mode == LOCATION_IN_PERSON and room and room.resource_email:
        add(room.resource_email, resource=True)
    return attendees


def build_event_body(meeting: Meeting, attendees: list[dict[str, Any]]) -> dict[str, Any]:
    title = meeting.meeting_type.name if meeting.meeting_type else "Meeting"
    client = meeting.client_name or meeting.client_email or "Client"
    lines = [f"{title} with {client}"]
    if meeting.client_email:
        lines.append(f"Email: {meeting.client_email}")
    if meeting.client_phone:
        lines.append(f"Phone: {meeting.client_phone}")

    body: dict[str, Any] = {
        "summary": f"{title} - {client}",
        "description": "\n".join(lines),
        "start": {
            "dateTime": to_local_iso_with_offset(ensure_utc(meeting.start_datetime), meeting.timezone),
            "timeZone": meeting.timezone,
        },
        "end": {
            "dateTime": to_local_iso_with_offset(ensure_utc(meeting.end_datetime), meeting.timezone),
            "timeZone": meeting.timezone,
        },
        "attendees": attendees,
    }
    if meeting.location_mode == LOCATION_IN_PERSON and meeting.room:
        body["location"] = meeting.room.name
    return body


class CalendarEventWriter:
    """Writes and removes a meeting's event on the host's calendar"""

    def __init__(
        self,
        db: Session,
        calendar: GoogleCalendarService,
        sink: Optional[ProgressLogSink] = None,
    ):
        self.db = db
        self.calendar = calendar
        self.sink = sink
        self.repo = SchedulingRepository()

    def _log(self, step: str, level: str, message: str, details: Optional[dict] = None) -> None:
        if self.sink is not None:
            self.sink.log(step, level, message, details)

    def _warn(self, error: IntegrationError) -> CalendarWriteResult:
        logger.warning(f"⚠️ Calendar event not created: {error.message}")
        self._log("calendar_warning", LEVEL_WARN, error.message, error.to_dict())
        return CalendarWriteResult(warning=error)

    async def write(self, meeting: Meeting) -> CalendarWriteResult:
        """Create the event and stage its ids on the meeting; the caller commits"""
        if meeting.calendar_event_id:
            logger.info(f"ℹ️ Meeting {meeting.id} already has calendar event {meeting.calendar_event_id}")
            self._log("calendar_skipped", LEVEL_INFO, "Calendar event already exists")
            return CalendarWriteResult(
                event_id=meeting.calendar_event_id,
                calendar_id=meeting.calendar_event_calendar_id,
                skipped=True,
            )

        host = self.repo.get_user(self.db, meeting.host_user_id)
        if host is None:
            # TODO: decide with product whether host-less bookings should surface a warning
            logger.info(f"ℹ️ Meeting {meeting.id} has no host, skipping calendar event")
            self._log("calendar_skipped", LEVEL_INFO, "No host assigned; calendar event not created")
            return CalendarWriteResult(skipped=True)

        connection = self.repo.get_calendar_connection(self.db, host.id)
        if connection is None:
            return self._warn(
                IntegrationError(system=CALENDAR, message=f"Host {host.email} has no Google Calendar connection")
            )

        try:
            access_token = await self.calendar.get_valid_access_token(connection, self.db)
        except IntegrationFailure as e:
            return self._warn(e.error)

        participant_ids = [uid for uid in (meeting.participant_user_ids or []) if uid != host.id]
        attendees = build_attendees(
            host,
            self.repo.get_users(self.db, participant_ids),
            meeting.client_email,
            meeting.room,
            meeting.location_mode,
        )
        calendar_id = connection.google_calendar_id or "primary"

        self._log(
            "calendar_create",
            LEVEL_INFO,
            "Creating calendar event...",
            {"calendarId": calendar_id, "attendees": len(attendees)},
        )
        try:
            event = await self.calendar.create_event(
                access_token,
                calendar_id,
                build_event_body(meeting, attendees),
                send_updates=bool(meeting.send_invites),
            )
        except IntegrationFailure as e:
            return self._warn(e.error)

        meeting.calendar_event_id = event["id"]
        meeting.calendar_event_calendar_id = calendar_id
        self._log("calendar_created", LEVEL_SUCCESS, "Calendar event created", {"eventId": event["id"]})
        return CalendarWriteResult(event_id=event["id"], calendar_id=calendar_id, html_link=event.get("htmlLink"))

    async def remove(self, meeting: Meeting) -> Optional[IntegrationError]:
        """Delete the meeting's event; returns a warning instead of raising"""
        if not meeting.calendar_event_id:
            return None

        host = self.repo.get_user(self.db, meeting.host_user_id)
        connection = self.repo.get_calendar_connection(self.db, host.id) if host else None
        if connection is None:
            error = IntegrationError(system=CALENDAR, message="No calendar connection to delete the event with")
            self._log("calendar_warning", LEVEL_WARN, error.message, error.to_dict())
            return error

        calendar_id = meeting.calendar_event_calendar_id or connection.google_calendar_id or "primary"
        try:
            access_token = await self.calendar.get_valid_access_token(connection, self.db)
            await self.calendar.delete_event(access_token, calendar_id, meeting.calendar_event_id)
        except IntegrationFailure as e:
            self._log("calendar_warning", LEVEL_WARN, e.error.message, e.error.to_dict())
            return e.error

        self._log("calendar_deleted", LEVEL_SUCCESS, "Calendar event deleted", {"eventId": meeting.calendar_event_id})
        return None
