"""
Booking confirmation.

The meeting row is the source of truth and is committed first. The CRM
appointment and the calendar event are then written one after the other;
either may fail without undoing the booking, in which case its failure is
returned as a warning.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from cryptography.fernet import InvalidToken
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ... import config
from ...models import (
    LOCATION_IN_PERSON,
    MEETING_BOOKED,
    REQUEST_COMPLETED,
    Meeting,
)
from ...security_utils import decrypt_token
from ...services.crm_service import CrmService
from ...services.google_calendar_service import GoogleCalendarService
from ...services.integration_errors import (
    CALENDAR,
    CRM,
    KIND_ERROR,
    KIND_TIMEOUT,
    IntegrationError,
    IntegrationFailure,
)
from .appointment_writer import AppointmentRequest, AppointmentWriteResult, ExternalAppointmentWriter
from .calendar_event_writer import CalendarEventWriter, CalendarWriteResult
from .errors import InvalidSlot, MeetingNotFound, MeetingWriteFailed, NoActiveBooking
from .progress import (
    DONE_STEP,
    LEVEL_ERROR,
    LEVEL_INFO,
    LEVEL_SUCCESS,
    LEVEL_WARN,
    ProgressHub,
    ProgressLogSink,
)
from .repository import SchedulingRepository
from .time_calculator import ensure_utc, resolve_timezone, to_naive_utc, utcnow
from .token_service import BookingLinkService

logger = logging.getLogger(__name__)

CrmFactory = Callable[[str], CrmService]


def appointment_name(meeting: Meeting) -> str:
    title = meeting.meeting_type.name if meeting.meeting_type else "Meeting"
    return f"{title} - {meeting.client_name or meeting.client_email or 'Client'}"


def appointment_description(meeting: Meeting) -> str:
    lines = [f"Booked via booking link for {meeting.client_name or 'client'}"]
    if meeting.client_email:
        lines.append(f"Email: {meeting.client_email}")
    if meeting.client_phone:
        lines.append(f"Phone: {meeting.client_phone}")
    lines.append(f"Location: {meeting.location_mode}")
    return "\n".join(lines)


class BookingService:
    """Confirms bookings and pushes them to the CRM and calendar"""

    def __init__(
        self,
        db: Session,
        session_factory: Callable[[], Session],
        calendar: GoogleCalendarService,
        crm_factory: CrmFactory = CrmService,
        hub: Optional[ProgressHub] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.session_factory = session_factory
        self.calendar = calendar
        self.crm_factory = crm_factory
        self.hub = hub
        self.clock = clock
        self.repo = SchedulingRepository()
        self.links = BookingLinkService(db, clock)

    def _sink(self, meeting_id: int, run_id: Optional[str]) -> ProgressLogSink:
        return ProgressLogSink(
            self.session_factory, meeting_id, run_id or uuid.uuid4().hex, hub=self.hub, clock=self.clock
        )

    def _crm_client(self) -> tuple[Optional[CrmService], Optional[IntegrationError]]:
        connection = self.repo.get_latest_crm_connection(self.db)
        if not connection:
            return None, IntegrationError(system=CRM, message="CRM is not connected")
        try:
            access_token = decrypt_token(connection.access_token)
        except InvalidToken:
            return None, IntegrationError(system=CRM, message="Stored CRM token could not be decrypted")
        return self.crm_factory(access_token), None

    def _audit(self, meeting: Meeting, action_type: str, details: dict[str, Any]) -> None:
        try:
            self.repo.add_audit_log(self.db, meeting.id, action_type, details)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to write audit log for meeting {meeting.id}: {e}")

    # ========================================================================
    # CONFIRM
    # ========================================================================

    def _check_slot(self, meeting: Meeting, start: datetime, end: datetime) -> None:
        start, end = ensure_utc(start), ensure_utc(end)
        if end <= start:
            raise InvalidSlot("End time must be after start time")
        if end - start != timedelta(minutes=meeting.duration_minutes):
            raise InvalidSlot(f"Selected time must be {meeting.duration_minutes} minutes long")
        if start <= ensure_utc(self.clock()):
            raise InvalidSlot("Selected time is in the past")

    async def confirm(
        self,
        token: str,
        start: datetime,
        end: datetime,
        run_id: Optional[str] = None,
    ) -> dict[str, Any]:
        request = self.links.validate_open(token)
        meeting = request.meeting
        self._check_slot(meeting, start, end)

        sink = self._sink(meeting.id, run_id)
        sink.log(
            "booking_started",
            LEVEL_INFO,
            "Confirming booking...",
            {"start": ensure_utc(start).isoformat(), "end": ensure_utc(end).isoformat()},
        )

        try:
            meeting.status = MEETING_BOOKED
            meeting.start_datetime = to_naive_utc(start)
            meeting.end_datetime = to_naive_utc(end)
            request.status = REQUEST_COMPLETED
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to save booking for meeting {meeting.id}: {e}")
            sink.log("meeting_saved", LEVEL_ERROR, "Failed to save booking")
            raise MeetingWriteFailed() from e

        logger.info(f"✅ Meeting {meeting.id} booked for {meeting.start_datetime}")
        sink.log("meeting_saved", LEVEL_SUCCESS, "Booking saved")
        return await self._push_integrations(meeting, sink, "booking_confirmed")

    async def sync_integrations(self, meeting_id: int, run_id: Optional[str] = None) -> dict[str, Any]:
        """Re-run the CRM and calendar writes for a booked meeting, skipping finished parts"""
        meeting = self.repo.get_meeting(self.db, meeting_id)
        if not meeting:
            raise MeetingNotFound()
        if meeting.status != MEETING_BOOKED or not meeting.start_datetime:
            raise NoActiveBooking("Meeting is not booked")

        sink = self._sink(meeting.id, run_id)
        sink.log("sync_started", LEVEL_INFO, "Re-syncing booking integrations...")
        return await self._push_integrations(meeting, sink, "booking_resynced")

    async def _push_integrations(self, meeting: Meeting, sink: ProgressLogSink, action: str) -> dict[str, Any]:
        warnings: list[IntegrationError] = []

        crm_result: Optional[AppointmentWriteResult] = None
        try:
            crm_result, crm_warnings = await self._write_crm(meeting, sink)
            warnings.extend(crm_warnings)
        except Exception as e:
            logger.exception(f"❌ Unexpected CRM failure for meeting {meeting.id}")
            error = IntegrationError(system=CRM, message=f"Unexpected CRM failure: {type(e).__name__}")
            sink.log("crm_warning", LEVEL_WARN, error.message, error.to_dict())
            warnings.append(error)

        calendar_result: Optional[CalendarWriteResult] = None
        try:
            calendar_result = await CalendarEventWriter(self.db, self.calendar, sink).write(meeting)
            if calendar_result.warning:
                warnings.append(calendar_result.warning)
        except Exception as e:
            logger.exception(f"❌ Unexpected calendar failure for meeting {meeting.id}")
            error = IntegrationError(system=CALENDAR, message=f"Unexpected calendar failure: {type(e).__name__}")
            sink.log("calendar_warning", LEVEL_WARN, error.message, error.to_dict())
            warnings.append(error)

        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to store external ids for meeting {meeting.id}: {e}")
            sink.log("external_ids_saved", LEVEL_ERROR, "Failed to store external ids")
            raise MeetingWriteFailed("Booking saved but external ids could not be stored") from e

        warning_dicts = [w.to_dict() for w in warnings]
        self._audit(
            meeting,
            action,
            {
                "runId": sink.run_id,
                "externalAppointmentId": meeting.external_appointment_id,
                "unverifiedAppointmentId": meeting.unverified_appointment_id,
                "calendarEventId": meeting.calendar_event_id,
                "crm": crm_result.to_dict() if crm_result else None,
                "warnings": warning_dicts,
            },
        )

        message = "Booking confirmed" if not warnings else f"Booking confirmed with {len(warnings)} warning(s)"
        sink.log(DONE_STEP, LEVEL_SUCCESS, message, {"warnings": warning_dicts})

        return {
            "meetingId": meeting.id,
            "runId": sink.run_id,
            "status": meeting.status,
            "startDatetime": ensure_utc(meeting.start_datetime),
            "endDatetime": ensure_utc(meeting.end_datetime),
            "externalAppointmentId": meeting.external_appointment_id,
            "unverifiedAppointmentId": meeting.unverified_appointment_id,
            "calendarEventId": meeting.calendar_event_id,
            "crm": crm_result.to_dict() if crm_result else None,
            "warnings": warning_dicts,
        }

    # ========================================================================
    # CRM FLOW
    # ========================================================================

    async def _write_crm(
        self, meeting: Meeting, sink: ProgressLogSink
    ) -> tuple[Optional[AppointmentWriteResult], list[IntegrationError]]:
        if meeting.external_appointment_id:
            logger.info(f"ℹ️ Meeting {meeting.id} already has CRM appointment {meeting.external_appointment_id}")
            sink.log("crm_skipped", LEVEL_INFO, "CRM appointment already recorded")
            return None, []

        warnings: list[IntegrationError] = []

        def warn(error: IntegrationError) -> None:
            sink.log("crm_warning", LEVEL_WARN, error.message, error.to_dict())
            warnings.append(error)

        crm, error = self._crm_client()
        if error:
            warn(error)
            return None, warnings

        host = self.repo.get_user(self.db, meeting.host_user_id)
        owner = None
        sink.log("crm_owner", LEVEL_INFO, "Resolving CRM owner...")
        try:
            owner = await crm.resolve_owner(host.email if host else None)
        except IntegrationFailure as e:
            warn(e.error)
        if owner:
            sink.log("crm_owner_resolved", LEVEL_SUCCESS, f"CRM owner {owner.id}", {"timezone": owner.timezone})

        contact_id = meeting.external_contact_id
        if not contact_id and meeting.client_email:
            sink.log("crm_contact", LEVEL_INFO, "Finding or creating CRM contact...")
            try:
                contact_id = await crm.find_or_create_contact(
                    meeting.client_email, meeting.client_name, meeting.client_phone
                )
                meeting.external_contact_id = contact_id
                sink.log("crm_contact_resolved", LEVEL_SUCCESS, f"CRM contact {contact_id}")
            except IntegrationFailure as e:
                warn(e.error)

        matter_id = meeting.external_matter_id
        if not matter_id and contact_id:
            sink.log("crm_matter", LEVEL_INFO, "Finding or creating CRM matter...")
            try:
                matter_id = await crm.find_or_create_matter(contact_id, meeting.client_name)
                meeting.external_matter_id = matter_id
                sink.log("crm_matter_resolved", LEVEL_SUCCESS, f"CRM matter {matter_id}")
            except IntegrationFailure as e:
                warn(e.error)

        in_person = meeting.location_mode == LOCATION_IN_PERSON
        request = AppointmentRequest(
            name=appointment_name(meeting),
            description=appointment_description(meeting),
            start=ensure_utc(meeting.start_datetime),
            end=ensure_utc(meeting.end_datetime),
            timezone=resolve_timezone(
                owner.timezone if owner else None, meeting.timezone, config.DEFAULT_TIMEZONE
            ),
            user_id=owner.id if owner else None,
            contact_id=contact_id,
            matter_id=matter_id,
            event_type_id=meeting.meeting_type.crm_event_type_id if meeting.meeting_type else None,
            location_id=meeting.room.crm_location_id if in_person and meeting.room else None,
            requires_location=in_person,
        )

        result = await ExternalAppointmentWriter(crm, sink).write(
            request, existing_id=meeting.unverified_appointment_id
        )

        if result.persisted:
            meeting.external_appointment_id = result.created_id
            meeting.unverified_appointment_id = None
            sink.log("crm_appointment", LEVEL_SUCCESS, f"CRM appointment {result.created_id} verified")
        else:
            meeting.unverified_appointment_id = result.created_id
            last = result.attempts[-1] if result.attempts else None
            warn(
                IntegrationError(
                    system=CRM,
                    message=result.error or "CRM appointment was not persisted",
                    status=last.http_status if last else None,
                    response_excerpt=last.note if last and last.note != KIND_TIMEOUT else None,
                    kind=KIND_TIMEOUT if last and last.note == KIND_TIMEOUT else KIND_ERROR,
                )
            )
        return result, warnings
