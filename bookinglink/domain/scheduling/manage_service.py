"""Client-side reschedule and cancel through the booking link"""

import logging
from datetime import timedelta
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError

from ... import config
from ...models import (
    MEETING_BOOKED,
    MEETING_CANCELLED,
    MEETING_RESCHEDULED,
    REQUEST_EXPIRED,
    Meeting,
)
from ...services.integration_errors import CALENDAR, CRM, IntegrationError, IntegrationFailure
from .booking_service import BookingService, appointment_name
from .calendar_event_writer import CalendarEventWriter
from .errors import ChangeWindowClosed, MeetingWriteFailed, NoActiveBooking
from .progress import DONE_STEP, LEVEL_ERROR, LEVEL_INFO, LEVEL_SUCCESS, LEVEL_WARN, ProgressLogSink
from .time_calculator import ensure_utc, to_naive_utc

logger = logging.getLogger(__name__)

ACTION_RESCHEDULE = "reschedule"
ACTION_CANCEL = "cancel"


class ManageBookingService(BookingService):
    """Reschedule or cancel a booked meeting"""

    min_notice_hours: int = config.MIN_NOTICE_HOURS_FOR_CHANGES

    def _check_change_window(self, meeting: Meeting) -> None:
        if meeting.status == MEETING_CANCELLED:
            raise NoActiveBooking("This booking has already been cancelled")
        if meeting.status != MEETING_BOOKED or not meeting.start_datetime:
            raise NoActiveBooking()

        cutoff = ensure_utc(meeting.start_datetime) - timedelta(hours=self.min_notice_hours)
        if ensure_utc(self.clock()) > cutoff:
            raise ChangeWindowClosed(self.min_notice_hours)

    async def _cancel_crm_appointment(self, meeting: Meeting, sink: ProgressLogSink) -> Optional[IntegrationError]:
        appointment_id = meeting.external_appointment_id or meeting.unverified_appointment_id
        if not appointment_id:
            return None

        crm, error = self._crm_client()
        if error is None:
            sink.log("crm_cancel", LEVEL_INFO, f"Cancelling CRM appointment {appointment_id}...")
            try:
                await crm.cancel_event(appointment_id, appointment_name(meeting))
                sink.log("crm_cancelled", LEVEL_SUCCESS, f"CRM appointment {appointment_id} cancelled")
                return None
            except IntegrationFailure as e:
                error = e.error
        sink.log("crm_warning", LEVEL_WARN, error.message, error.to_dict())
        return error

    async def manage(self, token: str, action: str, run_id: Optional[str] = None) -> dict[str, Any]:
        request = self.links.validate_for_change(token)
        meeting = request.meeting
        self._check_change_window(meeting)

        sink = self._sink(meeting.id, run_id)
        sink.log(f"{action}_started", LEVEL_INFO, f"Processing {action} request...")
        warnings: list[IntegrationError] = []

        try:
            crm_warning = await self._cancel_crm_appointment(meeting, sink)
        except Exception as e:
            logger.exception(f"❌ Unexpected CRM failure cancelling meeting {meeting.id}")
            crm_warning = IntegrationError(system=CRM, message=f"Unexpected CRM failure: {type(e).__name__}")
            sink.log("crm_warning", LEVEL_WARN, crm_warning.message, crm_warning.to_dict())
        if crm_warning:
            warnings.append(crm_warning)

        try:
            calendar_warning = await CalendarEventWriter(self.db, self.calendar, sink).remove(meeting)
        except Exception as e:
            logger.exception(f"❌ Unexpected calendar failure cancelling meeting {meeting.id}")
            calendar_warning = IntegrationError(
                system=CALENDAR, message=f"Unexpected calendar failure: {type(e).__name__}"
            )
            sink.log("calendar_warning", LEVEL_WARN, calendar_warning.message, calendar_warning.to_dict())
        if calendar_warning:
            warnings.append(calendar_warning)

        previous_status = meeting.status
        try:
            meeting.external_appointment_id = None
            meeting.unverified_appointment_id = None
            meeting.calendar_event_id = None
            meeting.calendar_event_calendar_id = None
            if action == ACTION_RESCHEDULE:
                meeting.status = MEETING_RESCHEDULED
                meeting.start_datetime = None
                meeting.end_datetime = None
                self.links.reopen(request)
            else:
                meeting.status = MEETING_CANCELLED
                request.status = REQUEST_EXPIRED
                request.expires_at = to_naive_utc(self.clock())
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"❌ Failed to save {action} for meeting {meeting.id}: {e}")
            sink.log("meeting_saved", LEVEL_ERROR, f"Failed to save {action}")
            raise MeetingWriteFailed() from e

        logger.info(f"✅ Meeting {meeting.id} {meeting.status.lower()}")
        warning_dicts = [w.to_dict() for w in warnings]
        self._audit(
            meeting,
            f"booking_{action}",
            {"runId": sink.run_id, "previousStatus": previous_status, "warnings": warning_dicts},
        )
        sink.log(DONE_STEP, LEVEL_SUCCESS, f"Booking {meeting.status.lower()}", {"warnings": warning_dicts})

        return {
            "meetingId": meeting.id,
            "runId": sink.run_id,
            "action": action,
            "meetingStatus": meeting.status,
            "bookingStatus": request.status,
            "expiresAt": ensure_utc(request.expires_at),
            "warnings": warning_dicts,
        }
