"""Scheduling router - FastAPI endpoints for booking links, slots and confirmation"""

import json
import logging
from datetime import datetime
from typing import Callable

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from ... import config
from ...auth import require_staff
from ...database import SessionLocal, get_db
from ...services.crm_service import CrmService
from ...services.google_calendar_service import GoogleCalendarService
from .availability_service import AvailabilityService
from .booking_service import BookingService, CrmFactory
from .errors import InvalidTimezoneError
from .manage_service import ManageBookingService
from .progress import ProgressHub, ProgressTimeout, is_terminal, list_entries, subscribe
from .schemas import (
    BookingLinkCreate,
    BookingLinkInfo,
    BookingLinkResponse,
    ConfirmRequest,
    ConfirmResponse,
    ManageRequest,
    ManageResponse,
    ProgressPollResponse,
    SlotsRequest,
    SlotsResponse,
    SyncRequest,
    TimeSlotResponse,
)
from .time_calculator import InvalidTimezone, ensure_utc, utcnow
from .token_service import BookingLinkService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/booking", tags=["Booking"])
link_router = APIRouter(tags=["Booking Links"])

progress_hub = ProgressHub()


# ============================================================================
# DEPENDENCIES
# ============================================================================


def get_session_factory() -> Callable[[], Session]:
    return SessionLocal


def get_progress_hub() -> ProgressHub:
    return progress_hub


def get_clock() -> Callable[[], datetime]:
    return utcnow


def get_calendar_service() -> GoogleCalendarService:
    return GoogleCalendarService()


def get_crm_factory() -> CrmFactory:
    return CrmService


def get_link_service(
    db: Session = Depends(get_db), clock: Callable[[], datetime] = Depends(get_clock)
) -> BookingLinkService:
    """Dependency injection for BookingLinkService"""
    return BookingLinkService(db, clock)


def get_availability_service(
    db: Session = Depends(get_db),
    calendar: GoogleCalendarService = Depends(get_calendar_service),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db, calendar, clock)


def get_booking_service(
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    calendar: GoogleCalendarService = Depends(get_calendar_service),
    crm_factory: CrmFactory = Depends(get_crm_factory),
    hub: ProgressHub = Depends(get_progress_hub),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, session_factory, calendar, crm_factory, hub, clock)


def get_manage_service(
    db: Session = Depends(get_db),
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    calendar: GoogleCalendarService = Depends(get_calendar_service),
    crm_factory: CrmFactory = Depends(get_crm_factory),
    hub: ProgressHub = Depends(get_progress_hub),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> ManageBookingService:
    """Dependency injection for ManageBookingService"""
    return ManageBookingService(db, session_factory, calendar, crm_factory, hub, clock)


# ============================================================================
# PUBLIC ENDPOINTS (token is the capability)
# ============================================================================


@link_router.get("/r/{token}", response_model=BookingLinkInfo)
async def resolve_booking_link(token: str, links: BookingLinkService = Depends(get_link_service)):
    """Resolve a booking link to its public state"""
    request, state = links.describe(token)
    meeting = request.meeting
    return BookingLinkInfo(
        state=state,
        meetingId=meeting.id,
        meetingType=meeting.meeting_type.name if meeting.meeting_type else None,
        durationMinutes=meeting.duration_minutes,
        locationMode=meeting.location_mode,
        timezone=meeting.timezone,
        expiresAt=ensure_utc(request.expires_at),
        startDatetime=ensure_utc(meeting.start_datetime) if meeting.start_datetime else None,
        endDatetime=ensure_utc(meeting.end_datetime) if meeting.end_datetime else None,
    )


@router.post("/public/slots", response_model=SlotsResponse)
async def get_available_slots(
    data: SlotsRequest,
    links: BookingLinkService = Depends(get_link_service),
    availability: AvailabilityService = Depends(get_availability_service),
):
    """Available slots for the meeting behind a booking link"""
    request = links.validate_open(data.token)
    meeting = request.meeting
    try:
        window_start, window_end, slots = await availability.available_slots(
            meeting, data.dateCursor, data.clientTimezone
        )
    except InvalidTimezone as e:
        raise InvalidTimezoneError(str(e)) from e

    return SlotsResponse(
        meetingId=meeting.id,
        timezone=data.clientTimezone or meeting.timezone,
        durationMinutes=meeting.duration_minutes,
        windowStart=window_start,
        windowEnd=window_end,
        slots=[TimeSlotResponse(start=s.start, end=s.end, label=s.label) for s in slots],
    )


@router.post("/public/confirm", response_model=ConfirmResponse)
async def confirm_booking(data: ConfirmRequest, service: BookingService = Depends(get_booking_service)):
    """Book the chosen slot; integration failures come back as warnings"""
    return await service.confirm(data.token, data.startDatetime, data.endDatetime, data.runId)


@router.post("/public/manage", response_model=ManageResponse)
async def manage_booking(data: ManageRequest, service: ManageBookingService = Depends(get_manage_service)):
    """Reschedule or cancel a booking"""
    return await service.manage(data.token, data.action, data.runId)


# ============================================================================
# PROGRESS
# ============================================================================


@router.get("/progress/{run_id}", response_model=ProgressPollResponse)
async def get_progress(
    run_id: str, session_factory: Callable[[], Session] = Depends(get_session_factory)
):
    """Poll a run's progress entries"""
    entries = list_entries(session_factory, run_id)
    return ProgressPollResponse(runId=run_id, entries=entries, done=any(is_terminal(e) for e in entries))


@router.get("/progress/{run_id}/stream")
async def stream_progress(
    run_id: str,
    session_factory: Callable[[], Session] = Depends(get_session_factory),
    hub: ProgressHub = Depends(get_progress_hub),
):
    """Stream a run's progress entries as NDJSON until it finishes"""

    async def lines():
        try:
            async for entry in subscribe(
                run_id, session_factory, hub=hub, timeout=config.PROGRESS_POLL_TIMEOUT_SECONDS
            ):
                yield entry.model_dump_json() + "\n"
        except ProgressTimeout as e:
            logger.warning(f"⚠️ {e}")
            yield json.dumps({"runId": run_id, "timeout": True}) + "\n"

    return StreamingResponse(lines(), media_type="application/x-ndjson")


# ============================================================================
# STAFF ENDPOINTS
# ============================================================================


@router.post("/requests", response_model=BookingLinkResponse, status_code=201)
async def create_booking_request(
    data: BookingLinkCreate,
    _staff: str = Depends(require_staff),
    links: BookingLinkService = Depends(get_link_service),
):
    """Issue a booking link for a meeting"""
    request = links.issue(data.meetingId, data.expiresDays)
    return BookingLinkResponse(
        id=request.id,
        meetingId=request.meeting_id,
        token=request.public_token,
        url=f"{config.FRONTEND_URL.rstrip('/')}/r/{request.public_token}",
        status=request.status,
        expiresAt=ensure_utc(request.expires_at),
    )


@router.post("/meetings/{meeting_id}/sync", response_model=ConfirmResponse)
async def resync_booking(
    meeting_id: int,
    data: SyncRequest,
    _staff: str = Depends(require_staff),
    service: BookingService = Depends(get_booking_service),
):
    """Retry CRM and calendar writes for a booked meeting"""
    return await service.sync_integrations(meeting_id, data.runId)
