"""Booking link issuance and validation"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ... import config
from ...models import (
    MEETING_BOOKED,
    MEETING_CANCELLED,
    MEETING_DRAFT,
    MEETING_PROPOSED,
    REQUEST_COMPLETED,
    REQUEST_EXPIRED,
    REQUEST_OPEN,
    BookingRequest,
)
from ...security_utils import generate_secure_token
from .errors import BookingLinkExpired, BookingLinkNotFound, BookingNotOpen, MeetingNotFound
from .repository import SchedulingRepository
from .time_calculator import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class BookingLinkService:
    """Issues booking links and checks them on every access"""

    def __init__(self, db: Session, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.clock = clock
        self.repo = SchedulingRepository()

    def _now(self) -> datetime:
        return to_naive_utc(self.clock())

    def issue(self, meeting_id: int, expires_days: Optional[int] = None) -> BookingRequest:
        """Create an Open request, expiring any other Open request for the meeting"""
        meeting = self.repo.get_meeting(self.db, meeting_id)
        if not meeting:
            raise MeetingNotFound()

        for previous in self.repo.get_open_requests_for_meeting(self.db, meeting_id):
            previous.status = REQUEST_EXPIRED
            logger.info(f"🔄 Expired previous booking request {previous.id} for meeting {meeting_id}")

        days = max(1, expires_days or config.BOOKING_REQUEST_EXPIRES_DAYS)
        request = BookingRequest(
            meeting_id=meeting_id,
            public_token=generate_secure_token(32),
            expires_at=self._now() + timedelta(days=days),
            status=REQUEST_OPEN,
        )
        self.db.add(request)
        if meeting.status == MEETING_DRAFT:
            meeting.status = MEETING_PROPOSED
        self.db.commit()
        self.db.refresh(request)

        logger.info(f"✅ Booking request {request.id} issued for meeting {meeting_id}, expires in {days} days")
        return request

    def reopen(self, request: BookingRequest, expires_days: Optional[int] = None) -> BookingRequest:
        """Re-open a request for a reschedule; the caller commits"""
        days = max(1, expires_days or config.BOOKING_REQUEST_EXPIRES_DAYS)
        for other in self.repo.get_open_requests_for_meeting(self.db, request.meeting_id):
            if other.id != request.id:
                other.status = REQUEST_EXPIRED
        request.status = REQUEST_OPEN
        request.expires_at = self._now() + timedelta(days=days)
        return request

    def get(self, token: str) -> BookingRequest:
        request = self.repo.get_booking_request_by_token(self.db, token) if token else None
        if not request:
            raise BookingLinkNotFound()
        return request

    def _expire_if_due(self, request: BookingRequest) -> bool:
        if request.status == REQUEST_OPEN and request.expires_at <= self._now():
            request.status = REQUEST_EXPIRED
            self.db.commit()
            logger.info(f"ℹ️ Booking request {request.id} expired on access")
        return request.status == REQUEST_EXPIRED

    def validate_open(self, token: str) -> BookingRequest:
        """The request behind token, if it can still be booked"""
        request = self.get(token)
        if self._expire_if_due(request):
            raise BookingLinkExpired()
        if request.status != REQUEST_OPEN:
            raise BookingNotOpen()
        if not request.meeting:
            raise MeetingNotFound()
        return request

    def validate_for_change(self, token: str) -> BookingRequest:
        """The request behind token, if its booking may still be changed"""
        request = self.get(token)
        if request.status == REQUEST_EXPIRED or request.expires_at <= self._now():
            raise BookingLinkExpired()
        if not request.meeting:
            raise MeetingNotFound()
        return request

    def describe(self, token: str) -> tuple[BookingRequest, str]:
        """Request plus its public state: open, booked, expired, cancelled or closed"""
        request = self.get(token)
        meeting = request.meeting
        if not meeting:
            raise MeetingNotFound()

        if meeting.status == MEETING_CANCELLED:
            state = "cancelled"
        elif request.status == REQUEST_COMPLETED and meeting.status == MEETING_BOOKED:
            state = "booked"
        elif self._expire_if_due(request):
            state = "expired"
        elif request.status == REQUEST_OPEN:
            state = "open"
        else:
            state = "closed"
        return request, state
