"""Scheduling domain schemas - Pydantic models for validation"""

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from ...shared.validators import validate_timezone
from .time_calculator import ensure_utc


class ProgressLogEntry(BaseModel):
    """One append-only progress entry of a confirmation run"""

    id: int
    meetingId: Optional[int] = None
    runId: str
    step: str
    level: str  # info, warn, error, success
    message: str
    details: Optional[dict[str, Any]] = None
    createdAt: datetime

    @classmethod
    def from_row(cls, row) -> "ProgressLogEntry":
        return cls(
            id=row.id,
            meetingId=row.meeting_id,
            runId=row.run_id,
            step=row.step,
            level=row.level,
            message=row.message,
            details=row.details_json,
            createdAt=row.created_at,
        )


class ProgressPollResponse(BaseModel):
    runId: str
    entries: list[ProgressLogEntry]
    done: bool


# ============================================================================
# BOOKING LINKS
# ============================================================================


class BookingLinkCreate(BaseModel):
    """Schema for issuing a booking link"""

    meetingId: int
    expiresDays: Optional[int] = Field(default=None, ge=1)


class BookingLinkResponse(BaseModel):
    id: int
    meetingId: int
    token: str
    url: str
    status: str
    expiresAt: datetime


class BookingLinkInfo(BaseModel):
    """Public view of a booking link; no internal ids beyond the meeting"""

    state: Literal["open", "booked", "expired", "cancelled", "closed"]
    meetingId: int
    meetingType: Optional[str] = None
    durationMinutes: int
    locationMode: str
    timezone: str
    expiresAt: datetime
    startDatetime: Optional[datetime] = None
    endDatetime: Optional[datetime] = None


# ============================================================================
# SLOTS
# ============================================================================


class SlotsRequest(BaseModel):
    token: str
    dateCursor: Optional[date] = None
    clientTimezone: Optional[str] = None

    @field_validator("clientTimezone")
    @classmethod
    def check_timezone(cls, v):
        return validate_timezone(v)


class TimeSlotResponse(BaseModel):
    start: datetime
    end: datetime
    label: str


class SlotsResponse(BaseModel):
    meetingId: int
    timezone: str
    durationMinutes: int
    windowStart: date
    windowEnd: date
    slots: list[TimeSlotResponse]


# ============================================================================
# CONFIRM / MANAGE
# ============================================================================


class ConfirmRequest(BaseModel):
    token: str
    startDatetime: datetime
    endDatetime: datetime
    runId: Optional[str] = Field(default=None, max_length=64)

    @field_validator("startDatetime", "endDatetime")
    @classmethod
    def as_utc(cls, v):
        return ensure_utc(v)


class ConfirmResponse(BaseModel):
    meetingId: int
    runId: str
    status: str
    startDatetime: datetime
    endDatetime: datetime
    externalAppointmentId: Optional[str] = None
    unverifiedAppointmentId: Optional[str] = None
    calendarEventId: Optional[str] = None
    crm: Optional[dict[str, Any]] = None
    warnings: list[dict[str, Any]] = []


class SyncRequest(BaseModel):
    runId: Optional[str] = Field(default=None, max_length=64)


class ManageRequest(BaseModel):
    token: str
    action: Literal["reschedule", "cancel"]
    runId: Optional[str] = Field(default=None, max_length=64)


class ManageResponse(BaseModel):
    meetingId: int
    runId: str
    action: str
    meetingStatus: str
    bookingStatus: str
    expiresAt: datetime
    warnings: list[dict[str, Any]] = []
