from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base

# Meeting statuses
MEETING_DRAFT = "Draft"
MEETING_PROPOSED = "Proposed"
MEETING_BOOKED = "Booked"
MEETING_CANCELLED = "Cancelled"
MEETING_RESCHEDULED = "Rescheduled"

# Booking request statuses
REQUEST_OPEN = "Open"
REQUEST_COMPLETED = "Completed"
REQUEST_EXPIRED = "Expired"

LOCATION_ZOOM = "Zoom"
LOCATION_IN_PERSON = "InPerson"


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(50), default="staff")  # staff, admin
    created_at = Column(DateTime, server_default=func.now())

    google_calendar_connection = relationship(
        "GoogleCalendarConnection", back_populates="user", uselist=False
    )


class Room(Base):
    __tablename__ = "rooms"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    resource_email = Column(String(255), nullable=True)  # Google room resource calendar
    crm_location_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class MeetingType(Base):
    __tablename__ = "meeting_types"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    crm_event_type_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Meeting(Base):
    __tablename__ = "meetings"

    id = Column(Integer, primary_key=True, index=True)
    meeting_type_id = Column(Integer, ForeignKey("meeting_types.id"), nullable=True)
    duration_minutes = Column(Integer, nullable=False, default=60)
    location_mode = Column(String(20), nullable=False, default=LOCATION_ZOOM)  # Zoom, InPerson
    timezone = Column(String(64), nullable=False, default="America/New_York")
    host_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    participant_user_ids = Column(JSON, nullable=False, default=list)
    room_id = Column(Integer, ForeignKey("rooms.id"), nullable=True)
    status = Column(String(20), nullable=False, default=MEETING_DRAFT)

    # Stored as naive UTC
    start_datetime = Column(DateTime, nullable=True)
    end_datetime = Column(DateTime, nullable=True)

    client_name = Column(String(255), nullable=True)
    client_email = Column(String(255), nullable=True)
    client_phone = Column(String(50), nullable=True)
    search_window_days = Column(Integer, nullable=False, default=14)
    send_invites = Column(Boolean, default=True)

    # CRM integration fields
    external_appointment_id = Column(String(64), nullable=True, index=True)  # verified only
    unverified_appointment_id = Column(String(64), nullable=True)  # created, not verified
    external_contact_id = Column(String(64), nullable=True)
    external_matter_id = Column(String(64), nullable=True)

    # Google Calendar integration fields
    calendar_event_id = Column(String(500), nullable=True, index=True)
    calendar_event_calendar_id = Column(String(500), nullable=True)

    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())

    meeting_type = relationship("MeetingType")
    host = relationship("User", foreign_keys=[host_user_id])
    room = relationship("Room")
    booking_requests = relationship("BookingRequest", back_populates="meeting")


class BookingRequest(Base):
    __tablename__ = "booking_requests"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=False, index=True)
    public_token = Column(String(128), unique=True, index=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    status = Column(String(20), nullable=False, default=REQUEST_OPEN)  # Open, Completed, Expired
    created_at = Column(DateTime, server_default=func.now())

    meeting = relationship("Meeting", back_populates="booking_requests")


class BookingProgressLog(Base):
    __tablename__ = "booking_progress_logs"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, nullable=True, index=True)
    run_id = Column(String(64), nullable=False, index=True)
    step = Column(String(100), nullable=False)
    level = Column(String(20), nullable=False, default="info")  # info, warn, error, success
    message = Column(Text, nullable=False)
    details_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    meeting_id = Column(Integer, ForeignKey("meetings.id"), nullable=True, index=True)
    action_type = Column(String(100), nullable=False)
    details_json = Column(JSON, nullable=True)
    created_at = Column(DateTime, server_default=func.now())
