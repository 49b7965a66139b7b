"""Scheduling repository - Database queries for meetings, links and connections"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import (
    AuditLog,
    BookingProgressLog,
    BookingRequest,
    Meeting,
    REQUEST_OPEN,
    Room,
    User,
)
from ...models_crm import CrmConnection
from ...models_google_calendar import GoogleCalendarConnection


class SchedulingRepository:
    """Repository for scheduling database operations"""

    @staticmethod
    def get_meeting(db: Session, meeting_id: int) -> Optional[Meeting]:
        """Get meeting by ID"""
        return db.query(Meeting).filter(Meeting.id == meeting_id).first()

    @staticmethod
    def get_booking_request_by_token(db: Session, token: str) -> Optional[BookingRequest]:
        """Get booking request by its public token"""
        return db.query(BookingRequest).filter(BookingRequest.public_token == token).first()

    @staticmethod
    def get_open_requests_for_meeting(db: Session, meeting_id: int) -> list[BookingRequest]:
        return (
            db.query(BookingRequest)
            .filter(BookingRequest.meeting_id == meeting_id, BookingRequest.status == REQUEST_OPEN)
            .all()
        )

    @staticmethod
    def get_user(db: Session, user_id: Optional[int]) -> Optional[User]:
        """Get user by ID"""
        if user_id is None:
            return None
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_users(db: Session, user_ids: list[int]) -> list[User]:
        """Get users by IDs, preserving the requested order"""
        if not user_ids:
            return []
        users = {u.id: u for u in db.query(User).filter(User.id.in_(user_ids)).all()}
        return [users[uid] for uid in user_ids if uid in users]

    @staticmethod
    def get_room(db: Session, room_id: Optional[int]) -> Optional[Room]:
        if room_id is None:
            return None
        return db.query(Room).filter(Room.id == room_id).first()

    @staticmethod
    def get_calendar_connection(db: Session, user_id: int) -> Optional[GoogleCalendarConnection]:
        """Get a user's Google Calendar connection"""
        return (
            db.query(GoogleCalendarConnection)
            .filter(GoogleCalendarConnection.user_id == user_id)
            .first()
        )

    @staticmethod
    def get_latest_crm_connection(db: Session) -> Optional[CrmConnection]:
        """Most recent CRM connection wins"""
        return (
            db.query(CrmConnection)
            .order_by(CrmConnection.connected_at.desc(), CrmConnection.id.desc())
            .first()
        )

    @staticmethod
    def add_audit_log(
        db: Session, meeting_id: Optional[int], action_type: str, details: dict
    ) -> AuditLog:
        """Stage an audit row; the caller commits"""
        entry = AuditLog(meeting_id=meeting_id, action_type=action_type, details_json=details)
        db.add(entry)
        return entry

    @staticmethod
    def list_progress_entries(
        db: Session, run_id: str, after_id: Optional[int] = None
    ) -> list[BookingProgressLog]:
        """Progress entries for a run, oldest first"""
        query = db.query(BookingProgressLog).filter(BookingProgressLog.run_id == run_id)
        if after_id is not None:
            query = query.filter(BookingProgressLog.id > after_id)
        return query.order_by(BookingProgressLog.created_at.asc(), BookingProgressLog.id.asc()).all()
