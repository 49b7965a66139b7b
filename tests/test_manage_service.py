from datetime import datetime, timedelta, timezone

import pytest

from bookinglink.domain.scheduling.errors import BookingLinkExpired, ChangeWindowClosed, NoActiveBooking
from bookinglink.domain.scheduling.manage_service import ManageBookingService
from bookinglink.domain.scheduling.progress import list_entries
from bookinglink.models import (
    MEETING_BOOKED,
    MEETING_CANCELLED,
    MEETING_RESCHEDULED,
    REQUEST_EXPIRED,
    REQUEST_OPEN,
    AuditLog,
)

from .fakes import seed_booking

UTC = timezone.utc
START = datetime(2025, 6, 3, 14, 0, tzinfo=UTC)
END = START + timedelta(hours=1)


def make_service(db, session_factory, google_server, crm_server, clock):
    return ManageBookingService(db, session_factory, google_server.service(), crm_server.factory(), clock=clock)


@pytest.fixture
def service(db, session_factory, google_server, crm_server, clock):
    return make_service(db, session_factory, google_server, crm_server, clock)


@pytest.fixture
async def booked(db, now, service):
    seeded = seed_booking(db, now)
    await service.confirm(seeded.token, START, END)
    return seeded


class TestCancel:
    async def test_cancel_removes_external_records(self, db, now, service, booked, crm_server, google_server):
        result = await service.manage(booked.token, "cancel", run_id="run-c")

        assert result["meetingStatus"] == MEETING_CANCELLED
        assert result["bookingStatus"] == REQUEST_EXPIRED
        assert result["expiresAt"] == now
        assert result["warnings"] == []

        assert crm_server.events["103"]["status"] == "cancelled"
        assert crm_server.events["103"]["name"] == "Cancelled - Consultation - Casey Client"
        assert google_server.paths("DELETE") == ["/calendar/v3/calendars/primary/events/gcal-1"]

        db.refresh(booked.meeting)
        assert booked.meeting.external_appointment_id is None
        assert booked.meeting.calendar_event_id is None
        assert booked.meeting.external_contact_id == "101"

        entries = list_entries(service.session_factory, "run-c")
        assert entries[0].step == "cancel_started"
        assert entries[-1].step == "done"
        assert db.query(AuditLog).filter(AuditLog.action_type == "booking_cancel").count() == 1

    async def test_cancel_twice_is_rejected(self, service, booked):
        await service.manage(booked.token, "cancel")

        with pytest.raises(BookingLinkExpired):
            await service.manage(booked.token, "cancel")

    async def test_crm_failure_still_cancels(self, service, booked, crm_server):
        crm_server.statuses["patch"] = 500

        result = await service.manage(booked.token, "cancel")

        assert result["meetingStatus"] == MEETING_CANCELLED
        assert [w["system"] for w in result["warnings"]] == ["crm"]

    async def test_calendar_failure_still_cancels(self, service, booked, google_server):
        google_server.delete_status = 500

        result = await service.manage(booked.token, "cancel")

        assert result["meetingStatus"] == MEETING_CANCELLED
        assert [w["system"] for w in result["warnings"]] == ["calendar"]

    async def test_unverified_appointment_is_cancelled(self, db, service, booked, crm_server):
        booked.meeting.external_appointment_id = None
        booked.meeting.unverified_appointment_id = "103"
        db.commit()

        await service.manage(booked.token, "cancel")

        assert crm_server.events["103"]["status"] == "cancelled"


class TestReschedule:
    async def test_reschedule_reopens_link(self, db, now, service, booked, crm_server):
        result = await service.manage(booked.token, "reschedule")

        assert result["meetingStatus"] == MEETING_RESCHEDULED
        assert result["bookingStatus"] == REQUEST_OPEN
        assert result["expiresAt"] == now + timedelta(days=7)
        assert crm_server.events["103"]["status"] == "cancelled"

        db.refresh(booked.meeting)
        assert booked.meeting.start_datetime is None
        assert booked.meeting.end_datetime is None
        assert booked.meeting.calendar_event_id is None

    async def test_rebook_after_reschedule(self, service, booked, crm_server, google_server):
        await service.manage(booked.token, "reschedule")
        new_start = START + timedelta(days=1)

        result = await service.confirm(booked.token, new_start, new_start + timedelta(hours=1))

        assert result["status"] == MEETING_BOOKED
        assert result["externalAppointmentId"] == "104"
        assert result["calendarEventId"] == "gcal-2"
        assert crm_server.calls("POST").count(("POST", "/v1/contacts")) == 1
        assert crm_server.calls("POST").count(("POST", "/v1/matters")) == 1


class TestChangeWindow:
    async def test_inside_minimum_notice(self, db, session_factory, google_server, crm_server, booked, now):
        later = make_service(db, session_factory, google_server, crm_server, lambda: now + timedelta(hours=7))

        with pytest.raises(ChangeWindowClosed) as exc:
            await later.manage(booked.token, "cancel")

        assert "24 hours" in exc.value.detail
        assert booked.meeting.status == MEETING_BOOKED

    async def test_exactly_at_cutoff_is_allowed(self, db, session_factory, google_server, crm_server, booked, now):
        at_cutoff = make_service(db, session_factory, google_server, crm_server, lambda: now + timedelta(hours=6))

        result = await at_cutoff.manage(booked.token, "cancel")

        assert result["meetingStatus"] == MEETING_CANCELLED

    async def test_unbooked_meeting(self, db, now, service):
        seeded = seed_booking(db, now)

        with pytest.raises(NoActiveBooking):
            await service.manage(seeded.token, "cancel")
