from datetime import datetime

import pytest

from bookinglink.domain.scheduling.calendar_event_writer import (
    CalendarEventWriter,
    build_attendees,
    build_event_body,
)
from bookinglink.domain.scheduling.progress import ProgressLogSink, list_entries
from bookinglink.models import LOCATION_IN_PERSON, LOCATION_ZOOM, Room, User

from .fakes import add_calendar_connection, seed_booking


def book(meeting):
    meeting.start_datetime = datetime(2025, 6, 3, 14, 0)
    meeting.end_datetime = datetime(2025, 6, 3, 15, 0)


@pytest.fixture
def sink(session_factory, clock):
    return ProgressLogSink(session_factory, meeting_id=None, run_id="cal-run", clock=clock)


class TestBuildAttendees:
    def test_order_and_dedupe(self):
        host = User(email="host@firm.test")
        others = [User(email="HOST@firm.test"), User(email="staff@firm.test")]
        room = Room(name="Board Room", resource_email="room@resource.test")

        attendees = build_attendees(host, others, "client@example.com", room, LOCATION_IN_PERSON)

        assert attendees == [
            {"email": "host@firm.test"},
            {"email": "staff@firm.test"},
            {"email": "client@example.com"},
            {"email": "room@resource.test", "resource": True},
        ]

    def test_room_left_out_of_virtual_meetings(self):
        room = Room(name="Board Room", resource_email="room@resource.test")

        attendees = build_attendees(User(email="host@firm.test"), [], None, room, LOCATION_ZOOM)

        assert attendees == [{"email": "host@firm.test"}]


def test_event_body_uses_meeting_timezone(db, now):
    seeded = seed_booking(db, now, in_person=True)
    book(seeded.meeting)

    body = build_event_body(seeded.meeting, [])

    assert body["summary"] == "Consultation - Casey Client"
    assert body["start"] == {"dateTime": "2025-06-03T10:00:00-04:00", "timeZone": "America/New_York"}
    assert body["end"]["dateTime"] == "2025-06-03T11:00:00-04:00"
    assert body["location"] == "Board Room"
    assert "Phone: +15551234567" in body["description"]


class TestCalendarEventWriter:
    async def test_creates_event_with_all_attendees(self, db, now, google_server, sink, session_factory):
        seeded = seed_booking(db, now, in_person=True, participants=2)
        book(seeded.meeting)

        result = await CalendarEventWriter(db, google_server.service(), sink).write(seeded.meeting)

        assert result.event_id == "gcal-1"
        assert result.calendar_id == "primary"
        assert result.warning is None
        assert seeded.meeting.calendar_event_id == "gcal-1"
        assert seeded.meeting.calendar_event_calendar_id == "primary"

        emails = [a["email"] for a in google_server.created_events[0]["attendees"]]
        assert emails == [
            "host@firm.test",
            "staff0@firm.test",
            "staff1@firm.test",
            "casey@example.com",
            "room-1@resource.calendar.google.com",
        ]
        steps = [e.step for e in list_entries(session_factory, "cal-run")]
        assert steps == ["calendar_create", "calendar_created"]

    async def test_uses_connection_calendar_id(self, db, now, google_server):
        seeded = seed_booking(db, now, with_calendar=False)
        add_calendar_connection(db, seeded.host, calendar_id="team@group.calendar.google.com")
        book(seeded.meeting)

        result = await CalendarEventWriter(db, google_server.service()).write(seeded.meeting)

        assert result.calendar_id == "team@group.calendar.google.com"
        assert google_server.paths("POST") == ["/calendar/v3/calendars/team@group.calendar.google.com/events"]

    async def test_existing_event_is_not_duplicated(self, db, now, google_server):
        seeded = seed_booking(db, now)
        book(seeded.meeting)
        seeded.meeting.calendar_event_id = "gcal-existing"

        result = await CalendarEventWriter(db, google_server.service()).write(seeded.meeting)

        assert result.skipped is True
        assert result.event_id == "gcal-existing"
        assert google_server.requests == []

    async def test_no_host_skips_without_warning(self, db, now, google_server):
        seeded = seed_booking(db, now, with_host=False)
        book(seeded.meeting)

        result = await CalendarEventWriter(db, google_server.service()).write(seeded.meeting)

        assert result.skipped is True
        assert result.warning is None
        assert google_server.requests == []

    async def test_missing_connection_is_a_warning(self, db, now, google_server, sink, session_factory):
        seeded = seed_booking(db, now, with_calendar=False)
        book(seeded.meeting)

        result = await CalendarEventWriter(db, google_server.service(), sink).write(seeded.meeting)

        assert result.warning.system == "calendar"
        assert "no Google Calendar connection" in result.warning.message
        assert seeded.meeting.calendar_event_id is None
        entry = list_entries(session_factory, "cal-run")[-1]
        assert entry.step == "calendar_warning"
        assert entry.level == "warn"

    async def test_api_error_is_a_warning(self, db, now, google_server):
        seeded = seed_booking(db, now)
        book(seeded.meeting)
        google_server.event_status = 403

        result = await CalendarEventWriter(db, google_server.service()).write(seeded.meeting)

        assert result.warning.status == 403
        assert "leaked-token" not in result.warning.response_excerpt
        assert seeded.meeting.calendar_event_id is None

    async def test_token_refresh_failure_is_a_warning(self, db, now, google_server):
        seeded = seed_booking(db, now)
        book(seeded.meeting)
        connection = seeded.host.google_calendar_connection
        connection.token_expires_at = datetime(2020, 1, 1)
        db.commit()
        google_server.token_status = 401

        result = await CalendarEventWriter(db, google_server.service()).write(seeded.meeting)

        assert result.warning.status == 401
        assert google_server.created_events == []

    async def test_remove_deletes_event(self, db, now, google_server):
        seeded = seed_booking(db, now)
        seeded.meeting.calendar_event_id = "gcal-9"
        seeded.meeting.calendar_event_calendar_id = "primary"

        warning = await CalendarEventWriter(db, google_server.service()).remove(seeded.meeting)

        assert warning is None
        assert google_server.paths("DELETE") == ["/calendar/v3/calendars/primary/events/gcal-9"]

    async def test_remove_failure_returns_warning(self, db, now, google_server):
        seeded = seed_booking(db, now)
        seeded.meeting.calendar_event_id = "gcal-9"
        google_server.delete_status = 500

        warning = await CalendarEventWriter(db, google_server.service()).remove(seeded.meeting)

        assert warning.status == 500

    async def test_remove_without_event_is_a_no_op(self, db, now, google_server):
        seeded = seed_booking(db, now)

        assert await CalendarEventWriter(db, google_server.service()).remove(seeded.meeting) is None
        assert google_server.requests == []
