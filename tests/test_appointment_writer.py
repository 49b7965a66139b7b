from datetime import datetime, timezone

import pytest

from bookinglink.domain.scheduling.appointment_writer import (
    FORMAT_HM,
    FORMAT_HMS,
    AppointmentRequest,
    ExternalAppointmentWriter,
    WriterState,
    build_payload,
    compute_missing_fields,
)
from bookinglink.domain.scheduling.progress import ProgressLogSink, list_entries

ALL_WRITES = ("create", "patch", "put", "patch_hhmm")


@pytest.fixture
def request_():
    return AppointmentRequest(
        name="Consultation - Casey Client",
        description="Booked online",
        start=datetime(2025, 6, 3, 14, 0, tzinfo=timezone.utc),
        end=datetime(2025, 6, 3, 15, 0, tzinfo=timezone.utc),
        timezone="America/New_York",
        user_id="7",
        contact_id="301",
        event_type_id="9",
    )


@pytest.fixture
def writer(crm_server):
    return ExternalAppointmentWriter(crm_server.service())


def drop_everywhere(crm_server, field_name, steps=ALL_WRITES):
    for step in steps:
        crm_server.drops[step] = {field_name}


class TestBuildPayload:
    def test_local_wall_clock_and_int_ids(self, request_):
        payload = build_payload(request_)

        assert payload["start_date"] == "2025-06-03"
        assert payload["start_time"] == "10:00:00"
        assert payload["end_time"] == "11:00:00"
        assert payload["starts_at"] == "2025-06-03T10:00:00-04:00"
        assert payload["all_day"] is False
        assert payload["user_id"] == 7
        assert payload["contact_id"] == 301
        assert payload["event_type_id"] == 9
        assert payload["eventable_type"] == "Contact"
        assert payload["eventable_id"] == 301
        assert "location_id" not in payload
        assert "matter_id" not in payload

    def test_hhmm_format(self, request_):
        payload = build_payload(request_, FORMAT_HM)

        assert payload["start_time"] == "10:00"
        assert payload["end_time"] == "11:00"


class TestComputeMissingFields:
    def readback(self, **overrides):
        base = {
            "user_id": "7",
            "contact_id": "301",
            "event_type_id": "9",
            "location_id": None,
            "start_date": "2025-06-03",
            "start_time": "10:00:00",
            "end_date": "2025-06-03",
            "end_time": "11:00:00",
        }
        base.update(overrides)
        return base

    def test_complete(self, request_):
        assert compute_missing_fields(self.readback(), request_) == []

    def test_no_readback(self, request_):
        assert compute_missing_fields(None, request_) == ["readback_unavailable"]

    def test_wrong_owner_counts_as_missing(self, request_):
        assert compute_missing_fields(self.readback(user_id="8"), request_) == ["user_id"]

    def test_owner_required_even_when_not_requested(self, request_):
        request_.user_id = None

        assert compute_missing_fields(self.readback(user_id=None), request_) == ["user_id"]

    def test_location_required_for_in_person(self, request_):
        request_.requires_location = True

        assert compute_missing_fields(self.readback(), request_) == ["location_id"]

    def test_location_mismatch(self, request_):
        request_.location_id = "55"

        assert compute_missing_fields(self.readback(location_id="56"), request_) == ["location_id"]
        assert compute_missing_fields(self.readback(location_id=55), request_) == []


class TestExternalAppointmentWriter:
    async def test_persisted_on_first_write(self, crm_server, writer, request_):
        result = await writer.write(request_)

        assert result.state == WriterState.PERSISTED
        assert result.persisted is True
        assert result.created_id == "101"
        assert [a.step for a in result.attempts] == ["create"]
        assert crm_server.writes() == [("POST", "/v1/events")]
        assert result.readback["user_id"] == "7"
        assert result.missing_fields == []

    async def test_create_error_fails_after_one_attempt(self, crm_server, writer, request_):
        crm_server.statuses["create"] = 500

        result = await writer.write(request_)

        assert result.state == WriterState.FAILED
        assert result.created_id is None
        assert result.persisted is False
        assert len(result.attempts) == 1
        assert result.attempts[0].http_status == 500
        assert result.attempts[0].ok is False
        assert crm_server.writes() == [("POST", "/v1/events")]
        assert result.error

    async def test_create_timeout(self, crm_server, writer, request_):
        crm_server.timeouts = {"create"}

        result = await writer.write(request_)

        assert result.state == WriterState.FAILED
        assert result.attempts[0].http_status is None
        assert result.attempts[0].note == "timeout"

    async def test_ids_sent_as_integers(self, crm_server, writer, request_):
        await writer.write(request_)

        body = crm_server.json_bodies("POST", "/v1/events")[0]
        assert body["user_id"] == 7
        assert body["contact_id"] == 301
        assert body["eventable_id"] == 301

    async def test_single_patch_repairs_dropped_start_time(self, crm_server, writer, request_):
        crm_server.drops["create"] = {"start_time"}

        result = await writer.write(request_)

        assert result.state == WriterState.REPAIRED
        assert result.persisted is True
        assert result.used_time_format == FORMAT_HMS
        assert crm_server.writes() == [("POST", "/v1/events"), ("PATCH", "/v1/events/101")]
        assert [a.step for a in result.attempts] == ["create", "patch"]
        assert crm_server.events["101"]["start_time"] == "10:00:00"

    async def test_put_repairs_when_patch_is_ignored(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "user_id", steps=("create", "patch"))

        result = await writer.write(request_)

        assert result.state == WriterState.REPAIRED
        assert [a.step for a in result.attempts] == ["create", "patch", "put"]
        assert crm_server.calls("PUT") == [("PUT", "/v1/events/101")]

    async def test_hhmm_fallback(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "start_time", steps=("create", "patch", "put"))

        result = await writer.write(request_)

        assert result.state == WriterState.REPAIRED
        assert result.used_time_format == FORMAT_HM
        assert [a.step for a in result.attempts] == ["create", "patch", "put", "patch_hhmm"]
        assert crm_server.events["101"]["start_time"] == "10:00"

    async def test_recreate_with_event_envelope(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "start_time")

        result = await writer.write(request_)

        assert result.state == WriterState.REPAIRED
        assert [a.step for a in result.attempts] == [
            "create",
            "patch",
            "put",
            "patch_hhmm",
            "delete",
            "recreate_event",
        ]
        assert "101" not in crm_server.events
        assert result.created_id == "102"
        recreate_body = crm_server.json_bodies("POST", "/v1/events")[-1]
        assert list(recreate_body) == ["event"]
        assert recreate_body["event"]["start_time"] == "10:00:00"

    async def test_recreate_with_data_envelope(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "start_time", steps=(*ALL_WRITES, "event"))

        result = await writer.write(request_)

        assert result.state == WriterState.REPAIRED
        assert [a.step for a in result.attempts][-3:] == ["recreate_event", "delete", "recreate_data"]
        assert list(crm_server.json_bodies("POST", "/v1/events")[-1]) == ["data"]
        assert list(crm_server.events) == [result.created_id]

    async def test_failed_delete_abandons_recreate(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "start_time")
        crm_server.statuses["delete"] = 500

        result = await writer.write(request_)

        assert result.state == WriterState.INCOMPLETE
        assert result.created_id == "101"
        assert result.persisted is False
        assert result.missing_fields == ["start_time"]
        assert crm_server.writes()[-1] == ("DELETE", "/v1/events/101")
        assert len(crm_server.calls("POST")) == 1
        assert "start_time" in result.error

    async def test_every_recreate_failing_ends_failed(self, crm_server, writer, request_):
        drop_everywhere(crm_server, "start_time")
        crm_server.statuses["event"] = 500
        crm_server.statuses["data"] = 500

        result = await writer.write(request_)

        assert result.state == WriterState.FAILED
        assert result.created_id is None
        assert [a.step for a in result.attempts] == [
            "create",
            "patch",
            "put",
            "patch_hhmm",
            "delete",
            "recreate_event",
            "recreate_data",
        ]
        assert crm_server.events == {}

    async def test_stays_incomplete_when_location_never_sticks(self, crm_server, writer, request_):
        request_.requires_location = True

        result = await writer.write(request_)

        assert result.state == WriterState.INCOMPLETE
        assert result.missing_fields == ["location_id"]
        assert result.created_id in crm_server.events
        assert len(result.attempts) == 8

    async def test_resume_from_existing_record(self, crm_server, writer, request_):
        crm_server.events["42"] = build_payload(request_)

        result = await writer.write(request_, existing_id="42")

        assert result.state == WriterState.PERSISTED
        assert result.created_id == "42"
        assert result.attempts == []
        assert crm_server.writes() == []

    async def test_resume_repairs_existing_record(self, crm_server, writer, request_):
        payload = build_payload(request_)
        del payload["end_time"]
        crm_server.events["42"] = payload

        result = await writer.write(request_, existing_id="42")

        assert result.state == WriterState.REPAIRED
        assert crm_server.writes() == [("PATCH", "/v1/events/42")]

    async def test_result_serialization(self, writer, request_):
        data = (await writer.write(request_)).to_dict()

        assert data["createdId"] == "101"
        assert data["usedTimeFormat"] == "HH:mm:ss"
        assert data["timezoneUsed"] == "America/New_York"
        assert data["computed"]["start_time_hm"] == "10:00"
        assert data["computed"]["starts_at"] == "2025-06-03T10:00:00-04:00"
        assert data["attempts"] == [{"step": "create", "httpStatus": 201, "ok": True, "note": None}]

    async def test_progress_entries_around_each_call(self, crm_server, session_factory, clock, request_):
        crm_server.drops["create"] = {"start_time"}
        sink = ProgressLogSink(session_factory, meeting_id=None, run_id="run-1", clock=clock)

        await ExternalAppointmentWriter(crm_server.service(), sink).write(request_)

        steps = [e.step for e in list_entries(session_factory, "run-1")]
        assert steps == [
            "crm_create",
            "crm_create_result",
            "crm_verify",
            "crm_verify_result",
            "crm_verify_missing",
            "crm_repair_patch",
            "crm_repair_patch_result",
            "crm_verify",
            "crm_verify_result",
        ]
