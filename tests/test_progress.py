import asyncio
from datetime import datetime, timedelta

import pytest

from bookinglink.domain.scheduling.progress import (
    ProgressHub,
    ProgressLogSink,
    ProgressTimeout,
    list_entries,
    subscribe,
)


async def collect(iterator):
    return [entry async for entry in iterator]


class TestProgressLogSink:
    def test_entry_is_persisted_with_clock_time(self, session_factory, clock):
        sink = ProgressLogSink(session_factory, meeting_id=3, run_id="run-a", clock=clock)

        entry = sink.log("crm_create", "info", "Creating CRM appointment...", {"when": datetime(2025, 6, 2)})

        assert entry.id is not None
        assert entry.meetingId == 3
        assert entry.createdAt == datetime(2025, 6, 2, 8, 0)
        assert entry.details == {"when": "2025-06-02 00:00:00"}
        assert [e.message for e in list_entries(session_factory, "run-a")] == ["Creating CRM appointment..."]

    def test_broken_storage_never_raises(self):
        def broken_factory():
            raise RuntimeError("database is down")

        sink = ProgressLogSink(broken_factory, meeting_id=1, run_id="run-b")

        assert sink.log("start", "info", "Starting") is None

    def test_entries_are_isolated_per_run(self, session_factory, clock):
        ProgressLogSink(session_factory, 1, "run-a", clock=clock).log("start", "info", "a")
        ProgressLogSink(session_factory, 1, "run-b", clock=clock).log("start", "info", "b")

        assert [e.message for e in list_entries(session_factory, "run-a")] == ["a"]

    def test_entries_sorted_by_creation_time(self, session_factory, now):
        times = iter([now + timedelta(seconds=5), now])
        sink = ProgressLogSink(session_factory, 1, "run-a", clock=lambda: next(times))

        sink.log("second", "info", "later")
        sink.log("first", "info", "earlier")

        assert [e.step for e in list_entries(session_factory, "run-a")] == ["first", "second"]


class TestSubscribe:
    async def test_catch_up_stops_at_done(self, session_factory, clock):
        sink = ProgressLogSink(session_factory, 1, "run-a", clock=clock)
        sink.log("start", "info", "Starting")
        sink.log("done", "success", "Finished")
        sink.log("late", "info", "Written after done")

        entries = await collect(subscribe("run-a", session_factory, timeout=1, poll_interval=0.01))

        assert [e.step for e in entries] == ["start", "done"]

    async def test_polling_picks_up_new_entries(self, session_factory, clock):
        sink = ProgressLogSink(session_factory, 1, "run-a", clock=clock)
        sink.log("start", "info", "Starting")

        async def writer():
            await asyncio.sleep(0.05)
            sink.log("crm_create", "info", "Creating")
            sink.log("booking_failed", "error", "Meeting write failed")

        task = asyncio.create_task(writer())
        entries = await collect(subscribe("run-a", session_factory, timeout=2, poll_interval=0.01))
        await task

        assert [e.level for e in entries] == ["info", "info", "error"]

    async def test_hub_pushes_entries(self, session_factory, clock):
        hub = ProgressHub()
        sink = ProgressLogSink(session_factory, 1, "run-a", hub=hub, clock=clock)

        async def writer():
            await asyncio.sleep(0.05)
            sink.log("start", "info", "Starting")
            sink.log("calendar_warning", "warn", "No calendar connection")
            sink.log("done", "success", "Finished")

        task = asyncio.create_task(writer())
        entries = await collect(subscribe("run-a", session_factory, hub=hub, timeout=2, poll_interval=60))
        await task

        assert [e.step for e in entries] == ["start", "calendar_warning", "done"]
        assert hub._subscribers == {}

    async def test_timeout_without_terminal_entry(self, session_factory, clock):
        ProgressLogSink(session_factory, 1, "run-a", clock=clock).log("start", "info", "Starting")
        seen = []

        with pytest.raises(ProgressTimeout):
            async for entry in subscribe("run-a", session_factory, timeout=0.05, poll_interval=0.01):
                seen.append(entry.step)

        assert seen == ["start"]

    async def test_hub_timeout(self, session_factory):
        hub = ProgressHub()

        with pytest.raises(ProgressTimeout):
            await collect(subscribe("run-z", session_factory, hub=hub, timeout=0.05))
