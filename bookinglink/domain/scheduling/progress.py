"""
Booking progress log.

Every step of a confirmation run is appended to ``booking_progress_logs`` so
a caller can watch it asynchronously. Writing never raises: a broken log must
not abort the booking it observes. Readers either poll the table or, when an
in-process ProgressHub is wired in, receive entries as they are written.
"""

import asyncio
import json
import logging
import threading
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, Optional

from sqlalchemy.orm import Session

from ... import config
from ...models import BookingProgressLog
from .repository import SchedulingRepository
from .schemas import ProgressLogEntry
from .time_calculator import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

LEVEL_INFO = "info"
LEVEL_WARN = "warn"
LEVEL_ERROR = "error"
LEVEL_SUCCESS = "success"

DONE_STEP = "done"


class ProgressTimeout(Exception):
    """No terminal entry arrived before the wait ran out"""

    def __init__(self, run_id: str, timeout: float):
        super().__init__(f"No terminal progress entry for run {run_id} within {timeout:.0f}s")
        self.run_id = run_id
        self.timeout = timeout


def is_terminal(entry: ProgressLogEntry) -> bool:
    return entry.step == DONE_STEP or entry.level == LEVEL_ERROR


def _json_safe(details: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if details is None:
        return None
    return json.loads(json.dumps(details, default=str))


class ProgressHub:
    """In-process fan-out of freshly written entries to subscribers"""

    def __init__(self):
        self._subscribers: dict[str, list[tuple[asyncio.AbstractEventLoop, asyncio.Queue]]] = defaultdict(list)
        self._lock = threading.Lock()

    def register(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        with self._lock:
            self._subscribers[run_id].append((asyncio.get_running_loop(), queue))
        return queue

    def unregister(self, run_id: str, queue: asyncio.Queue) -> None:
        with self._lock:
            remaining = [(loop, q) for loop, q in self._subscribers.get(run_id, []) if q is not queue]
            if remaining:
                self._subscribers[run_id] = remaining
            else:
                self._subscribers.pop(run_id, None)

    def publish(self, entry: ProgressLogEntry) -> None:
        with self._lock:
            targets = list(self._subscribers.get(entry.runId, []))
        for loop, queue in targets:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, entry)
            except RuntimeError:
                # subscriber's loop already closed
                self.unregister(entry.runId, queue)


class ProgressLogSink:
    """Append-only writer for one (meeting, run) pair"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        meeting_id: Optional[int],
        run_id: str,
        hub: Optional[ProgressHub] = None,
        clock: Callable = utcnow,
    ):
        self.session_factory = session_factory
        self.meeting_id = meeting_id
        self.run_id = run_id
        self.hub = hub
        self.clock = clock

    def log(
        self,
        step: str,
        level: str,
        message: str,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[ProgressLogEntry]:
        """Append one entry in its own transaction; never raises"""
        try:
            db = self.session_factory()
            try:
                row = BookingProgressLog(
                    meeting_id=self.meeting_id,
                    run_id=self.run_id,
                    step=step,
                    level=level,
                    message=message,
                    details_json=_json_safe(details),
                    created_at=to_naive_utc(self.clock()),
                )
                db.add(row)
                db.commit()
                db.refresh(row)
                entry = ProgressLogEntry.from_row(row)
            finally:
                db.close()
        except Exception as e:
            logger.warning(f"⚠️ Dropped progress entry {step} for run {self.run_id}: {e}")
            return None

        if self.hub is not None:
            try:
                self.hub.publish(entry)
            except Exception as e:
                logger.warning(f"⚠️ Failed to publish progress entry {step}: {e}")
        return entry


def list_entries(
    session_factory: Callable[[], Session], run_id: str, after_id: Optional[int] = None
) -> list[ProgressLogEntry]:
    """Entries of a run sorted by created_at, oldest first"""
    db = session_factory()
    try:
        rows = SchedulingRepository.list_progress_entries(db, run_id, after_id=after_id)
        return [ProgressLogEntry.from_row(row) for row in rows]
    finally:
        db.close()


async def subscribe(
    run_id: str,
    session_factory: Callable[[], Session],
    hub: Optional[ProgressHub] = None,
    timeout: float = config.PROGRESS_POLL_TIMEOUT_SECONDS,
    poll_interval: float = config.PROGRESS_POLL_INTERVAL_SECONDS,
) -> AsyncIterator[ProgressLogEntry]:
    """
    Yield a run's entries in order until a terminal one (step "done" or level
    "error"). Pushes through the hub when one is given, otherwise polls.
    Raises ProgressTimeout once the wait runs out.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    queue = hub.register(run_id) if hub is not None else None
    last_id: Optional[int] = None

    try:
        # Catch up on what was written before we started listening
        for entry in list_entries(session_factory, run_id):
            last_id = entry.id
            yield entry
            if is_terminal(entry):
                return

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProgressTimeout(run_id, timeout)

            if queue is not None:
                try:
                    entry = await asyncio.wait_for(queue.get(), remaining)
                except asyncio.TimeoutError as e:
                    raise ProgressTimeout(run_id, timeout) from e
                if last_id is not None and entry.id <= last_id:
                    continue
                last_id = entry.id
                yield entry
                if is_terminal(entry):
                    return
            else:
                await asyncio.sleep(min(poll_interval, remaining))
                for entry in list_entries(session_factory, run_id, after_id=last_id):
                    last_id = entry.id
                    yield entry
                    if is_terminal(entry):
                        return
    finally:
        if queue is not None:
            hub.unregister(run_id, queue)
