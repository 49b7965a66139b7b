"""
Availability - busy intervals, working hours and slot generation.

Busy ranges are merged into a sorted disjoint set, then each business day of
the search window is walked and its free gaps offered in 30-minute steps.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterable, Optional

from sqlalchemy.orm import Session

from ... import config
from ...models import LOCATION_IN_PERSON, Meeting
from ...services.google_calendar_service import GoogleCalendarService
from ...services.integration_errors import IntegrationFailure
from .repository import SchedulingRepository
from .time_calculator import ensure_utc, format_slot_label, get_zone, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime


@dataclass(frozen=True)
class TimeSlot:
    start: datetime
    end: datetime
    label: str


@dataclass(frozen=True)
class SlotPolicy:
    business_start: time = time(9, 0)
    business_end: time = time(17, 0)
    lunch_start: time = time(12, 0)
    lunch_end: time = time(13, 0)
    min_notice_minutes: int = 60
    step_minutes: int = 30
    max_slots: int = 30
    exclude_weekends: bool = True
    business_timezone: str = "UTC"


def merge_busy_intervals(intervals: Iterable[BusyInterval]) -> list[BusyInterval]:
    """Sorted, pairwise-disjoint intervals covering the same union"""
    normalized = [
        BusyInterval(ensure_utc(i.start), ensure_utc(i.end))
        for i in intervals
        if ensure_utc(i.end) > ensure_utc(i.start)
    ]
    normalized.sort(key=lambda i: i.start)

    merged: list[BusyInterval] = []
    for interval in normalized:
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = BusyInterval(last.start, max(last.end, interval.end))
        else:
            merged.append(interval)
    return merged


def _free_gaps(
    day_start: datetime, day_end: datetime, busy: list[BusyInterval]
) -> list[tuple[datetime, datetime]]:
    gaps = []
    cursor = day_start
    for interval in busy:
        if interval.end <= cursor:
            continue
        if interval.start >= day_end:
            break
        if interval.start > cursor:
            gaps.append((cursor, min(interval.start, day_end)))
        cursor = max(cursor, interval.end)
    if cursor < day_end:
        gaps.append((cursor, day_end))
    return gaps


def generate_slots(
    busy: list[BusyInterval],
    window_start: date,
    window_end: date,
    duration_minutes: int,
    client_timezone: str,
    now: datetime,
    policy: SlotPolicy = SlotPolicy(),
) -> list[TimeSlot]:
    """
    Candidate slots over business days in [window_start, window_end).

    Lunch is added as a busy interval per day so no slot can straddle it.
    Slots start every ``step_minutes`` from each gap's start, must end inside
    the gap and must respect the minimum notice from ``now``. Generation stops
    once ``max_slots`` have been emitted.
    """
    zone = get_zone(policy.business_timezone)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=policy.step_minutes)
    earliest = ensure_utc(now) + timedelta(minutes=policy.min_notice_minutes)
    merged = merge_busy_intervals(busy)

    slots: list[TimeSlot] = []
    day = window_start
    while day < window_end:
        if policy.exclude_weekends and day.weekday() >= 5:
            day += timedelta(days=1)
            continue

        def at(t: time) -> datetime:
            return datetime.combine(day, t, tzinfo=zone).astimezone(timezone.utc)

        day_start, day_end = at(policy.business_start), at(policy.business_end)
        lunch = BusyInterval(at(policy.lunch_start), at(policy.lunch_end))
        day_busy = merge_busy_intervals(
            [i for i in merged if i.end > day_start and i.start < day_end] + [lunch]
        )

        for gap_start, gap_end in _free_gaps(day_start, day_end, day_busy):
            if gap_end - gap_start < duration:
                continue
            start = gap_start
            while start + duration <= gap_end:
                if start >= earliest:
                    slots.append(
                        TimeSlot(
                            start=start,
                            end=start + duration,
                            label=format_slot_label(start, client_timezone),
                        )
                    )
                    if len(slots) >= policy.max_slots:
                        return slots
                start += step

        day += timedelta(days=1)

    return slots


class AvailabilityService:
    """Gathers participants' busy time and turns it into offered slots"""

    def __init__(
        self,
        db: Session,
        calendar: GoogleCalendarService,
        clock: Callable[[], datetime] = utcnow,
        policy: Optional[SlotPolicy] = None,
    ):
        self.db = db
        self.calendar = calendar
        self.clock = clock
        self.policy = policy or SlotPolicy(business_timezone=config.BUSINESS_TIMEZONE)
        self.repo = SchedulingRepository()

    def participant_ids(self, meeting: Meeting) -> list[int]:
        """Host first, then participants, de-duplicated"""
        ids: list[int] = []
        for user_id in [meeting.host_user_id, *(meeting.participant_user_ids or [])]:
            if user_id is not None and user_id not in ids:
                ids.append(user_id)
        return ids

    async def get_busy_intervals(
        self, meeting: Meeting, time_min: datetime, time_max: datetime
    ) -> list[BusyInterval]:
        """
        Free/busy for every participant with a calendar connection, plus the
        room resource calendar for in-person meetings. A participant whose
        query fails is logged and skipped.
        """
        busy: list[BusyInterval] = []
        first_token: Optional[str] = None

        for user_id in self.participant_ids(meeting):
            connection = self.repo.get_calendar_connection(self.db, user_id)
            if not connection:
                logger.info(f"ℹ️ User {user_id} has no calendar connection, skipping free/busy")
                continue
            calendar_id = connection.google_calendar_id or "primary"
            try:
                token = await self.calendar.get_valid_access_token(connection, self.db)
                ranges = await self.calendar.free_busy(token, [calendar_id], time_min, time_max)
            except IntegrationFailure as e:
                logger.warning(f"⚠️ Free/busy failed for user {user_id}: {e.error.message}")
                continue
            first_token = first_token or token
            for start, end in ranges.get(calendar_id, []):
                busy.append(BusyInterval(start, end))

        room = self.repo.get_room(self.db, meeting.room_id)
        if meeting.location_mode == LOCATION_IN_PERSON and room and room.resource_email:
            if not first_token:
                logger.warning(f"⚠️ No calendar token available to query room {room.id}")
            else:
                try:
                    ranges = await self.calendar.free_busy(
                        first_token, [room.resource_email], time_min, time_max
                    )
                    for start, end in ranges.get(room.resource_email, []):
                        busy.append(BusyInterval(start, end))
                except IntegrationFailure as e:
                    logger.warning(f"⚠️ Free/busy failed for room {room.id}: {e.error.message}")

        return busy

    def search_window(self, meeting: Meeting, date_cursor: Optional[date]) -> tuple[date, date]:
        today = ensure_utc(self.clock()).astimezone(get_zone(self.policy.business_timezone)).date()
        start = max(date_cursor, today) if date_cursor else today
        days = meeting.search_window_days or config.DEFAULT_SEARCH_WINDOW_DAYS
        return start, start + timedelta(days=days)

    async def available_slots(
        self,
        meeting: Meeting,
        date_cursor: Optional[date] = None,
        client_timezone: Optional[str] = None,
    ) -> tuple[date, date, list[TimeSlot]]:
        window_start, window_end = self.search_window(meeting, date_cursor)
        zone = get_zone(self.policy.business_timezone)
        time_min = datetime.combine(window_start, time(0, 0), tzinfo=zone)
        time_max = datetime.combine(window_end, time(0, 0), tzinfo=zone)

        busy = await self.get_busy_intervals(meeting, time_min, time_max)
        slots = generate_slots(
            busy,
            window_start,
            window_end,
            meeting.duration_minutes,
            client_timezone or meeting.timezone,
            self.clock(),
            self.policy,
        )
        logger.info(
            f"📅 Meeting {meeting.id}: {len(slots)} slots between {window_start} and {window_end}"
        )
        return window_start, window_end, slots
