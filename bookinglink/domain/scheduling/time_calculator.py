"""
Time calculations for scheduling.

All interval math runs on aware UTC instants. Wall-clock values are only
produced at the edges, for systems that expect local date/time fields.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


class InvalidTimezone(ValueError):
    """Raised for an unknown IANA zone identifier"""


@dataclass(frozen=True)
class LocalParts:
    date: str  # YYYY-MM-DD
    time_hm: str  # HH:mm
    time_hms: str  # HH:mm:ss
    time_12h: str  # h:mm AM


def get_zone(tz: str) -> ZoneInfo:
    if not tz or not isinstance(tz, str):
        raise InvalidTimezone(f"Invalid timezone: {tz!r}")
    try:
        return ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidTimezone(f"Invalid timezone: {tz}") from e


def is_valid_timezone(tz: Optional[str]) -> bool:
    try:
        get_zone(tz)
    except InvalidTimezone:
        return False
    return True


def utcnow() -> datetime:
    """Aware current UTC time; the default clock for every service"""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Treat naive datetimes as UTC and convert aware ones to UTC"""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_naive_utc(dt: datetime) -> datetime:
    """Storage form: naive UTC, matching DateTime columns"""
    return ensure_utc(dt).replace(tzinfo=None)


def format_12h(dt: datetime) -> str:
    hour = dt.hour % 12 or 12
    suffix = "AM" if dt.hour < 12 else "PM"
    return f"{hour}:{dt.minute:02d} {suffix}"


def to_local_parts(instant: datetime, tz: str) -> LocalParts:
    """Wall-clock date/time parts of an instant in the given zone"""
    local = ensure_utc(instant).astimezone(get_zone(tz))
    return LocalParts(
        date=local.strftime("%Y-%m-%d"),
        time_hm=local.strftime("%H:%M"),
        time_hms=local.strftime("%H:%M:%S"),
        time_12h=format_12h(local),
    )


def to_local_iso_with_offset(instant: datetime, tz: str) -> str:
    """YYYY-MM-DDTHH:mm:ss+HH:MM in the given zone"""
    local = ensure_utc(instant).astimezone(get_zone(tz))
    return local.replace(microsecond=0).isoformat()


def format_slot_label(instant: datetime, tz: str) -> str:
    """e.g. "Monday, Jun 2 at 10:00 AM" """
    local = ensure_utc(instant).astimezone(get_zone(tz))
    return f"{local:%A}, {local:%b} {local.day} at {format_12h(local)}"


def resolve_timezone(*candidates: Optional[str]) -> str:
    """First valid zone among candidates, in priority order.

    Callers pass (CRM user timezone, meeting timezone, default). The CRM
    renders times in its own user's zone regardless of what is sent, so that
    zone wins when it is known.
    """
    for candidate in candidates:
        if candidate and is_valid_timezone(candidate):
            return candidate
    raise InvalidTimezone(f"No valid timezone among {candidates!r}")


def parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 instant (trailing Z accepted) into aware UTC"""
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))
