"""Shared validation utilities"""

from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def validate_timezone(tz: Optional[str]) -> Optional[str]:
    """Validate an IANA timezone identifier"""
    if not tz:
        return tz

    tz = tz.strip()
    try:
        ZoneInfo(tz)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise ValueError(f"Unknown timezone: {tz}") from e
    return tz
