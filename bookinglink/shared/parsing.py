"""
Defensive field extraction for loosely-typed external JSON.

External APIs return IDs as numbers or numeric strings, rename fields between
versions and omit keys freely. These helpers turn "whatever came back" into a
value or None without raising.
"""

import math
import re
from typing import Any, Optional

from ..security_utils import redact_secrets

EXCERPT_LENGTH = 300

_DATE_ONLY_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})")


def pick_string(value: Any) -> Optional[str]:
    """Return a non-empty string for str/int/float input, else None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        return value or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return str(int(value)) if value.is_integer() else str(value)
    return None


def pick_number(value: Any) -> Optional[int]:
    """Return an integer for int or numeric-string input, else None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isfinite(value) and value.is_integer():
            return int(value)
        return None
    if isinstance(value, str):
        value = value.strip()
        if re.fullmatch(r"-?\d+", value):
            return int(value)
    return None


def normalize_date_only(value: Any) -> Optional[str]:
    """Reduce a date or datetime string to its YYYY-MM-DD prefix"""
    text = pick_string(value)
    if not text:
        return None
    match = _DATE_ONLY_RE.match(text)
    return match.group(1) if match else None


def pick_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def excerpt(text: Optional[str], limit: int = EXCERPT_LENGTH) -> Optional[str]:
    """Truncate a response body for logs and warnings, scrubbing credentials"""
    if not text:
        return None
    return redact_secrets(text)[:limit]
