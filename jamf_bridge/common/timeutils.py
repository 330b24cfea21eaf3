"""
Timestamp and time-of-day normalization helpers.

Rules:
- Naive `datetime` (no tzinfo) is assumed to be **UTC**.
- ISO8601 strings ending with 'Z' are treated as UTC.
- Numeric epoch: values >= 1e12 are treated as milliseconds, otherwise seconds.
- Time-of-day strings ("1:00 AM", "01:00", "13:00:00", "1:00pm") normalize to "HH:MM".
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Optional

UTC = timezone.utc

_TIME_OF_DAY_RE = re.compile(
    r"^\s*(?P<h>\d{1,2})(?::(?P<m>\d{2}))?(?::(?P<s>\d{2}))?\s*(?P<ampm>[aApP]\.?[mM]\.?)?\s*$"
)


def utc_now() -> datetime:
    """Return tz-aware current time in UTC."""

    return datetime.now(tz=UTC)


def parse_timestamp(value: Any) -> datetime:
    """
    Parse common backend timestamp shapes into a tz-aware UTC datetime.

    Supported input shapes:
    - ISO8601 strings (e.g. '2025-01-02T14:30:00Z', '...-05:00', '...+00:00')
    - `datetime` (naive or tz-aware)
    - epoch seconds or milliseconds (int/float)
    """

    if value is None:
        raise TypeError("timestamp value is None")

    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        v = float(value)
        seconds = (v / 1000.0) if abs(v) >= 1e12 else v
        return datetime.fromtimestamp(seconds, tz=UTC)

    if isinstance(value, str):
        s = value.strip()
        if not s:
            raise ValueError("timestamp string is empty")
        if s.endswith("Z") or s.endswith("z"):
            s = s[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValueError(f"unparseable timestamp string: {value!r}") from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt.astimezone(UTC)

    raise TypeError(f"unsupported timestamp type: {type(value).__name__}")


def normalize_time_of_day(value: Any) -> Optional[str]:
    """
    Normalize a time-of-day string to 24h "HH:MM".

    Returns None for empty input. Unparseable strings are returned stripped so
    comparisons still fall back to plain string equality.
    """
    if value is None:
        return None
    raw = str(value).strip()
    if not raw:
        return None
    m = _TIME_OF_DAY_RE.match(raw)
    if not m:
        return raw
    hour = int(m.group("h"))
    minute = int(m.group("m") or 0)
    ampm = (m.group("ampm") or "").replace(".", "").lower()
    if ampm:
        if not 1 <= hour <= 12:
            return raw
        if ampm == "am":
            hour = 0 if hour == 12 else hour
        else:
            hour = 12 if hour == 12 else hour + 12
    if hour > 23 or minute > 59:
        return raw
    return f"{hour:02d}:{minute:02d}"
