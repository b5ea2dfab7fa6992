from __future__ import annotations

from datetime import date, datetime, time


def to_moment(value) -> datetime | None:
    """Coerce a date/datetime/ISO string into a naive local datetime.

    Returns None for empty or unparseable values. Aware datetimes (e.g. ISO
    strings ending in ``Z``) are converted to local time before the tzinfo is
    dropped, so day boundaries follow the shop floor clock.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        # pandas Timestamp
        if hasattr(value, "to_pydatetime"):
            try:
                dt = value.to_pydatetime()
            except (TypeError, ValueError):
                return None
        else:
            s = str(value).strip()
            if not s or s.lower() == "nan":
                return None
            if s.endswith("Z"):
                s = s[:-1] + "+00:00"
            try:
                dt = datetime.fromisoformat(s)
            except ValueError:
                return None

    if dt.tzinfo is not None:
        dt = dt.astimezone().replace(tzinfo=None)
    return dt


def to_day(value) -> date | None:
    """Normalize to calendar-day granularity (no time component)."""
    if isinstance(value, date) and not isinstance(value, datetime):
        return value
    dt = to_moment(value)
    return dt.date() if dt is not None else None
