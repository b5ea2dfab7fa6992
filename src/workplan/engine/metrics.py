from __future__ import annotations

from datetime import date, datetime, time, timedelta
from typing import Mapping

from workplan.core.dates import to_day, to_moment
from workplan.core.models import ProcessModel, StepState, is_done

# Shift used to convert a downtime interval into lost working days.
SHIFT_START = time(8, 30)
SHIFT_END = time(17, 30)
SHIFT_HOURS = 9.0


def variance_days(projected: date | None, closing) -> int | None:
    """Days the projection lands after (+) or before (-) the closing date."""
    p = to_day(projected)
    c = to_day(closing)
    if p is None or c is None:
        return None
    return (p - c).days


def progress_pct(model: ProcessModel, step_states: Mapping[str, StepState]) -> int:
    """Share of the model's steps that are completed or skipped, 0-100."""
    if not model.steps:
        return 0
    done = sum(1 for s in model.steps if is_done(step_states.get(s.step_id)))
    return round(done / len(model.steps) * 100)


def downtime_duration_days(start_time, end_time) -> float:
    """Working days lost between two timestamps, counted against the day shift.

    Only the overlap with 08:30-17:30 of each calendar day counts; the total is
    expressed in 9-hour days and rounded to one decimal. Unreadable or reversed
    intervals count as zero.
    """
    start = to_moment(start_time)
    end = to_moment(end_time)
    if start is None or end is None or start >= end:
        return 0.0

    total = timedelta()
    day = start.date()
    while day <= end.date():
        shift_start = datetime.combine(day, SHIFT_START)
        shift_end = datetime.combine(day, SHIFT_END)
        overlap_start = max(start, shift_start)
        overlap_end = min(end, shift_end)
        if overlap_start < overlap_end:
            total += overlap_end - overlap_start
        day += timedelta(days=1)

    hours = total.total_seconds() / 3600
    return round(hours / SHIFT_HOURS, 1)
