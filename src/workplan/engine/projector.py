"""Projection of a single parallel line.

A line's steps run one after another. Finished steps pin the line to their
recorded end date; unfinished steps are laid out forward in 8-hour day
buckets on working, non-halted days.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterable, Mapping, Sequence

from workplan.core.dates import to_day
from workplan.core.models import PENDING, DowntimeIncident, HolidayRule, ProcessStep, StepState, StepStatus, is_done
from workplan.engine.calendar import is_working_day
from workplan.engine.downtime import is_halted

logger = logging.getLogger(__name__)

# One working day absorbs at most this many estimated hours of a step.
HOURS_PER_BUCKET = 8

# Once the clock reaches this hour, unstarted work can no longer be credited
# to today.
SHIFT_CUTOFF_HOUR = 21

# Upper bound on consecutive unusable days skipped while placing one bucket.
# The worst real calendar (holiday season stacked on a long blocking incident)
# stays far below this; hitting it means the calendar never opens.
MAX_SKIP_DAYS = 100

ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class DayAllocation:
    day: date
    step_id: str
    hours: float
    status: StepStatus
    # True for recorded finishes, False for projected buckets.
    recorded: bool = False


@dataclass
class LineSchedule:
    line_id: str
    completion_date: date
    allocations: list[DayAllocation] = field(default_factory=list)
    exhausted: bool = False


def buckets_for(hours: float) -> int:
    """Number of day buckets a step of ``hours`` occupies (0 hours -> none)."""
    if not hours or hours <= 0:
        return 0
    return math.ceil(hours / HOURS_PER_BUCKET)


def earliest_start(cursor: date, now: datetime) -> date:
    today = now.date()
    if now.hour >= SHIFT_CUTOFF_HOUR and cursor == today:
        return today + ONE_DAY
    return today


def allocate_line(
    start_date,
    steps: Sequence[ProcessStep],
    step_states: Mapping[str, StepState],
    rule: HolidayRule,
    incidents: Iterable[DowntimeIncident] = (),
    now: datetime | None = None,
    *,
    line_id: str = "",
    order_start: date | None = None,
) -> LineSchedule:
    """Walk one line and return every recorded and projected day bucket."""
    now = now or datetime.now()
    incidents = tuple(incidents)
    cursor = to_day(start_date) or now.date()
    last_worked = cursor
    floor_day = earliest_start(cursor, now)
    fallback_end = to_day(order_start) or cursor

    schedule = LineSchedule(line_id=line_id, completion_date=cursor)

    def usable(day: date) -> bool:
        return is_working_day(day, rule) and not is_halted(day, incidents, now=now)

    for step in steps:
        state = step_states.get(step.step_id) or PENDING

        if is_done(state):
            end_day = to_day(state.end_time) or fallback_end
            last_worked = max(last_worked, end_day)
            if end_day >= cursor:
                cursor = end_day + ONE_DAY
            schedule.allocations.append(
                DayAllocation(day=end_day, step_id=step.step_id, hours=0.0, status=state.status, recorded=True)
            )
            continue

        cursor = max(cursor, floor_day)
        remaining = float(step.estimated_hours or 0.0)
        for _ in range(buckets_for(remaining)):
            skipped = 0
            while not usable(cursor) and skipped < MAX_SKIP_DAYS:
                cursor += ONE_DAY
                skipped += 1
            if skipped >= MAX_SKIP_DAYS and not usable(cursor):
                schedule.exhausted = True
                logger.warning(
                    "Line %r: no usable day within %d days for step %s; placing it on %s",
                    line_id,
                    MAX_SKIP_DAYS,
                    step.step_id,
                    cursor.isoformat(),
                )

            hours = min(remaining, HOURS_PER_BUCKET)
            remaining -= hours
            schedule.allocations.append(
                DayAllocation(day=cursor, step_id=step.step_id, hours=hours, status=state.status)
            )
            last_worked = cursor
            cursor += ONE_DAY

    schedule.completion_date = last_worked
    return schedule


def project_line(
    start_date,
    steps: Sequence[ProcessStep],
    step_states: Mapping[str, StepState],
    rule: HolidayRule,
    incidents: Iterable[DowntimeIncident] = (),
    now: datetime | None = None,
) -> date:
    """Last calendar day on which the line has recorded or scheduled work."""
    return allocate_line(start_date, steps, step_states, rule, incidents, now).completion_date
