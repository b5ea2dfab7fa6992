"""Reduced-fidelity projection from an aggregate remaining-hours figure.

Used for provisional estimates when per-step tracking is not available.
Downtime incidents are not consulted here.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Mapping

from workplan.core.dates import to_day
from workplan.core.models import HolidayRule, ProcessModel, ProjectionInput, is_done
from workplan.engine.aggregator import pick_override_line, partition_lines
from workplan.engine.calendar import is_working_day, resolve_rule
from workplan.engine.projector import HOURS_PER_BUCKET, SHIFT_CUTOFF_HOUR

# Two calendar years: no real rule set keeps a plant closed that long.
MAX_CALENDAR_SCAN_DAYS = 365 * 2


def project_from_hours(
    start_date,
    hours_remaining: float,
    holiday_key: str | None,
    rules: Mapping[str, HolidayRule] | None = None,
) -> date:
    """Count ``ceil(hours / 8)`` working days forward from ``start_date``.

    The start day itself is not counted. When ``start_date`` is the current
    moment and the shift has ended, counting starts a day later.
    """
    if hours_remaining is None or hours_remaining <= 0:
        return start_date

    days_needed = math.ceil(hours_remaining / HOURS_PER_BUCKET)
    rule = resolve_rule(holiday_key, rules)

    current = to_day(start_date) or date.today()
    if isinstance(start_date, datetime) and start_date.hour >= SHIFT_CUTOFF_HOUR:
        current += timedelta(days=1)

    for _ in range(MAX_CALENDAR_SCAN_DAYS):
        if days_needed <= 0:
            break
        current += timedelta(days=1)
        if is_working_day(current, rule):
            days_needed -= 1
    return current


def remaining_hours(order: ProjectionInput, model: ProcessModel) -> float:
    """Unfinished hours on the line that gates the order.

    The override line when one applies, otherwise the heaviest line.
    """
    lines = partition_lines(model.steps)
    if not lines:
        return 0.0

    per_line = {
        line_id: sum(float(s.estimated_hours or 0.0) for s in steps if not is_done(order.state_of(s.step_id)))
        for line_id, steps in lines.items()
    }
    override_line, _ = pick_override_line(order, model, lines)
    if override_line:
        return per_line[override_line]
    return max(0.0, *per_line.values())
