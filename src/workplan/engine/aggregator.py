from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Iterable, Mapping

from workplan.core.dates import to_day
from workplan.core.models import HolidayRule, ProcessModel, ProcessStep, ProjectionInput
from workplan.engine.calendar import resolve_rule
from workplan.engine.projector import LineSchedule, allocate_line

logger = logging.getLogger(__name__)


@dataclass
class OrderProjection:
    completion_date: date
    # line_id -> projected finish, only for the lines that were projected
    line_dates: dict[str, date] = field(default_factory=dict)
    schedules: dict[str, LineSchedule] = field(default_factory=dict)
    # Line whose finish produced completion_date
    critical_line: str | None = None
    # Override line actually applied (single-line mode)
    override_line: str | None = None
    # An override was requested but named a line the model does not have
    override_ignored: bool = False


def partition_lines(steps: Iterable[ProcessStep]) -> dict[str, list[ProcessStep]]:
    """Group steps by parallel line, keeping definition order inside each line."""
    out: dict[str, list[ProcessStep]] = {}
    for step in steps:
        out.setdefault(step.line, []).append(step)
    return out


def pick_override_line(order: ProjectionInput, model: ProcessModel, lines: Mapping[str, list]) -> tuple[str | None, bool]:
    requested = [
        str(o).strip()
        for o in (order.critical_line_override, model.critical_line_override)
        if o is not None and str(o).strip()
    ]
    for line_id in requested:
        if line_id in lines:
            return line_id, False
    return None, bool(requested)


def project_order_lines(
    order: ProjectionInput,
    model: ProcessModel,
    rules: Mapping[str, HolidayRule] | None = None,
    *,
    now: datetime | None = None,
) -> OrderProjection:
    """Project every parallel line of an order and combine the results.

    Lines run in parallel, so the order finishes with its slowest line unless
    the order (or, failing that, the model) names a critical line to follow.
    """
    now = now or datetime.now()
    rule = resolve_rule(order.holiday_key, rules)
    lines = partition_lines(model.steps)

    override_line, override_ignored = pick_override_line(order, model, lines)
    if override_ignored:
        logger.warning(
            "Critical line override %r not found in model %s; using the latest of %d lines",
            order.critical_line_override or model.critical_line_override,
            model.model_id,
            len(lines),
        )

    selected = {override_line: lines[override_line]} if override_line else lines

    result = OrderProjection(
        completion_date=to_day(order.start_date) or now.date(),
        override_line=override_line,
        override_ignored=override_ignored,
    )
    for line_id, steps in selected.items():
        schedule = allocate_line(
            order.start_date,
            steps,
            order.step_states,
            rule,
            order.downtime_incidents,
            now,
            line_id=line_id,
            order_start=order.start_date,
        )
        result.schedules[line_id] = schedule
        result.line_dates[line_id] = schedule.completion_date

    if result.line_dates:
        critical = max(result.line_dates, key=lambda k: result.line_dates[k])
        result.critical_line = critical
        result.completion_date = result.line_dates[critical]
    return result


def project_order(
    order: ProjectionInput,
    model: ProcessModel,
    rules: Mapping[str, HolidayRule] | None = None,
    *,
    now: datetime | None = None,
) -> date:
    return project_order_lines(order, model, rules, now=now).completion_date
