"""Schedule projection engine.

Pure functions that turn a process model, per-step state, a holiday rule and
downtime incidents into projected completion dates. Nothing here touches the
database or the UI.
"""

from workplan.engine.aggregator import OrderProjection, partition_lines, project_order, project_order_lines
from workplan.engine.calendar import DEFAULT_HOLIDAY_KEY, DEFAULT_HOLIDAY_RULES, is_working_day, resolve_rule
from workplan.engine.downtime import halted_days, is_halted
from workplan.engine.metrics import downtime_duration_days, progress_pct, variance_days
from workplan.engine.projector import DayAllocation, LineSchedule, allocate_line, project_line
from workplan.engine.simplified import project_from_hours, remaining_hours

__all__ = [
    "DEFAULT_HOLIDAY_KEY",
    "DEFAULT_HOLIDAY_RULES",
    "DayAllocation",
    "LineSchedule",
    "OrderProjection",
    "allocate_line",
    "downtime_duration_days",
    "halted_days",
    "is_halted",
    "is_working_day",
    "partition_lines",
    "progress_pct",
    "project_from_hours",
    "project_line",
    "project_order",
    "project_order_lines",
    "remaining_hours",
    "resolve_rule",
    "variance_days",
]
