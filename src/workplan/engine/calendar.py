"""Working-day classification.

Holiday rules are plain lookup tables keyed by the order's holiday key. They
are always passed in explicitly; this module keeps no mutable rule state.
"""

from __future__ import annotations

from datetime import date
from types import MappingProxyType
from typing import Mapping

from workplan.core.dates import to_day
from workplan.core.models import HolidayKind, HolidayRule

DEFAULT_HOLIDAY_KEY = "DOUBLE"

SATURDAY = 5
SUNDAY = 6

DEFAULT_HOLIDAY_RULES: Mapping[str, HolidayRule] = MappingProxyType(
    {
        "DOUBLE": HolidayRule(
            key="DOUBLE",
            kind=HolidayKind.ALL_WEEKEND,
            name="Two-day weekend",
            description="Saturday and Sunday off every week",
        ),
        "SINGLE": HolidayRule(
            key="SINGLE",
            kind=HolidayKind.SUNDAY_ONLY,
            name="Sunday only",
            description="Sunday off every week",
        ),
        "ALTERNATE": HolidayRule(
            key="ALTERNATE",
            kind=HolidayKind.ALTERNATING_SATURDAY,
            name="Alternating Saturday",
            description="Sunday off; Saturday off on even ISO weeks",
        ),
        "NONE": HolidayRule(
            key="NONE",
            kind=HolidayKind.NO_WEEKLY_REST,
            name="No weekly rest",
            description="No fixed weekly rest, only specific holidays",
        ),
    }
)


def iso_week(day: date) -> int:
    return day.isocalendar()[1]


def is_working_day(day, rule: HolidayRule) -> bool:
    """Return True when production may run on ``day`` under ``rule``.

    Specific non-working dates override the weekly pattern. Values that cannot
    be read as a date are treated as working days.
    """
    d = to_day(day)
    if d is None:
        return True

    if d in rule.specific_non_working_dates:
        return False

    weekday = d.weekday()
    if rule.kind == HolidayKind.ALL_WEEKEND:
        return weekday not in (SATURDAY, SUNDAY)
    if rule.kind == HolidayKind.SUNDAY_ONLY:
        return weekday != SUNDAY
    if rule.kind == HolidayKind.ALTERNATING_SATURDAY:
        if weekday == SUNDAY:
            return False
        if weekday == SATURDAY:
            # Even ISO weeks rest, odd weeks work.
            return iso_week(d) % 2 == 1
        return True
    return True


def resolve_rule(key: str | None, rules: Mapping[str, HolidayRule] | None = None) -> HolidayRule:
    """Look up a holiday rule, falling back to the built-in set."""
    k = str(key or "").strip().upper()
    if rules:
        if key in rules:
            return rules[key]
        if k in rules:
            return rules[k]
    if k in DEFAULT_HOLIDAY_RULES:
        return DEFAULT_HOLIDAY_RULES[k]
    return DEFAULT_HOLIDAY_RULES[DEFAULT_HOLIDAY_KEY]
