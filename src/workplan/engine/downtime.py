from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from typing import Iterable

from workplan.core.dates import to_day
from workplan.core.models import DowntimeIncident

logger = logging.getLogger(__name__)

# Incidents covering more days than this are still expanded in full, but logged.
MAX_INCIDENT_SPAN_DAYS = 90


def incident_window(incident: DowntimeIncident, *, now: datetime | None = None) -> tuple[date, date] | None:
    """Inclusive (first_day, last_day) covered by an incident.

    Returns None when the start cannot be read. A missing or unreadable end
    means the incident is still open, so it runs through ``now``.
    """
    first = to_day(incident.start_time)
    if first is None:
        logger.debug("Ignoring downtime incident %s: unreadable start %r", incident.incident_id, incident.start_time)
        return None
    last = to_day(incident.end_time) or (now or datetime.now()).date()
    return first, last


def is_halted(day, incidents: Iterable[DowntimeIncident], *, now: datetime | None = None) -> bool:
    """True when a blocking incident covers ``day``."""
    d = to_day(day)
    if d is None:
        return False
    for incident in incidents:
        if not incident.is_blocking:
            continue
        window = incident_window(incident, now=now)
        if window is None:
            continue
        first, last = window
        if first <= d <= last:
            return True
    return False


def halted_days(incidents: Iterable[DowntimeIncident], *, now: datetime | None = None) -> dict[date, list[DowntimeIncident]]:
    """Expand blocking incidents into the days they halt.

    Covers exactly the days for which ``is_halted`` is true.
    """
    out: dict[date, list[DowntimeIncident]] = {}
    for incident in incidents:
        if not incident.is_blocking:
            continue
        window = incident_window(incident, now=now)
        if window is None:
            continue
        first, last = window
        if (last - first).days + 1 > MAX_INCIDENT_SPAN_DAYS:
            logger.warning(
                "Downtime incident %s spans %s days (%s to %s)",
                incident.incident_id,
                (last - first).days + 1,
                first,
                last,
            )
        day = first
        while day <= last:
            out.setdefault(day, []).append(incident)
            day += timedelta(days=1)
    return out
