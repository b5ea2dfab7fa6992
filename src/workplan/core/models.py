from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, ClassVar, Mapping, Union

from workplan.core.dates import to_moment

# Steps without a parallel line share this one.
GENERAL_LINE = "general"


class HolidayKind(str, Enum):
    ALL_WEEKEND = "ALL_WEEKEND"
    SUNDAY_ONLY = "SUNDAY_ONLY"
    ALTERNATING_SATURDAY = "ALTERNATING_SATURDAY"
    NO_WEEKLY_REST = "NO_WEEKLY_REST"


class StepStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    SKIPPED = "SKIPPED"


class DowntimeMode(str, Enum):
    # Informational only; production continues.
    NON_BLOCKING = "NON_BLOCKING"
    # Production is halted for every day the incident spans.
    BLOCKING = "BLOCKING"


class OrderStatus(str, Enum):
    PLANNED = "PLANNED"
    IN_PROGRESS = "IN_PROGRESS"
    HALTED = "HALTED"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class HolidayRule:
    key: str
    kind: HolidayKind
    specific_non_working_dates: frozenset[date] = frozenset()
    name: str = ""
    description: str = ""


@dataclass(frozen=True)
class ProcessStep:
    step_id: str
    name: str
    line_id: str | None = None
    estimated_hours: float = 0.0
    module: str | None = None
    description: str | None = None

    @property
    def line(self) -> str:
        return str(self.line_id or "").strip() or GENERAL_LINE


@dataclass(frozen=True)
class ProcessModel:
    model_id: str
    name: str
    steps: tuple[ProcessStep, ...] = ()
    critical_line_override: str | None = None


# ---------- Step state variants ----------


@dataclass(frozen=True)
class Pending:
    status: ClassVar[StepStatus] = StepStatus.PENDING


@dataclass(frozen=True)
class InProgress:
    start_time: datetime | None = None
    operator: str | None = None
    status: ClassVar[StepStatus] = StepStatus.IN_PROGRESS


@dataclass(frozen=True)
class Completed:
    end_time: datetime
    start_time: datetime | None = None
    operator: str | None = None
    status: ClassVar[StepStatus] = StepStatus.COMPLETED


@dataclass(frozen=True)
class Skipped:
    end_time: datetime
    start_time: datetime | None = None
    operator: str | None = None
    status: ClassVar[StepStatus] = StepStatus.SKIPPED


StepState = Union[Pending, InProgress, Completed, Skipped]

PENDING = Pending()


def is_done(state: StepState | None) -> bool:
    return isinstance(state, (Completed, Skipped))


def parse_status(value: Any) -> StepStatus:
    """Unknown or empty statuses read as PENDING."""
    s = str(value or "").strip().upper()
    try:
        return StepStatus(s)
    except ValueError:
        return StepStatus.PENDING


def step_state_from_record(record: Mapping[str, Any] | None, *, order_start: date) -> StepState:
    """Build a step state variant from a stored/plain record.

    Finished states always get an end time: ``end_time``, else ``start_time``,
    else the order start date.
    """
    if not record:
        return PENDING

    status = parse_status(record.get("status"))
    start_time = to_moment(record.get("start_time"))
    operator = record.get("operator") or None

    if status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
        end_time = to_moment(record.get("end_time")) or start_time or to_moment(order_start)
        cls = Completed if status == StepStatus.COMPLETED else Skipped
        return cls(end_time=end_time, start_time=start_time, operator=operator)
    if status == StepStatus.IN_PROGRESS:
        return InProgress(start_time=start_time, operator=operator)
    return PENDING


def step_state_to_record(state: StepState) -> dict[str, Any]:
    return {
        "status": state.status.value,
        "start_time": _iso(getattr(state, "start_time", None)),
        "end_time": _iso(getattr(state, "end_time", None)),
        "operator": getattr(state, "operator", None),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


# ---------- Downtime & orders ----------


@dataclass(frozen=True)
class DowntimeIncident:
    incident_id: str
    # Raw values are accepted as stored; malformed starts never halt production.
    start_time: datetime | str | None
    end_time: datetime | str | None = None
    mode: DowntimeMode = DowntimeMode.NON_BLOCKING
    step_name: str | None = None
    reason: str | None = None
    department: str | None = None

    @property
    def is_blocking(self) -> bool:
        return self.mode == DowntimeMode.BLOCKING


@dataclass(frozen=True)
class ProjectionInput:
    """Everything the engine needs to project one work order."""

    start_date: date
    step_states: Mapping[str, StepState] = field(default_factory=dict)
    holiday_key: str = "DOUBLE"
    downtime_incidents: tuple[DowntimeIncident, ...] = ()
    critical_line_override: str | None = None

    def state_of(self, step_id: str) -> StepState:
        return self.step_states.get(step_id) or PENDING


@dataclass(frozen=True)
class OrderRecord:
    order_id: str
    model_id: str
    start_date: date
    holiday_key: str = "DOUBLE"
    status: OrderStatus = OrderStatus.PLANNED
    workshop: str | None = None
    client_name: str | None = None
    business_closing_date: date | None = None
    estimated_completion_date: date | None = None
    original_estimated_completion_date: date | None = None
    critical_line_override: str | None = None


@dataclass
class AuditEntry:
    id: int
    timestamp: str
    category: str
    message: str
    details: str | None = None
