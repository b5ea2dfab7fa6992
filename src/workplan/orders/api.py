from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from workplan.core.dates import to_day
from workplan.core.models import (
    PENDING,
    Completed,
    DowntimeIncident,
    InProgress,
    OrderRecord,
    OrderStatus,
    Pending,
    Skipped,
    StepStatus,
    is_done,
    parse_status,
)
from workplan.data.repository import Repository
from workplan.engine import (
    OrderProjection,
    downtime_duration_days,
    halted_days,
    partition_lines,
    progress_pct,
    project_from_hours,
    project_order_lines,
    remaining_hours,
    variance_days,
)

logger = logging.getLogger(__name__)


def project(repo: Repository, *, order_id: str, now: datetime | None = None) -> OrderProjection:
    """Project an order from its stored state without saving anything."""
    _, model, projection_input = repo.get_projection_input(order_id)
    return project_order_lines(projection_input, model, repo.get_holiday_rules(), now=now)


def recompute_order(repo: Repository, *, order_id: str, now: datetime | None = None) -> OrderProjection:
    """Project an order and persist the new estimated completion date."""
    result = project(repo, order_id=order_id, now=now)
    repo.set_estimated_completion(order_id=order_id, projected=result.completion_date)
    logger.info(
        "Order %s projected to %s (critical line %s)",
        order_id,
        result.completion_date.isoformat(),
        result.critical_line,
    )
    return result


def recompute_all(repo: Repository, *, now: datetime | None = None) -> dict[str, str]:
    out: dict[str, str] = {}
    for order in repo.list_orders():
        try:
            out[order.order_id] = recompute_order(repo, order_id=order.order_id, now=now).completion_date.isoformat()
        except ValueError as ex:
            logger.warning("Skipping order %s: %s", order.order_id, ex)
    return out


def create_order(repo: Repository, *, order: OrderRecord, now: datetime | None = None) -> OrderProjection:
    """Register a new work order and store its first projection as the original plan."""
    if repo.get_order(order.order_id) is not None:
        raise ValueError(f"Order {order.order_id!r} already exists")
    if not str(order.holiday_key or "").strip():
        default_key = repo.get_config(key="default_holiday_key", default="DOUBLE") or "DOUBLE"
        order = OrderRecord(
            order_id=order.order_id,
            model_id=order.model_id,
            start_date=order.start_date,
            holiday_key=default_key,
            status=order.status,
            workshop=order.workshop,
            client_name=order.client_name,
            business_closing_date=order.business_closing_date,
            critical_line_override=order.critical_line_override,
        )
    repo.upsert_order(order)
    repo.log_audit("order", f"Order {order.order_id} created", f"model={order.model_id}")
    return recompute_order(repo, order_id=order.order_id, now=now)


def import_orders(repo: Repository, *, content: bytes, now: datetime | None = None) -> tuple[list[str], int]:
    """Import orders from Excel and project each of them."""
    default_key = repo.get_config(key="default_holiday_key", default="DOUBLE") or "DOUBLE"
    imported, skipped = repo.import_orders_bytes(content=content, default_holiday_key=default_key)
    for order_id in imported:
        recompute_order(repo, order_id=order_id, now=now)
    if skipped:
        logger.warning("Order import skipped %d row(s)", skipped)
    return imported, skipped


def update_step_status(
    repo: Repository,
    *,
    order_id: str,
    step_id: str,
    status: StepStatus | str,
    operator: str | None = None,
    now: datetime | None = None,
) -> OrderProjection:
    """Move a step to a new status, stamp its times and re-project the order."""
    now = now or datetime.now()
    if not isinstance(status, StepStatus):
        raw = str(status or "").strip().upper()
        if raw not in StepStatus.__members__:
            raise ValueError(f"Unknown step status: {status!r}")
        status = parse_status(raw)

    order, model, projection_input = repo.get_projection_input(order_id)
    if step_id not in {s.step_id for s in model.steps}:
        raise ValueError(f"Step {step_id!r} is not part of model {model.model_id!r}")

    previous = projection_input.state_of(step_id)
    started_at = getattr(previous, "start_time", None)
    if status == StepStatus.IN_PROGRESS:
        state = InProgress(start_time=now, operator=operator)
    elif status == StepStatus.COMPLETED:
        state = Completed(end_time=now, start_time=started_at, operator=operator)
    elif status == StepStatus.SKIPPED:
        state = Skipped(end_time=now, start_time=started_at, operator=operator)
    else:
        state = PENDING
    repo.set_step_state(order_id=order_id, step_id=step_id, state=state)

    states = dict(projection_input.step_states)
    states[step_id] = state
    if model.steps and all(is_done(states.get(s.step_id)) for s in model.steps):
        repo.set_order_status(order_id=order_id, status=OrderStatus.COMPLETED)
    elif order.status == OrderStatus.COMPLETED:
        # Reopened: work is left again.
        if _has_open_blocking(projection_input.downtime_incidents):
            reopened = OrderStatus.HALTED
        elif any(not isinstance(s, Pending) for s in states.values()):
            reopened = OrderStatus.IN_PROGRESS
        else:
            reopened = OrderStatus.PLANNED
        repo.set_order_status(order_id=order_id, status=reopened)
    elif order.status == OrderStatus.PLANNED and status != StepStatus.PENDING:
        repo.set_order_status(order_id=order_id, status=OrderStatus.IN_PROGRESS)

    repo.log_audit(
        "step",
        f"Order {order_id}: step {step_id} -> {status.value}",
        f"operator={operator or 'unknown'}",
    )
    return recompute_order(repo, order_id=order_id, now=now)


def record_incident(
    repo: Repository,
    *,
    order_id: str,
    incident: DowntimeIncident,
    now: datetime | None = None,
) -> OrderProjection:
    order = repo.require_order(order_id)
    incident_id = repo.add_incident(order_id=order_id, incident=incident)
    repo.log_audit(
        "incident",
        f"Order {order_id}: {incident.mode.value} incident {incident_id}",
        incident.reason,
    )
    if incident.is_blocking and not incident.end_time and order.status != OrderStatus.COMPLETED:
        repo.set_order_status(order_id=order_id, status=OrderStatus.HALTED)
    return recompute_order(repo, order_id=order_id, now=now)


def close_incident(
    repo: Repository,
    *,
    incident_id: str,
    end_time: datetime,
    now: datetime | None = None,
) -> OrderProjection:
    """Set the end time of an incident; a halted order resumes once no blocking incident is open."""
    order_id = repo.get_incident_order_id(incident_id)
    if order_id is None:
        raise ValueError(f"Unknown incident: {incident_id!r}")
    current = next(i for i in repo.get_incidents(order_id) if i.incident_id == incident_id)
    repo.update_incident(
        DowntimeIncident(
            incident_id=current.incident_id,
            start_time=current.start_time,
            end_time=end_time,
            mode=current.mode,
            step_name=current.step_name,
            reason=current.reason,
            department=current.department,
        )
    )

    _resume_if_unblocked(repo, order_id)
    return recompute_order(repo, order_id=order_id, now=now)


def remove_incident(repo: Repository, *, incident_id: str, now: datetime | None = None) -> OrderProjection:
    """Delete an incident reported by mistake and re-project its order."""
    order_id = repo.get_incident_order_id(incident_id)
    if order_id is None:
        raise ValueError(f"Unknown incident: {incident_id!r}")
    repo.delete_incident(incident_id)
    repo.log_audit("incident", f"Order {order_id}: incident {incident_id} deleted")
    _resume_if_unblocked(repo, order_id)
    return recompute_order(repo, order_id=order_id, now=now)


def set_order_critical_line(
    repo: Repository, *, order_id: str, line_id: str | None, now: datetime | None = None
) -> OrderProjection:
    """Follow one line for this order (blank: back to the model's choice or the latest line)."""
    repo.set_order_critical_line(order_id=order_id, line_id=line_id)
    repo.log_audit("order", f"Order {order_id}: critical line -> {line_id or '(none)'}")
    return recompute_order(repo, order_id=order_id, now=now)


def set_model_critical_line(
    repo: Repository, *, model_id: str, line_id: str | None, now: datetime | None = None
) -> dict[str, str]:
    """Set the model's critical line and re-project every order built on it."""
    repo.set_model_critical_line(model_id=model_id, line_id=line_id)
    repo.log_audit("model", f"Model {model_id}: critical line -> {line_id or '(none)'}")
    return {
        order.order_id: recompute_order(repo, order_id=order.order_id, now=now).completion_date.isoformat()
        for order in repo.list_orders()
        if order.model_id == model_id
    }


def _resume_if_unblocked(repo: Repository, order_id: str) -> None:
    order, _, projection_input = repo.get_projection_input(order_id)
    if order.status == OrderStatus.HALTED and not _has_open_blocking(projection_input.downtime_incidents):
        started = any(not isinstance(s, Pending) for s in projection_input.step_states.values())
        repo.set_order_status(order_id=order_id, status=OrderStatus.IN_PROGRESS if started else OrderStatus.PLANNED)


def build_order_metrics(repo: Repository, *, order_id: str, now: datetime | None = None) -> dict[str, Any]:
    """Dashboard figures for one order. Nothing is persisted."""
    now = now or datetime.now()
    order, model, projection_input = repo.get_projection_input(order_id)
    rules = repo.get_holiday_rules()
    result = project_order_lines(projection_input, model, rules, now=now)
    hours = remaining_hours(projection_input, model)

    return {
        "order_id": order.order_id,
        "model_id": order.model_id,
        "client_name": order.client_name,
        "workshop": order.workshop,
        "status": order.status.value,
        "start_date": order.start_date.isoformat(),
        "projected_date": result.completion_date.isoformat(),
        "original_projected_date": _iso(order.original_estimated_completion_date),
        "business_closing_date": _iso(order.business_closing_date),
        "variance_days": variance_days(result.completion_date, order.business_closing_date),
        "progress_pct": progress_pct(model, projection_input.step_states),
        "remaining_hours": hours,
        "quick_estimate": _iso(to_day(project_from_hours(now, hours, order.holiday_key, rules))),
        "line_dates": {k: v.isoformat() for k, v in result.line_dates.items()},
        "critical_line": result.critical_line,
        "override_ignored": result.override_ignored,
        "incident_days": sum(
            downtime_duration_days(i.start_time, i.end_time or now) for i in projection_input.downtime_incidents
        ),
    }


def build_dashboard_rows(repo: Repository, *, now: datetime | None = None) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for order in repo.list_orders():
        try:
            rows.append(build_order_metrics(repo, order_id=order.order_id, now=now))
        except ValueError as ex:
            logger.warning("Order %s left out of the dashboard: %s", order.order_id, ex)
    rows.sort(key=lambda r: (r["business_closing_date"] or "9999-12-31", r["order_id"]))
    return rows


def build_calendar_view(
    repo: Repository, *, order_id: str, now: datetime | None = None
) -> dict[str, list[dict[str, Any]]]:
    """Per line, the days that carry recorded finishes, projected buckets or downtime.

    Returns ``{line_id: [{"date": iso, "items": [...]}, ...]}`` sorted by date.
    Blocking downtime is shown on every line.
    """
    now = now or datetime.now()
    _, model, projection_input = repo.get_projection_input(order_id)
    result = project_order_lines(projection_input, model, repo.get_holiday_rules(), now=now)
    names = {s.step_id: s.name for s in model.steps}
    halted = halted_days(projection_input.downtime_incidents, now=now)

    out: dict[str, list[dict[str, Any]]] = {}
    for line_id in partition_lines(model.steps):
        schedule = result.schedules.get(line_id)
        if schedule is None:
            # Single-line mode: the other lines are not projected.
            continue
        days: dict[date, list[dict[str, Any]]] = {}
        for alloc in schedule.allocations:
            days.setdefault(alloc.day, []).append(
                {
                    "type": "step",
                    "step_id": alloc.step_id,
                    "name": names.get(alloc.step_id, alloc.step_id),
                    "status": alloc.status.value,
                    "hours": alloc.hours,
                    "recorded": alloc.recorded,
                }
            )
        for day, incidents in halted.items():
            for incident in incidents:
                days.setdefault(day, []).insert(
                    0,
                    {"type": "downtime", "incident_id": incident.incident_id, "reason": incident.reason},
                )
        out[line_id] = [{"date": d.isoformat(), "items": items} for d, items in sorted(days.items())]
    return out


def export_orders_report(repo: Repository, *, now: datetime | None = None) -> bytes:
    return repo.export_orders_report_bytes(build_dashboard_rows(repo, now=now))


def _iso(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


def _has_open_blocking(incidents) -> bool:
    return any(i.is_blocking and not i.end_time for i in incidents)
