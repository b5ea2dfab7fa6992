"""Tests for the order service: step updates, incidents and dashboard figures."""

from __future__ import annotations

import io
from datetime import date, datetime
from pathlib import Path

import pandas as pd
import pytest

from workplan.core.models import DowntimeIncident, DowntimeMode, OrderRecord, OrderStatus, ProcessModel, ProcessStep, StepStatus
from workplan.data.db import Db
from workplan.data.repository import Repository
from workplan.orders.api import (
    build_calendar_view,
    build_dashboard_rows,
    build_order_metrics,
    close_incident,
    create_order,
    export_orders_report,
    import_orders,
    recompute_all,
    recompute_order,
    record_incident,
    remove_incident,
    set_model_critical_line,
    set_order_critical_line,
    update_step_status,
)

MONDAY_MORNING = datetime(2026, 1, 5, 10, 0)


@pytest.fixture()
def repo(tmp_path) -> Repository:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    repo = Repository(db)
    repo.upsert_model(
        ProcessModel(
            model_id="M1",
            name="Pump skid",
            steps=(
                ProcessStep(step_id="a1", name="Frame", line_id="A", estimated_hours=8),
                ProcessStep(step_id="a2", name="Paint", line_id="A", estimated_hours=8),
                ProcessStep(step_id="b1", name="Wiring", line_id="B", estimated_hours=16),
            ),
        )
    )
    repo.upsert_order(
        OrderRecord(
            order_id="WO-1",
            model_id="M1",
            start_date=date(2026, 1, 5),
            holiday_key="DOUBLE",
            business_closing_date=date(2026, 1, 7),
        )
    )
    return repo


def _blocking(start, end=None) -> DowntimeIncident:
    return DowntimeIncident(incident_id="", start_time=start, end_time=end, mode=DowntimeMode.BLOCKING, reason="Power cut")


def test_recompute_persists_projection(repo):
    result = recompute_order(repo, order_id="WO-1", now=MONDAY_MORNING)
    assert result.completion_date == date(2026, 1, 6)
    order = repo.require_order("WO-1")
    assert order.estimated_completion_date == date(2026, 1, 6)
    assert order.original_estimated_completion_date == date(2026, 1, 6)


def test_late_completion_moves_projection_and_keeps_original(repo):
    recompute_order(repo, order_id="WO-1", now=MONDAY_MORNING)
    wednesday = datetime(2026, 1, 7, 10, 0)

    result = update_step_status(repo, order_id="WO-1", step_id="a1", status="completed", operator="ana", now=wednesday)

    assert result.completion_date == date(2026, 1, 8)
    order = repo.require_order("WO-1")
    assert order.status == OrderStatus.IN_PROGRESS
    assert order.original_estimated_completion_date == date(2026, 1, 6)

    metrics = build_order_metrics(repo, order_id="WO-1", now=wednesday)
    assert metrics["variance_days"] == 1
    assert metrics["progress_pct"] == 33
    assert metrics["original_projected_date"] == "2026-01-06"


def test_in_progress_keeps_start_time_on_completion(repo):
    update_step_status(repo, order_id="WO-1", step_id="b1", status=StepStatus.IN_PROGRESS, now=MONDAY_MORNING)
    update_step_status(
        repo, order_id="WO-1", step_id="b1", status=StepStatus.COMPLETED, now=datetime(2026, 1, 6, 16, 0)
    )
    _, _, projection_input = repo.get_projection_input("WO-1")
    state = projection_input.state_of("b1")
    assert state.start_time == MONDAY_MORNING
    assert state.end_time == datetime(2026, 1, 6, 16, 0)


def test_all_steps_done_completes_order(repo):
    for step_id in ("a1", "a2", "b1"):
        update_step_status(repo, order_id="WO-1", step_id=step_id, status=StepStatus.SKIPPED, now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.COMPLETED


def test_reset_to_pending_clears_state(repo):
    update_step_status(repo, order_id="WO-1", step_id="a1", status=StepStatus.COMPLETED, now=MONDAY_MORNING)
    update_step_status(repo, order_id="WO-1", step_id="a1", status="PENDING", now=MONDAY_MORNING)
    _, _, projection_input = repo.get_projection_input("WO-1")
    assert projection_input.state_of("a1").status == StepStatus.PENDING


def test_invalid_step_updates_are_rejected(repo):
    with pytest.raises(ValueError):
        update_step_status(repo, order_id="WO-1", step_id="a1", status="DONE", now=MONDAY_MORNING)
    with pytest.raises(ValueError):
        update_step_status(repo, order_id="WO-1", step_id="zz", status="COMPLETED", now=MONDAY_MORNING)
    with pytest.raises(ValueError):
        update_step_status(repo, order_id="WO-404", step_id="a1", status="COMPLETED", now=MONDAY_MORNING)


def test_blocking_incident_delays_order(repo):
    result = record_incident(
        repo,
        order_id="WO-1",
        incident=_blocking(datetime(2026, 1, 5, 8, 0), datetime(2026, 1, 7, 17, 0)),
        now=MONDAY_MORNING,
    )
    assert result.completion_date == date(2026, 1, 9)
    assert repo.get_recent_audit_entries(limit=1)[0].category == "incident"


def test_open_incident_then_closing_it(repo):
    tuesday = datetime(2026, 1, 6, 10, 0)
    result = record_incident(repo, order_id="WO-1", incident=_blocking(datetime(2026, 1, 5, 8, 0)), now=tuesday)
    assert result.completion_date == date(2026, 1, 8)

    (incident,) = repo.get_incidents("WO-1")
    result = close_incident(repo, incident_id=incident.incident_id, end_time=datetime(2026, 1, 5, 17, 0), now=tuesday)
    assert result.completion_date == date(2026, 1, 7)
    assert repo.get_incidents("WO-1")[0].end_time == "2026-01-05T17:00:00"


def test_close_unknown_incident_raises(repo):
    with pytest.raises(ValueError):
        close_incident(repo, incident_id="nope", end_time=MONDAY_MORNING)


def test_order_metrics(repo):
    metrics = build_order_metrics(repo, order_id="WO-1", now=MONDAY_MORNING)
    assert metrics["projected_date"] == "2026-01-06"
    assert metrics["remaining_hours"] == 16
    assert metrics["quick_estimate"] == "2026-01-07"
    assert metrics["critical_line"] == "A"
    assert metrics["line_dates"] == {"A": "2026-01-06", "B": "2026-01-06"}
    assert metrics["variance_days"] == -1
    assert metrics["incident_days"] == 0
    assert not metrics["override_ignored"]


def test_dashboard_sorts_by_closing_date(repo):
    repo.upsert_order(OrderRecord(order_id="WO-0", model_id="M1", start_date=date(2026, 1, 5)))
    repo.upsert_order(
        OrderRecord(order_id="WO-2", model_id="M1", start_date=date(2026, 1, 5), business_closing_date=date(2026, 1, 6))
    )
    rows = build_dashboard_rows(repo, now=MONDAY_MORNING)
    assert [r["order_id"] for r in rows] == ["WO-2", "WO-1", "WO-0"]
    assert rows[-1]["variance_days"] is None


def test_recompute_all_covers_every_order(repo):
    repo.upsert_order(OrderRecord(order_id="WO-2", model_id="M1", start_date=date(2026, 1, 9)))
    assert recompute_all(repo, now=MONDAY_MORNING) == {"WO-1": "2026-01-06", "WO-2": "2026-01-12"}


def test_calendar_view_shows_downtime_and_steps(repo):
    record_incident(
        repo,
        order_id="WO-1",
        incident=_blocking(datetime(2026, 1, 5, 8, 0), datetime(2026, 1, 7, 17, 0)),
        now=MONDAY_MORNING,
    )
    view = build_calendar_view(repo, order_id="WO-1", now=MONDAY_MORNING)
    assert set(view) == {"A", "B"}

    line_a = {entry["date"]: entry["items"] for entry in view["A"]}
    assert [i["type"] for i in line_a["2026-01-05"]] == ["downtime"]
    assert line_a["2026-01-05"][0]["reason"] == "Power cut"
    assert [(i["step_id"], i["hours"]) for i in line_a["2026-01-08"]] == [("a1", 8)]
    assert [i["name"] for i in line_a["2026-01-09"]] == ["Paint"]


def test_export_report_lists_orders(repo):
    content = export_orders_report(repo, now=MONDAY_MORNING)
    df = pd.read_excel(io.BytesIO(content), sheet_name="Orders")
    assert df["Order"].tolist() == ["WO-1"]
    assert df.loc[0, "Remaining hours"] == 16


def test_create_order_uses_configured_holiday_key(repo):
    repo.set_config(key="default_holiday_key", value="SINGLE")
    result = create_order(
        repo,
        order=OrderRecord(order_id="WO-7", model_id="M1", start_date=date(2026, 1, 9), holiday_key=""),
        now=datetime(2026, 1, 9, 9, 0),
    )
    # Saturday is worked under SINGLE
    assert result.completion_date == date(2026, 1, 10)
    order = repo.require_order("WO-7")
    assert order.holiday_key == "SINGLE"
    assert order.original_estimated_completion_date == date(2026, 1, 10)


def test_create_order_rejects_duplicates(repo):
    with pytest.raises(ValueError):
        create_order(repo, order=OrderRecord(order_id="WO-1", model_id="M1", start_date=date(2026, 1, 5)))


def test_import_orders_projects_new_rows_and_skips_bad_ones(repo):
    bio = io.BytesIO()
    pd.DataFrame(
        {
            "Order ID": ["WO-8", "WO-9", "WO-10"],
            "Model": ["Pump skid", "Unknown", "M1"],
            "Start date": ["2026-01-05", "2026-01-05", "soon"],
            "Business closing date": ["2026-01-09", None, None],
        }
    ).to_excel(bio, index=False)

    imported, skipped = import_orders(repo, content=bio.getvalue(), now=MONDAY_MORNING)

    assert imported == ["WO-8"]
    assert skipped == 2
    order = repo.require_order("WO-8")
    assert order.model_id == "M1"
    assert order.holiday_key == "DOUBLE"
    assert order.business_closing_date == date(2026, 1, 9)
    assert order.estimated_completion_date == date(2026, 1, 6)


def test_open_blocking_incident_halts_order_until_closed(repo):
    update_step_status(repo, order_id="WO-1", step_id="a1", status=StepStatus.IN_PROGRESS, now=MONDAY_MORNING)
    record_incident(repo, order_id="WO-1", incident=_blocking(datetime(2026, 1, 5, 11, 0)), now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.HALTED

    (incident,) = repo.get_incidents("WO-1")
    close_incident(repo, incident_id=incident.incident_id, end_time=datetime(2026, 1, 5, 15, 0), now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.IN_PROGRESS


def test_non_blocking_incident_keeps_status(repo):
    incident = DowntimeIncident(incident_id="", start_time=datetime(2026, 1, 5, 11, 0), reason="Late parts")
    result = record_incident(repo, order_id="WO-1", incident=incident, now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.PLANNED
    assert result.completion_date == date(2026, 1, 6)


def _complete_all(repo) -> None:
    for step_id in ("a1", "a2", "b1"):
        update_step_status(repo, order_id="WO-1", step_id=step_id, status=StepStatus.COMPLETED, now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.COMPLETED


def test_reopening_a_step_reopens_completed_order(repo):
    _complete_all(repo)
    update_step_status(repo, order_id="WO-1", step_id="a1", status=StepStatus.IN_PROGRESS, now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.IN_PROGRESS

    update_step_status(repo, order_id="WO-1", step_id="a1", status=StepStatus.COMPLETED, now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.COMPLETED


def test_reopened_order_with_open_blocking_incident_is_halted(repo):
    _complete_all(repo)
    record_incident(repo, order_id="WO-1", incident=_blocking(datetime(2026, 1, 5, 11, 0)), now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.COMPLETED

    update_step_status(repo, order_id="WO-1", step_id="b1", status="PENDING", now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.HALTED


def test_remove_incident_restores_projection_and_status(repo):
    record_incident(repo, order_id="WO-1", incident=_blocking(datetime(2026, 1, 5, 8, 0)), now=MONDAY_MORNING)
    assert repo.require_order("WO-1").status == OrderStatus.HALTED
    (incident,) = repo.get_incidents("WO-1")

    result = remove_incident(repo, incident_id=incident.incident_id, now=MONDAY_MORNING)

    assert result.completion_date == date(2026, 1, 6)
    assert repo.get_incidents("WO-1") == []
    assert repo.require_order("WO-1").status == OrderStatus.PLANNED
    assert "deleted" in repo.get_recent_audit_entries(limit=1)[0].message
    with pytest.raises(ValueError):
        remove_incident(repo, incident_id=incident.incident_id)


def test_order_critical_line_is_set_and_cleared(repo):
    result = set_order_critical_line(repo, order_id="WO-1", line_id="A", now=MONDAY_MORNING)
    assert result.override_line == "A"
    assert list(result.line_dates) == ["A"]
    assert repo.require_order("WO-1").critical_line_override == "A"

    result = set_order_critical_line(repo, order_id="WO-1", line_id=None, now=MONDAY_MORNING)
    assert result.override_line is None
    assert set(result.line_dates) == {"A", "B"}

    with pytest.raises(ValueError):
        set_order_critical_line(repo, order_id="WO-404", line_id="A")


def test_model_critical_line_reprojects_its_orders(repo):
    assert set_model_critical_line(repo, model_id="M1", line_id="B", now=MONDAY_MORNING) == {"WO-1": "2026-01-06"}
    assert repo.get_model("M1").critical_line_override == "B"
    assert recompute_order(repo, order_id="WO-1", now=MONDAY_MORNING).override_line == "B"

    # The order's own choice still wins.
    set_order_critical_line(repo, order_id="WO-1", line_id="A", now=MONDAY_MORNING)
    assert recompute_order(repo, order_id="WO-1", now=MONDAY_MORNING).override_line == "A"

    with pytest.raises(ValueError):
        set_model_critical_line(repo, model_id="M9", line_id="A")
