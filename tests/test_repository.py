"""Tests for the SQLite repository and its Excel import/export."""

from __future__ import annotations

import io
from datetime import date, datetime
from pathlib import Path

import pandas as pd
import pytest

from workplan.core.models import (
    Completed,
    DowntimeIncident,
    DowntimeMode,
    OrderRecord,
    OrderStatus,
    ProcessModel,
    ProcessStep,
)
from workplan.data.db import Db
from workplan.data.excel_io import coerce_float
from workplan.data.repository import Repository


def make_excel_bytes(data: dict) -> bytes:
    """Create a minimal Excel file from a column->values dict."""
    bio = io.BytesIO()
    pd.DataFrame(data).to_excel(bio, index=False)
    bio.seek(0)
    return bio.read()


@pytest.fixture()
def repo(tmp_path) -> Repository:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    return Repository(db)


def _model(critical_line_override=None) -> ProcessModel:
    return ProcessModel(
        model_id="M1",
        name="Pump skid",
        critical_line_override=critical_line_override,
        steps=(
            ProcessStep(step_id="a1", name="Frame", line_id="A", estimated_hours=8, module="base"),
            ProcessStep(step_id="b1", name="Wiring", line_id="B", estimated_hours=16),
        ),
    )


def _order(**kw) -> OrderRecord:
    values = dict(order_id="WO-1", model_id="M1", start_date=date(2026, 1, 5), business_closing_date=date(2026, 1, 7))
    values.update(kw)
    return OrderRecord(**values)


def test_model_round_trip_keeps_step_order(repo):
    repo.upsert_model(_model("B"))
    model = repo.get_model("M1")
    assert model == _model("B")
    assert [m.model_id for m in repo.list_models()] == ["M1"]
    assert repo.get_model("missing") is None


def test_order_requires_known_model(repo):
    with pytest.raises(ValueError):
        repo.upsert_order(_order())


def test_order_round_trip_and_status(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order(holiday_key="single", client_name="ACME"))
    order = repo.require_order("WO-1")
    assert order.holiday_key == "SINGLE"
    assert order.client_name == "ACME"
    assert order.status == OrderStatus.PLANNED

    repo.set_order_status(order_id="WO-1", status=OrderStatus.HALTED)
    assert [o.order_id for o in repo.list_orders(status=OrderStatus.HALTED)] == ["WO-1"]
    assert repo.list_orders(status=OrderStatus.COMPLETED) == []

    with pytest.raises(ValueError):
        repo.require_order("WO-404")


def test_model_in_use_cannot_be_deleted(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order())
    with pytest.raises(ValueError):
        repo.delete_model("M1")
    repo.delete_order("WO-1")
    repo.delete_model("M1")
    assert repo.get_model("M1") is None


def test_first_projection_is_kept_as_original(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order())
    repo.set_estimated_completion(order_id="WO-1", projected=date(2026, 1, 6))
    repo.set_estimated_completion(order_id="WO-1", projected=date(2026, 1, 9))
    order = repo.require_order("WO-1")
    assert order.estimated_completion_date == date(2026, 1, 9)
    assert order.original_estimated_completion_date == date(2026, 1, 6)


def test_step_states_and_incidents_feed_projection_input(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order(critical_line_override="A"))
    end = datetime(2026, 1, 6, 15, 0)
    repo.set_step_state(order_id="WO-1", step_id="a1", state=Completed(end_time=end, operator="ana"))
    incident_id = repo.add_incident(
        order_id="WO-1",
        incident=DowntimeIncident(
            incident_id="",
            start_time=datetime(2026, 1, 6, 8, 0),
            mode=DowntimeMode.BLOCKING,
            reason="Power cut",
        ),
    )
    assert incident_id
    assert repo.get_incident_order_id(incident_id) == "WO-1"

    order, model, projection_input = repo.get_projection_input("WO-1")
    assert model.model_id == "M1"
    assert projection_input.critical_line_override == "A"
    assert projection_input.state_of("a1") == Completed(end_time=end, operator="ana")
    assert projection_input.state_of("b1").status.value == "PENDING"
    (incident,) = projection_input.downtime_incidents
    assert incident.is_blocking
    assert incident.start_time == "2026-01-06T08:00:00"
    assert incident.end_time is None


def test_update_unknown_incident_raises(repo):
    with pytest.raises(ValueError):
        repo.update_incident(DowntimeIncident(incident_id="nope", start_time=datetime(2026, 1, 5)))


def test_deleting_order_cascades(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order())
    incident_id = repo.add_incident(
        order_id="WO-1", incident=DowntimeIncident(incident_id="", start_time=datetime(2026, 1, 6, 8, 0))
    )
    repo.delete_order("WO-1")
    assert repo.get_incident_order_id(incident_id) is None


def test_specific_holidays_replace_add_remove(repo):
    repo.set_specific_holidays(key="double", dates=[date(2026, 1, 1), date(2026, 5, 1)])
    repo.add_specific_holiday(key="DOUBLE", day=date(2026, 9, 18))
    repo.remove_specific_holiday(key="DOUBLE", day=date(2026, 1, 1))
    assert repo.get_holiday_rules()["DOUBLE"].specific_non_working_dates == frozenset(
        {date(2026, 5, 1), date(2026, 9, 18)}
    )
    with pytest.raises(ValueError):
        repo.add_specific_holiday(key="WEEKDAYS", day=date(2026, 1, 1))


def test_import_holidays_merges_and_skips_bad_rows(repo):
    repo.add_specific_holiday(key="SINGLE", day=date(2026, 1, 1))
    content = make_excel_bytes({"Date": ["2026-05-01", "18/09/2026", "not a date"]})
    assert repo.import_holidays_bytes(key="SINGLE", content=content) == 2
    assert repo.get_holiday_rules()["SINGLE"].specific_non_working_dates == frozenset(
        {date(2026, 1, 1), date(2026, 5, 1), date(2026, 9, 18)}
    )


def test_import_holidays_requires_date_column(repo):
    with pytest.raises(ValueError):
        repo.import_holidays_bytes(key="SINGLE", content=make_excel_bytes({"day": ["2026-05-01"]}))


def test_import_model_steps(repo):
    repo.upsert_model(_model("B"))
    content = make_excel_bytes(
        {
            "Model ID": ["M1", "M1", "M2"],
            "Model name": ["Pump skid v2", None, None],
            "Step ID": ["a1", "b1", "x1"],
            "Step name": ["Frame", "Wiring", "Test"],
            "Line": ["A", "B", None],
            "Hours": [10, "12,5", 4],
        }
    )
    assert repo.import_model_steps_bytes(content=content) == ["M1", "M2"]

    m1 = repo.get_model("M1")
    assert m1.name == "Pump skid v2"
    assert m1.critical_line_override == "B"
    assert [(s.step_id, s.estimated_hours) for s in m1.steps] == [("a1", 10.0), ("b1", 12.5)]
    assert repo.get_model("M2").steps[0].line == "general"
    assert repo.get_recent_audit_entries(limit=1)[0].category == "model"


def test_import_model_steps_rejects_missing_columns_and_bad_hours(repo):
    with pytest.raises(ValueError):
        repo.import_model_steps_bytes(content=make_excel_bytes({"model_id": ["M1"], "step_id": ["a1"]}))
    with pytest.raises(ValueError):
        repo.import_model_steps_bytes(
            content=make_excel_bytes({"model_id": ["M1"], "step_id": ["a1"], "step_name": ["x"], "hours": [-1]})
        )


def test_non_finite_hours_are_rejected(repo):
    for bad in ("inf", "-inf", "nan", "1e999"):
        with pytest.raises(ValueError, match="Row 2"):
            repo.import_model_steps_bytes(
                content=make_excel_bytes({"model_id": ["M1"], "step_id": ["a1"], "step_name": ["x"], "hours": [bad]})
            )
    assert repo.get_model("M1") is None

    with pytest.raises(ValueError):
        repo.upsert_model(
            ProcessModel(
                model_id="M1",
                name="Broken",
                steps=(ProcessStep(step_id="a1", name="Frame", line_id="A", estimated_hours=float("inf")),),
            )
        )
    assert repo.get_model("M1") is None


def test_coerce_float_reads_non_finite_values_as_empty():
    assert coerce_float("inf") is None
    assert coerce_float("1e999") is None
    assert coerce_float(float("nan")) is None
    assert coerce_float(float("-inf")) is None
    assert coerce_float("12,5") == 12.5


def test_import_model_steps_reads_critical_line_column(repo):
    repo.upsert_model(_model("B"))
    content = make_excel_bytes(
        {
            "Model ID": ["M1", "M1", "M2"],
            "Step ID": ["a1", "b1", "x1"],
            "Step name": ["Frame", "Wiring", "Test"],
            "Line": ["A", "B", None],
            "Hours": [8, 16, 4],
            "Critical line": [None, "A", None],
        }
    )
    repo.import_model_steps_bytes(content=content)

    assert repo.get_model("M1").critical_line_override == "A"
    assert repo.get_model("M2").critical_line_override is None


def test_import_orders_reads_critical_line_column(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order(critical_line_override="B"))

    content = make_excel_bytes(
        {
            "Order ID": ["WO-1", "WO-2"],
            "Model": ["M1", "M1"],
            "Start date": ["2026-01-05", "2026-01-05"],
            "Critical line": ["A", None],
        }
    )
    assert repo.import_orders_bytes(content=content) == (["WO-1", "WO-2"], 0)
    assert repo.require_order("WO-1").critical_line_override == "A"
    assert repo.require_order("WO-2").critical_line_override is None

    content = make_excel_bytes({"Order ID": ["WO-1"], "Model": ["M1"], "Start date": ["2026-01-05"]})
    repo.import_orders_bytes(content=content)
    assert repo.require_order("WO-1").critical_line_override == "A"


def test_critical_line_setters(repo):
    repo.upsert_model(_model())
    repo.upsert_order(_order())

    repo.set_model_critical_line(model_id="M1", line_id=" B ")
    repo.set_order_critical_line(order_id="WO-1", line_id="A")
    assert repo.get_model("M1").critical_line_override == "B"
    assert repo.require_order("WO-1").critical_line_override == "A"

    repo.set_order_critical_line(order_id="WO-1", line_id="")
    assert repo.require_order("WO-1").critical_line_override is None

    with pytest.raises(ValueError):
        repo.set_model_critical_line(model_id="M9", line_id="A")
    with pytest.raises(ValueError):
        repo.set_order_critical_line(order_id="WO-404", line_id="A")


def test_export_orders_report_has_labeled_columns():
    rows = [{"order_id": "WO-1", "model_id": "M1", "projected_date": "2026-01-06", "variance_days": -1}]
    content = Repository.export_orders_report_bytes(rows)
    df = pd.read_excel(io.BytesIO(content), sheet_name="Orders")
    assert list(df.columns)[:2] == ["Order", "Model"]
    assert df.loc[0, "Order"] == "WO-1"
    assert df.loc[0, "Variance (days)"] == -1
