"""Tests for database schema and seeding."""

from datetime import date
from pathlib import Path

import pytest

from workplan.data.db import Db
from workplan.data.repository import Repository


@pytest.fixture
def db(tmp_path) -> Db:
    db = Db(Path(tmp_path) / "test.db")
    db.ensure_schema()
    return db


def test_ensure_schema_creates_all_tables(db):
    with db.connect() as con:
        tables = {row[0] for row in con.execute("SELECT name FROM sqlite_master WHERE type='table'")}

    for name in (
        "app_config",
        "audit_log",
        "holiday_rule",
        "holiday_rule_date",
        "process_model",
        "process_step",
        "work_order",
        "step_state",
        "downtime_incident",
    ):
        assert name in tables


def test_default_holiday_rules_are_seeded(db):
    rules = Repository(db).get_holiday_rules()
    assert set(rules) == {"DOUBLE", "SINGLE", "ALTERNATE", "NONE"}
    assert rules["ALTERNATE"].kind.value == "ALTERNATING_SATURDAY"


def test_ensure_schema_is_idempotent_and_keeps_dates(db):
    repo = Repository(db)
    repo.add_specific_holiday(key="DOUBLE", day=date(2026, 5, 1))
    db.ensure_schema()
    assert date(2026, 5, 1) in repo.get_holiday_rules()["DOUBLE"].specific_non_working_dates


def test_default_config_values(db):
    repo = Repository(db)
    assert repo.get_config(key="default_holiday_key") == "DOUBLE"
    assert repo.get_config(key="missing", default="x") == "x"
    repo.set_config(key="plant_name", value="North")
    assert repo.get_config(key="plant_name") == "North"
