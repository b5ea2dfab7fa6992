from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path

from workplan.engine.calendar import DEFAULT_HOLIDAY_RULES


class Db:
    def __init__(self, path: Path):
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    @contextmanager
    def connect(self):
        con = sqlite3.connect(self.path, timeout=20.0)
        con.row_factory = sqlite3.Row
        con.execute("PRAGMA foreign_keys=ON;")
        try:
            yield con
            con.commit()
        except Exception:
            con.rollback()
            raise
        finally:
            con.close()

    def ensure_schema(self) -> None:
        con = sqlite3.connect(self.path, timeout=10.0)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            con.execute("PRAGMA foreign_keys=ON;")

            con.executescript(
                """
                CREATE TABLE IF NOT EXISTS app_config (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL DEFAULT(datetime('now', 'localtime')),
                    category TEXT NOT NULL,
                    message TEXT NOT NULL,
                    details TEXT
                );

                CREATE TABLE IF NOT EXISTS holiday_rule (
                    key TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    description TEXT NOT NULL DEFAULT ''
                );

                CREATE TABLE IF NOT EXISTS holiday_rule_date (
                    key TEXT NOT NULL REFERENCES holiday_rule(key) ON DELETE CASCADE,
                    date TEXT NOT NULL,
                    PRIMARY KEY (key, date)
                );

                CREATE TABLE IF NOT EXISTS process_model (
                    model_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    critical_line_override TEXT
                );

                CREATE TABLE IF NOT EXISTS process_step (
                    model_id TEXT NOT NULL REFERENCES process_model(model_id) ON DELETE CASCADE,
                    step_id TEXT NOT NULL,
                    seq INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    line_id TEXT,
                    module TEXT,
                    estimated_hours REAL NOT NULL DEFAULT 0,
                    description TEXT,
                    PRIMARY KEY (model_id, step_id)
                );

                CREATE TABLE IF NOT EXISTS work_order (
                    order_id TEXT PRIMARY KEY,
                    model_id TEXT NOT NULL,
                    start_date TEXT NOT NULL,
                    holiday_key TEXT NOT NULL DEFAULT 'DOUBLE',
                    status TEXT NOT NULL DEFAULT 'PLANNED',
                    workshop TEXT,
                    client_name TEXT,
                    business_closing_date TEXT,
                    estimated_completion_date TEXT,
                    original_estimated_completion_date TEXT,
                    critical_line_override TEXT
                );

                CREATE TABLE IF NOT EXISTS step_state (
                    order_id TEXT NOT NULL REFERENCES work_order(order_id) ON DELETE CASCADE,
                    step_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TEXT,
                    end_time TEXT,
                    operator TEXT,
                    PRIMARY KEY (order_id, step_id)
                );

                CREATE TABLE IF NOT EXISTS downtime_incident (
                    incident_id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL REFERENCES work_order(order_id) ON DELETE CASCADE,
                    start_time TEXT,
                    end_time TEXT,
                    mode TEXT NOT NULL DEFAULT 'NON_BLOCKING',
                    step_name TEXT,
                    reason TEXT,
                    department TEXT,
                    reported_at TEXT NOT NULL DEFAULT(datetime('now', 'localtime'))
                );

                CREATE INDEX IF NOT EXISTS ix_process_step_seq ON process_step(model_id, seq);
                CREATE INDEX IF NOT EXISTS ix_downtime_order ON downtime_incident(order_id);
                """
            )

            # Seed the built-in holiday rules; existing rows (and their dates) are kept.
            con.executemany(
                "INSERT OR IGNORE INTO holiday_rule(key, kind, name, description) VALUES(?, ?, ?, ?)",
                [(r.key, r.kind.value, r.name, r.description) for r in DEFAULT_HOLIDAY_RULES.values()],
            )
            con.execute("INSERT OR IGNORE INTO app_config(key, value) VALUES('default_holiday_key', 'DOUBLE')")
            con.execute("INSERT OR IGNORE INTO app_config(key, value) VALUES('plant_name', 'Assembly Plant')")
            con.commit()
        finally:
            con.close()
