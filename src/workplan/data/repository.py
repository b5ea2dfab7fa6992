from __future__ import annotations

import logging
import math
from datetime import date, datetime
from typing import Any, Iterable
from uuid import uuid4

import pandas as pd

from workplan.core.dates import to_day
from workplan.core.models import (
    AuditEntry,
    DowntimeIncident,
    DowntimeMode,
    HolidayKind,
    HolidayRule,
    OrderRecord,
    OrderStatus,
    ProcessModel,
    ProcessStep,
    ProjectionInput,
    StepState,
    step_state_from_record,
    step_state_to_record,
)
from workplan.data.db import Db
from workplan.data.excel_io import (
    coerce_date,
    coerce_float,
    coerce_str,
    normalize_columns,
    read_excel_bytes,
    write_excel_bytes,
)

logger = logging.getLogger(__name__)


def _iso(value: date | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class Repository:
    """SQLite-backed store for models, orders, step states, incidents and calendars."""

    def __init__(self, db: Db):
        self.db = db

    # ---------- Config & audit ----------
    def get_config(self, *, key: str, default: str | None = None) -> str | None:
        with self.db.connect() as con:
            row = con.execute("SELECT value FROM app_config WHERE key = ?", (key,)).fetchone()
        return str(row["value"]) if row is not None else default

    def set_config(self, *, key: str, value: str) -> None:
        with self.db.connect() as con:
            con.execute(
                "INSERT INTO app_config(key, value) VALUES(?, ?) ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def log_audit(self, category: str, message: str, details: str | None = None) -> None:
        """Record a business event in the audit log."""
        try:
            with self.db.connect() as con:
                con.execute(
                    "INSERT INTO audit_log (category, message, details) VALUES (?, ?, ?)",
                    (category, message, details),
                )
        except Exception:
            # Audit failures never break the operation being audited.
            logger.exception("Failed to write audit log")

    def get_recent_audit_entries(self, limit: int = 100) -> list[AuditEntry]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM audit_log ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [
            AuditEntry(
                id=row["id"],
                timestamp=row["timestamp"],
                category=row["category"],
                message=row["message"],
                details=row["details"],
            )
            for row in rows
        ]

    # ---------- Holiday rules ----------
    def get_holiday_rules(self) -> dict[str, HolidayRule]:
        with self.db.connect() as con:
            rule_rows = con.execute("SELECT * FROM holiday_rule ORDER BY key").fetchall()
            date_rows = con.execute("SELECT key, date FROM holiday_rule_date").fetchall()

        dates: dict[str, set[date]] = {}
        for r in date_rows:
            d = to_day(r["date"])
            if d is not None:
                dates.setdefault(str(r["key"]), set()).add(d)

        out: dict[str, HolidayRule] = {}
        for r in rule_rows:
            key = str(r["key"])
            try:
                kind = HolidayKind(str(r["kind"]))
            except ValueError:
                logger.warning("Holiday rule %s has unknown kind %r; treating as NO_WEEKLY_REST", key, r["kind"])
                kind = HolidayKind.NO_WEEKLY_REST
            out[key] = HolidayRule(
                key=key,
                kind=kind,
                specific_non_working_dates=frozenset(dates.get(key, set())),
                name=str(r["name"] or ""),
                description=str(r["description"] or ""),
            )
        return out

    def _require_rule(self, con, key: str) -> str:
        k = str(key or "").strip().upper()
        if con.execute("SELECT 1 FROM holiday_rule WHERE key = ?", (k,)).fetchone() is None:
            raise ValueError(f"Unknown holiday rule: {key!r}")
        return k

    def set_specific_holidays(self, *, key: str, dates: Iterable[date]) -> None:
        """Replace the specific non-working dates of a rule."""
        with self.db.connect() as con:
            k = self._require_rule(con, key)
            con.execute("DELETE FROM holiday_rule_date WHERE key = ?", (k,))
            con.executemany(
                "INSERT OR IGNORE INTO holiday_rule_date(key, date) VALUES(?, ?)",
                [(k, d.isoformat()) for d in sorted(set(dates))],
            )
        self.log_audit("holiday", f"Specific holidays replaced for {k}")

    def add_specific_holiday(self, *, key: str, day: date) -> None:
        with self.db.connect() as con:
            k = self._require_rule(con, key)
            con.execute("INSERT OR IGNORE INTO holiday_rule_date(key, date) VALUES(?, ?)", (k, day.isoformat()))

    def remove_specific_holiday(self, *, key: str, day: date) -> None:
        with self.db.connect() as con:
            k = self._require_rule(con, key)
            con.execute("DELETE FROM holiday_rule_date WHERE key = ? AND date = ?", (k, day.isoformat()))

    def import_holidays_bytes(self, *, key: str, content: bytes) -> int:
        """Add holiday dates from an Excel sheet with a ``date`` column.

        Returns the number of dates read. Rows that are not dates are skipped.
        """
        df = normalize_columns(read_excel_bytes(content))
        if "date" not in df.columns:
            raise ValueError("Holiday sheet needs a 'date' column")

        found: set[date] = set()
        for raw in df["date"].tolist():
            try:
                found.add(coerce_date(raw, field="date"))
            except ValueError:
                continue

        existing = self.get_holiday_rules().get(str(key).strip().upper())
        current = set(existing.specific_non_working_dates) if existing else set()
        self.set_specific_holidays(key=key, dates=current | found)
        return len(found)

    # ---------- Process models ----------
    def upsert_model(self, model: ProcessModel) -> None:
        for s in model.steps:
            hours = float(s.estimated_hours or 0.0)
            if not math.isfinite(hours) or hours < 0:
                raise ValueError(f"Step {s.step_id!r}: hours must be a finite, non-negative number")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO process_model(model_id, name, critical_line_override) VALUES(?, ?, ?)
                ON CONFLICT(model_id) DO UPDATE SET
                    name = excluded.name,
                    critical_line_override = excluded.critical_line_override
                """,
                (model.model_id, model.name, model.critical_line_override),
            )
            con.execute("DELETE FROM process_step WHERE model_id = ?", (model.model_id,))
            con.executemany(
                """
                INSERT INTO process_step(model_id, step_id, seq, name, line_id, module, estimated_hours, description)
                VALUES(?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        model.model_id,
                        s.step_id,
                        seq,
                        s.name,
                        s.line_id,
                        s.module,
                        float(s.estimated_hours or 0.0),
                        s.description,
                    )
                    for seq, s in enumerate(model.steps)
                ],
            )

    def get_model(self, model_id: str) -> ProcessModel | None:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM process_model WHERE model_id = ?", (model_id,)).fetchone()
            if row is None:
                return None
            step_rows = con.execute(
                "SELECT * FROM process_step WHERE model_id = ? ORDER BY seq", (model_id,)
            ).fetchall()
        return ProcessModel(
            model_id=str(row["model_id"]),
            name=str(row["name"]),
            critical_line_override=row["critical_line_override"],
            steps=tuple(
                ProcessStep(
                    step_id=str(s["step_id"]),
                    name=str(s["name"]),
                    line_id=s["line_id"],
                    estimated_hours=float(s["estimated_hours"] or 0.0),
                    module=s["module"],
                    description=s["description"],
                )
                for s in step_rows
            ),
        )

    def list_models(self) -> list[ProcessModel]:
        with self.db.connect() as con:
            ids = [str(r["model_id"]) for r in con.execute("SELECT model_id FROM process_model ORDER BY model_id")]
        return [m for m in (self.get_model(i) for i in ids) if m is not None]

    def delete_model(self, model_id: str) -> None:
        with self.db.connect() as con:
            in_use = con.execute("SELECT COUNT(*) FROM work_order WHERE model_id = ?", (model_id,)).fetchone()[0]
            if int(in_use) > 0:
                raise ValueError(f"Model {model_id!r} is used by {in_use} order(s)")
            con.execute("DELETE FROM process_model WHERE model_id = ?", (model_id,))

    def import_model_steps_bytes(self, *, content: bytes) -> list[str]:
        """Create/replace process models from an Excel sheet, one row per step.

        Columns: model_id, model_name (optional), step_id, step_name, line,
        module (optional), hours, critical_line (optional). Row order is the
        step execution order. The first non-blank critical_line of a model sets
        its override; without that column an existing override is kept.
        Returns the imported model ids.
        """
        df = normalize_columns(read_excel_bytes(content))
        has_critical = "critical_line" in df.columns
        required = {"model_id", "step_id", "step_name", "hours"}
        missing = required - set(df.columns)
        if missing:
            raise ValueError(f"Model sheet is missing columns: {', '.join(sorted(missing))}")

        models: dict[str, dict[str, Any]] = {}
        for idx, row in enumerate(df.to_dict(orient="records"), start=2):
            model_id = coerce_str(row.get("model_id"))
            step_id = coerce_str(row.get("step_id"))
            if not model_id or not step_id:
                raise ValueError(f"Row {idx}: model_id and step_id are required")
            hours = coerce_float(row.get("hours"))
            if hours is None or not math.isfinite(hours) or hours < 0:
                raise ValueError(f"Row {idx}: hours must be a finite, non-negative number")

            entry = models.setdefault(
                model_id, {"name": coerce_str(row.get("model_name")) or model_id, "steps": [], "critical": None}
            )
            if has_critical and entry["critical"] is None:
                entry["critical"] = coerce_str(row.get("critical_line"))
            entry["steps"].append(
                ProcessStep(
                    step_id=step_id,
                    name=coerce_str(row.get("step_name")) or step_id,
                    line_id=coerce_str(row.get("line")),
                    estimated_hours=hours,
                    module=coerce_str(row.get("module")),
                )
            )

        for model_id, entry in models.items():
            existing = self.get_model(model_id)
            if has_critical:
                critical = entry["critical"]
            else:
                critical = existing.critical_line_override if existing else None
            self.upsert_model(
                ProcessModel(
                    model_id=model_id,
                    name=entry["name"],
                    steps=tuple(entry["steps"]),
                    critical_line_override=critical,
                )
            )
        self.log_audit("model", f"Imported {len(models)} model(s) from Excel", ", ".join(models))
        return list(models)

    # ---------- Work orders ----------
    @staticmethod
    def _order_from_row(row) -> OrderRecord:
        try:
            status = OrderStatus(str(row["status"]))
        except ValueError:
            status = OrderStatus.PLANNED
        return OrderRecord(
            order_id=str(row["order_id"]),
            model_id=str(row["model_id"]),
            start_date=to_day(row["start_date"]) or date.today(),
            holiday_key=str(row["holiday_key"] or "DOUBLE"),
            status=status,
            workshop=row["workshop"],
            client_name=row["client_name"],
            business_closing_date=to_day(row["business_closing_date"]),
            estimated_completion_date=to_day(row["estimated_completion_date"]),
            original_estimated_completion_date=to_day(row["original_estimated_completion_date"]),
            critical_line_override=row["critical_line_override"],
        )

    def upsert_order(self, order: OrderRecord) -> None:
        if self.get_model(order.model_id) is None:
            raise ValueError(f"Unknown model: {order.model_id!r}")
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO work_order(
                    order_id, model_id, start_date, holiday_key, status, workshop, client_name,
                    business_closing_date, estimated_completion_date, original_estimated_completion_date,
                    critical_line_override
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    model_id = excluded.model_id,
                    start_date = excluded.start_date,
                    holiday_key = excluded.holiday_key,
                    status = excluded.status,
                    workshop = excluded.workshop,
                    client_name = excluded.client_name,
                    business_closing_date = excluded.business_closing_date,
                    estimated_completion_date = excluded.estimated_completion_date,
                    original_estimated_completion_date = excluded.original_estimated_completion_date,
                    critical_line_override = excluded.critical_line_override
                """,
                (
                    order.order_id,
                    order.model_id,
                    order.start_date.isoformat(),
                    str(order.holiday_key or "DOUBLE").upper(),
                    order.status.value,
                    order.workshop,
                    order.client_name,
                    _iso(order.business_closing_date),
                    _iso(order.estimated_completion_date),
                    _iso(order.original_estimated_completion_date),
                    order.critical_line_override,
                ),
            )

    def import_orders_bytes(self, *, content: bytes, default_holiday_key: str = "DOUBLE") -> tuple[list[str], int]:
        """Create/update work orders from an Excel sheet, one row per order.

        Columns: order_id, model (id or name), start_date, holiday_key,
        business_closing_date, client_name, workshop, critical_line. Rows with
        an unknown model or an unreadable start date are skipped. Re-imported
        orders keep their status and projections, and their critical line when
        the sheet has no critical_line column.

        Returns (imported order ids, skipped row count).
        """
        df = normalize_columns(read_excel_bytes(content))
        if "model" not in df.columns and "model_id" in df.columns:
            df = df.rename(columns={"model_id": "model"})
        has_critical = "critical_line" in df.columns
        required = {"order_id", "model", "start_date"}
        missing = required - set(df.columns)
        if missing:
            raise ValueError(f"Order sheet is missing columns: {', '.join(sorted(missing))}")

        models = self.list_models()
        by_id = {m.model_id: m.model_id for m in models}
        by_name = {m.name.strip(): m.model_id for m in models}

        imported: list[str] = []
        skipped = 0
        for idx, row in enumerate(df.to_dict(orient="records"), start=2):
            order_id = coerce_str(row.get("order_id"))
            model_ref = coerce_str(row.get("model"))
            model_id = by_id.get(model_ref or "") or by_name.get(model_ref or "")
            if not order_id or model_id is None:
                logger.warning("Order sheet row %d skipped: unknown model %r", idx, model_ref)
                skipped += 1
                continue
            try:
                start = coerce_date(row.get("start_date"), field="start_date")
            except ValueError as ex:
                logger.warning("Order sheet row %d skipped: %s", idx, ex)
                skipped += 1
                continue
            try:
                closing = coerce_date(row.get("business_closing_date"), field="business_closing_date")
            except ValueError:
                closing = None

            existing = self.get_order(order_id)
            self.upsert_order(
                OrderRecord(
                    order_id=order_id,
                    model_id=model_id,
                    start_date=start,
                    holiday_key=coerce_str(row.get("holiday_key")) or default_holiday_key,
                    status=existing.status if existing else OrderStatus.PLANNED,
                    workshop=coerce_str(row.get("workshop")),
                    client_name=coerce_str(row.get("client_name")),
                    business_closing_date=closing,
                    estimated_completion_date=existing.estimated_completion_date if existing else None,
                    original_estimated_completion_date=(
                        existing.original_estimated_completion_date if existing else None
                    ),
                    critical_line_override=(
                        coerce_str(row.get("critical_line"))
                        if has_critical
                        else (existing.critical_line_override if existing else None)
                    ),
                )
            )
            imported.append(order_id)

        self.log_audit("order", f"Imported {len(imported)} order(s) from Excel", f"skipped={skipped}")
        return imported, skipped

    def get_order(self, order_id: str) -> OrderRecord | None:
        with self.db.connect() as con:
            row = con.execute("SELECT * FROM work_order WHERE order_id = ?", (order_id,)).fetchone()
        return self._order_from_row(row) if row is not None else None

    def require_order(self, order_id: str) -> OrderRecord:
        order = self.get_order(order_id)
        if order is None:
            raise ValueError(f"Unknown order: {order_id!r}")
        return order

    def list_orders(self, *, status: OrderStatus | None = None) -> list[OrderRecord]:
        with self.db.connect() as con:
            if status is None:
                rows = con.execute("SELECT * FROM work_order ORDER BY start_date, order_id").fetchall()
            else:
                rows = con.execute(
                    "SELECT * FROM work_order WHERE status = ? ORDER BY start_date, order_id", (status.value,)
                ).fetchall()
        return [self._order_from_row(r) for r in rows]

    def delete_order(self, order_id: str) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM work_order WHERE order_id = ?", (order_id,))
        self.log_audit("order", f"Order {order_id} deleted")

    def set_order_status(self, *, order_id: str, status: OrderStatus) -> None:
        with self.db.connect() as con:
            con.execute("UPDATE work_order SET status = ? WHERE order_id = ?", (status.value, order_id))

    def set_model_critical_line(self, *, model_id: str, line_id: str | None) -> None:
        with self.db.connect() as con:
            cur = con.execute(
                "UPDATE process_model SET critical_line_override = ? WHERE model_id = ?",
                (coerce_str(line_id), model_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Unknown model: {model_id!r}")

    def set_order_critical_line(self, *, order_id: str, line_id: str | None) -> None:
        with self.db.connect() as con:
            cur = con.execute(
                "UPDATE work_order SET critical_line_override = ? WHERE order_id = ?",
                (coerce_str(line_id), order_id),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Unknown order: {order_id!r}")

    def set_estimated_completion(self, *, order_id: str, projected: date) -> None:
        """Store the latest projection; the first one is also kept as the original plan."""
        with self.db.connect() as con:
            con.execute(
                """
                UPDATE work_order SET
                    estimated_completion_date = ?,
                    original_estimated_completion_date = COALESCE(original_estimated_completion_date, ?)
                WHERE order_id = ?
                """,
                (projected.isoformat(), projected.isoformat(), order_id),
            )

    # ---------- Step states ----------
    def set_step_state(self, *, order_id: str, step_id: str, state: StepState) -> None:
        rec = step_state_to_record(state)
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO step_state(order_id, step_id, status, start_time, end_time, operator)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id, step_id) DO UPDATE SET
                    status = excluded.status,
                    start_time = excluded.start_time,
                    end_time = excluded.end_time,
                    operator = excluded.operator
                """,
                (order_id, step_id, rec["status"], rec["start_time"], rec["end_time"], rec["operator"]),
            )

    def get_step_states(self, order_id: str, *, order_start: date) -> dict[str, StepState]:
        with self.db.connect() as con:
            rows = con.execute("SELECT * FROM step_state WHERE order_id = ?", (order_id,)).fetchall()
        return {str(r["step_id"]): step_state_from_record(dict(r), order_start=order_start) for r in rows}

    # ---------- Downtime incidents ----------
    @staticmethod
    def _incident_from_row(row) -> DowntimeIncident:
        try:
            mode = DowntimeMode(str(row["mode"]))
        except ValueError:
            mode = DowntimeMode.NON_BLOCKING
        return DowntimeIncident(
            incident_id=str(row["incident_id"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            mode=mode,
            step_name=row["step_name"],
            reason=row["reason"],
            department=row["department"],
        )

    def add_incident(self, *, order_id: str, incident: DowntimeIncident) -> str:
        incident_id = incident.incident_id or uuid4().hex
        with self.db.connect() as con:
            con.execute(
                """
                INSERT INTO downtime_incident(
                    incident_id, order_id, start_time, end_time, mode, step_name, reason, department
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    incident_id,
                    order_id,
                    _iso(incident.start_time) if isinstance(incident.start_time, datetime) else incident.start_time,
                    _iso(incident.end_time) if isinstance(incident.end_time, datetime) else incident.end_time,
                    incident.mode.value,
                    incident.step_name,
                    incident.reason,
                    incident.department,
                ),
            )
        return incident_id

    def update_incident(self, incident: DowntimeIncident) -> None:
        with self.db.connect() as con:
            cur = con.execute(
                """
                UPDATE downtime_incident SET
                    start_time = ?, end_time = ?, mode = ?, step_name = ?, reason = ?, department = ?
                WHERE incident_id = ?
                """,
                (
                    _iso(incident.start_time) if isinstance(incident.start_time, datetime) else incident.start_time,
                    _iso(incident.end_time) if isinstance(incident.end_time, datetime) else incident.end_time,
                    incident.mode.value,
                    incident.step_name,
                    incident.reason,
                    incident.department,
                    incident.incident_id,
                ),
            )
            if cur.rowcount == 0:
                raise ValueError(f"Unknown incident: {incident.incident_id!r}")

    def delete_incident(self, incident_id: str) -> None:
        with self.db.connect() as con:
            con.execute("DELETE FROM downtime_incident WHERE incident_id = ?", (incident_id,))

    def get_incident_order_id(self, incident_id: str) -> str | None:
        with self.db.connect() as con:
            row = con.execute("SELECT order_id FROM downtime_incident WHERE incident_id = ?", (incident_id,)).fetchone()
        return str(row["order_id"]) if row is not None else None

    def get_incidents(self, order_id: str) -> list[DowntimeIncident]:
        with self.db.connect() as con:
            rows = con.execute(
                "SELECT * FROM downtime_incident WHERE order_id = ? ORDER BY start_time, incident_id", (order_id,)
            ).fetchall()
        return [self._incident_from_row(r) for r in rows]

    # ---------- Engine inputs ----------
    def get_projection_input(self, order_id: str) -> tuple[OrderRecord, ProcessModel, ProjectionInput]:
        """Load an order with its model and build the engine input for it."""
        order = self.require_order(order_id)
        model = self.get_model(order.model_id)
        if model is None:
            raise ValueError(f"Order {order_id!r} references unknown model {order.model_id!r}")
        projection_input = ProjectionInput(
            start_date=order.start_date,
            step_states=self.get_step_states(order_id, order_start=order.start_date),
            holiday_key=order.holiday_key,
            downtime_incidents=tuple(self.get_incidents(order_id)),
            critical_line_override=order.critical_line_override,
        )
        return order, model, projection_input

    # ---------- Reports ----------
    @staticmethod
    def export_orders_report_bytes(rows: list[dict[str, Any]]) -> bytes:
        """Write dashboard rows to an Excel workbook."""
        columns = [
            ("order_id", "Order"),
            ("model_id", "Model"),
            ("client_name", "Client"),
            ("workshop", "Workshop"),
            ("status", "Status"),
            ("start_date", "Start"),
            ("projected_date", "Projected completion"),
            ("original_projected_date", "Original plan"),
            ("business_closing_date", "Closing date"),
            ("variance_days", "Variance (days)"),
            ("progress_pct", "Progress (%)"),
            ("remaining_hours", "Remaining hours"),
            ("critical_line", "Critical line"),
        ]
        df = pd.DataFrame([{label: r.get(key) for key, label in columns} for r in rows], columns=[c[1] for c in columns])
        return write_excel_bytes({"Orders": df})
