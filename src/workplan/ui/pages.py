from __future__ import annotations

import logging
from datetime import date, datetime

from nicegui import ui

from workplan.core.models import DowntimeIncident, DowntimeMode, OrderRecord, StepStatus
from workplan.data.repository import Repository
from workplan.engine import downtime_duration_days, partition_lines
from workplan.orders.api import (
    build_calendar_view,
    build_dashboard_rows,
    build_order_metrics,
    close_incident,
    create_order,
    export_orders_report,
    import_orders,
    recompute_all,
    record_incident,
    remove_incident,
    set_model_critical_line,
    set_order_critical_line,
    update_step_status,
)
from workplan.ui.widgets import page_container, read_upload, render_line_calendar, render_nav, variance_badge

logger = logging.getLogger(__name__)


def register_pages(repo: Repository) -> None:
    def plant_name() -> str:
        return repo.get_config(key="plant_name", default="Work Orders") or "Work Orders"

    def _format_date(date_str: str | None) -> str:
        if not date_str:
            return ""
        try:
            return datetime.fromisoformat(str(date_str).strip()).strftime("%d-%m-%y")
        except (ValueError, TypeError):
            return str(date_str or "")

    @ui.page("/")
    def dashboard() -> None:
        render_nav("dashboard", title=plant_name())
        with page_container():
            ui.label("Orders").classes("text-2xl font-semibold")
            ui.label("Projected completion per order, recomputed on every step change.").classes("wp-subtitle")
            ui.separator()

            rows = build_dashboard_rows(repo)
            for r in rows:
                r["start_fmt"] = _format_date(r["start_date"])
                r["projected_fmt"] = _format_date(r["projected_date"])
                r["closing_fmt"] = _format_date(r["business_closing_date"])
                r["override_fmt"] = "ignored" if r["override_ignored"] else ""

            with ui.row().classes("gap-2"):

                def do_recompute() -> None:
                    try:
                        updated = recompute_all(repo)
                        ui.notify(f"Projections updated: {len(updated)} order(s)")
                        ui.navigate.reload()
                    except Exception as ex:
                        logger.exception("Recompute failed")
                        ui.notify(f"Error updating projections: {ex}", color="negative")

                def do_export() -> None:
                    try:
                        content = export_orders_report(repo)
                        ui.download(content, f"orders_{date.today().isoformat()}.xlsx")
                    except Exception as ex:
                        logger.exception("Report export failed")
                        ui.notify(f"Error exporting report: {ex}", color="negative")

                ui.button("Recompute", icon="refresh", on_click=do_recompute).props("no-caps")
                ui.button("Excel report", icon="download", on_click=do_export).props("no-caps flat")

            with ui.expansion("New order", icon="add").classes("w-full"):
                model_options = {m.model_id: f"{m.model_id} · {m.name}" for m in repo.list_models()}
                rule_keys = list(repo.get_holiday_rules())
                default_key = repo.get_config(key="default_holiday_key", default="DOUBLE")
                with ui.row().classes("items-end gap-2"):
                    new_id = ui.input("Order").classes("w-40")
                    new_model = ui.select(model_options, label="Model").classes("w-56")
                    new_start = ui.input("Start (YYYY-MM-DD)", value=date.today().isoformat()).classes("w-40")
                    new_closing = ui.input("Closing (YYYY-MM-DD)").classes("w-40")
                    new_key = ui.select(rule_keys, label="Holidays", value=default_key).classes("w-32")
                    new_client = ui.input("Client").classes("w-40")
                    new_workshop = ui.input("Workshop").classes("w-32")
                    new_critical = ui.input("Critical line").classes("w-28")

                    def do_create() -> None:
                        try:
                            order_id = str(new_id.value or "").strip()
                            if not order_id or not new_model.value:
                                raise ValueError("Order and model are required")
                            closing = str(new_closing.value or "").strip()
                            create_order(
                                repo,
                                order=OrderRecord(
                                    order_id=order_id,
                                    model_id=new_model.value,
                                    start_date=date.fromisoformat(str(new_start.value).strip()),
                                    holiday_key=new_key.value or "",
                                    business_closing_date=date.fromisoformat(closing) if closing else None,
                                    client_name=new_client.value or None,
                                    workshop=new_workshop.value or None,
                                    critical_line_override=str(new_critical.value or "").strip() or None,
                                ),
                            )
                            ui.navigate.reload()
                        except Exception as ex:
                            ui.notify(f"Error creating order: {ex}", color="negative")

                    ui.button("Create", on_click=do_create).props("no-caps")

                async def handle_orders_upload(e) -> None:
                    try:
                        imported, skipped = import_orders(repo, content=await read_upload(e))
                        msg = f"Orders imported: {len(imported)}"
                        ui.notify(msg + (f" ({skipped} row(s) skipped)" if skipped else ""))
                        ui.navigate.reload()
                    except Exception as ex:
                        ui.notify(f"Error importing orders: {ex}", color="negative")

                ui.label("Or import .xlsx with order_id, model, start_date, holiday_key, business_closing_date.").classes(
                    "text-sm text-slate-600"
                )
                ui.upload(label="Import orders", on_upload=handle_orders_upload, auto_upload=True).props(
                    "accept=.xlsx max-files=1"
                )

            if not rows:
                ui.label("(no orders)").classes("text-gray-500")
                return

            tbl = ui.table(
                columns=[
                    {"name": "order_id", "label": "Order", "field": "order_id"},
                    {"name": "model_id", "label": "Model", "field": "model_id"},
                    {"name": "client_name", "label": "Client", "field": "client_name"},
                    {"name": "status", "label": "Status", "field": "status"},
                    {"name": "start", "label": "Start", "field": "start_fmt"},
                    {"name": "projected", "label": "Projected", "field": "projected_fmt"},
                    {"name": "closing", "label": "Closing", "field": "closing_fmt"},
                    {"name": "variance_days", "label": "Variance (d)", "field": "variance_days"},
                    {"name": "progress_pct", "label": "Progress %", "field": "progress_pct"},
                    {"name": "critical_line", "label": "Critical line", "field": "critical_line"},
                    {"name": "override", "label": "Override", "field": "override_fmt"},
                ],
                rows=rows,
                row_key="order_id",
            ).classes("w-full wp-table").props("dense flat bordered separator=cell wrap-cells")
            tbl.on("rowClick", lambda e: ui.navigate.to(f"/orden/{e.args[1]['order_id']}"))

    @ui.page("/orden/{order_id}")
    def order_page(order_id: str) -> None:
        render_nav("dashboard", title=plant_name())
        with page_container():
            try:
                metrics = build_order_metrics(repo, order_id=order_id)
                order, model, projection_input = repo.get_projection_input(order_id)
            except ValueError as ex:
                ui.label(str(ex)).classes("text-red-600")
                return

            with ui.row().classes("items-center gap-3"):
                ui.label(f"Order {order_id}").classes("text-2xl font-semibold")
                variance_badge(metrics["variance_days"])
            ui.label(
                f"Model {metrics['model_id']} · projected {_format_date(metrics['projected_date'])} · "
                f"{metrics['progress_pct']}% done · {metrics['remaining_hours']:g} h remaining"
            ).classes("wp-subtitle")
            if metrics["override_ignored"]:
                ui.label("The critical line override does not match any line; using the latest line.").classes(
                    "text-amber-600"
                )

            line_options = {"": "(model default)"} | {line: line for line in partition_lines(model.steps)}

            def change_critical_line(e) -> None:
                try:
                    set_order_critical_line(repo, order_id=order_id, line_id=e.value or None)
                    ui.navigate.reload()
                except Exception as ex:
                    ui.notify(f"Error setting critical line: {ex}", color="negative")

            ui.select(
                line_options,
                label="Critical line",
                value=order.critical_line_override if order.critical_line_override in line_options else "",
                on_change=change_critical_line,
            ).classes("w-48")
            ui.separator()

            def set_status(step_id: str, status: StepStatus) -> None:
                try:
                    update_step_status(repo, order_id=order_id, step_id=step_id, status=status, operator="ui")
                    ui.navigate.reload()
                except Exception as ex:
                    logger.exception("Step update failed")
                    ui.notify(f"Error updating step: {ex}", color="negative")

            for line_id, steps in partition_lines(model.steps).items():
                with ui.card().classes("w-full"):
                    line_date = metrics["line_dates"].get(line_id)
                    ui.label(f"Line {line_id}" + (f" · {_format_date(line_date)}" if line_date else "")).classes(
                        "text-lg font-semibold"
                    )
                    for step in steps:
                        state = projection_input.state_of(step.step_id)
                        with ui.row().classes("w-full items-center justify-between"):
                            ui.label(f"{step.name} ({step.estimated_hours:g} h)")
                            with ui.row().classes("items-center gap-1"):
                                ui.badge(state.status.value)
                                for status in (StepStatus.IN_PROGRESS, StepStatus.COMPLETED, StepStatus.SKIPPED):
                                    ui.button(
                                        status.value.replace("_", " ").title(),
                                        on_click=lambda s=step.step_id, st=status: set_status(s, st),
                                    ).props("dense flat no-caps")

            ui.label("Downtime").classes("text-xl font-semibold mt-4")
            with ui.row().classes("items-end gap-2"):
                reason = ui.input("Reason").classes("w-64")
                department = ui.input("Department").classes("w-40")
                blocking = ui.checkbox("Production halted")

                def add_incident() -> None:
                    try:
                        record_incident(
                            repo,
                            order_id=order_id,
                            incident=DowntimeIncident(
                                incident_id="",
                                start_time=datetime.now(),
                                mode=DowntimeMode.BLOCKING if blocking.value else DowntimeMode.NON_BLOCKING,
                                reason=reason.value or None,
                                department=department.value or None,
                            ),
                        )
                        ui.navigate.reload()
                    except Exception as ex:
                        logger.exception("Incident creation failed")
                        ui.notify(f"Error adding incident: {ex}", color="negative")

                ui.button("Report", on_click=add_incident).props("no-caps")

            for incident in projection_input.downtime_incidents:
                with ui.row().classes("items-center gap-2"):
                    ui.badge(incident.mode.value, color="negative" if incident.is_blocking else "grey")
                    ui.label(f"{incident.reason or '-'} · {incident.department or '-'} · from {incident.start_time}")
                    if incident.end_time:
                        days = downtime_duration_days(incident.start_time, incident.end_time)
                        ui.label(f"until {incident.end_time} ({days:g} d)")
                    else:

                        def close(i=incident.incident_id) -> None:
                            try:
                                close_incident(repo, incident_id=i, end_time=datetime.now())
                                ui.navigate.reload()
                            except Exception as ex:
                                ui.notify(f"Error closing incident: {ex}", color="negative")

                        ui.button("Close", on_click=close).props("dense flat no-caps")

                    def delete(i=incident.incident_id) -> None:
                        try:
                            remove_incident(repo, incident_id=i)
                            ui.navigate.reload()
                        except Exception as ex:
                            ui.notify(f"Error deleting incident: {ex}", color="negative")

                    ui.button(icon="delete", on_click=delete).props("dense flat round color=negative")

            ui.label("Calendar").classes("text-xl font-semibold mt-4")
            for line_id, days in build_calendar_view(repo, order_id=order_id).items():
                render_line_calendar(line_id, days)

    @ui.page("/feriados")
    def holidays_page() -> None:
        render_nav("feriados", title=plant_name())
        with page_container():
            ui.label("Holiday rules").classes("text-2xl font-semibold")
            ui.label("Specific dates override the weekly pattern of the rule.").classes("wp-subtitle")
            ui.separator()

            for key, rule in repo.get_holiday_rules().items():
                with ui.card().classes("w-full"):
                    ui.label(f"{key} · {rule.name}").classes("text-lg font-semibold")
                    ui.label(rule.description).classes("text-sm text-slate-600")
                    dates = ui.textarea(
                        "Specific non-working dates (YYYY-MM-DD, one per line)",
                        value="\n".join(d.isoformat() for d in sorted(rule.specific_non_working_dates)),
                    ).classes("w-full")

                    def save(k=key, widget=dates) -> None:
                        parsed: list[date] = []
                        for raw in str(widget.value or "").replace(",", "\n").splitlines():
                            raw = raw.strip().replace("/", "-")
                            if not raw:
                                continue
                            try:
                                parsed.append(date.fromisoformat(raw))
                            except ValueError:
                                ui.notify(f"Invalid date: {raw}", color="negative")
                                return
                        repo.set_specific_holidays(key=k, dates=parsed)
                        recompute_all(repo)
                        ui.notify(f"{k}: {len(parsed)} date(s) saved")

                    async def handle_upload(e, k=key) -> None:
                        try:
                            count = repo.import_holidays_bytes(key=k, content=await read_upload(e))
                            recompute_all(repo)
                            ui.notify(f"{k}: {count} date(s) imported")
                            ui.navigate.reload()
                        except Exception as ex:
                            ui.notify(f"Error importing holidays: {ex}", color="negative")

                    with ui.row().classes("items-center gap-2"):
                        ui.button("Save", on_click=save).props("no-caps")
                        ui.upload(label="Import .xlsx", on_upload=handle_upload, auto_upload=True).props(
                            "accept=.xlsx max-files=1"
                        )

    @ui.page("/modelos")
    def models_page() -> None:
        render_nav("modelos", title=plant_name())
        with page_container():
            ui.label("Process models").classes("text-2xl font-semibold")
            ui.label("Columns: model_id, model_name, step_id, step_name, line, module, hours.").classes("wp-subtitle")

            async def handle_upload(e) -> None:
                try:
                    imported = repo.import_model_steps_bytes(content=await read_upload(e))
                    recompute_all(repo)
                    ui.notify(f"Models imported: {', '.join(imported)}")
                    ui.navigate.reload()
                except Exception as ex:
                    ui.notify(f"Error importing models: {ex}", color="negative")

            ui.upload(label="Import .xlsx", on_upload=handle_upload, auto_upload=True).props("accept=.xlsx max-files=1")
            ui.separator()

            for model in repo.list_models():
                with ui.card().classes("w-full"):
                    with ui.row().classes("w-full items-center justify-between"):
                        ui.label(f"{model.model_id} · {model.name}").classes("text-lg font-semibold")
                        options = {"": "(latest line)"} | {line: line for line in partition_lines(model.steps)}

                        def change_model_line(e, m=model.model_id) -> None:
                            try:
                                updated = set_model_critical_line(repo, model_id=m, line_id=e.value or None)
                                ui.notify(f"{m}: {len(updated)} order(s) re-projected")
                            except Exception as ex:
                                ui.notify(f"Error setting critical line: {ex}", color="negative")

                        ui.select(
                            options,
                            label="Schedule by line",
                            value=model.critical_line_override if model.critical_line_override in options else "",
                            on_change=change_model_line,
                        ).classes("w-48")
                    ui.table(
                        columns=[
                            {"name": "line", "label": "Line", "field": "line"},
                            {"name": "module", "label": "Module", "field": "module"},
                            {"name": "name", "label": "Step", "field": "name"},
                            {"name": "hours", "label": "Hours", "field": "hours"},
                        ],
                        rows=[
                            {
                                "_row_id": s.step_id,
                                "line": s.line,
                                "module": s.module or "",
                                "name": s.name,
                                "hours": s.estimated_hours,
                            }
                            for s in model.steps
                        ],
                        row_key="_row_id",
                    ).classes("w-full wp-table").props("dense flat bordered")
