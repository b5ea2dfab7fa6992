from __future__ import annotations

import inspect
from contextlib import contextmanager

from nicegui import ui


_THEME_APPLIED = False


def apply_theme() -> None:
    """Apply a lightweight global theme."""
    ui.colors(
        primary="#2563eb",  # blue-600
        secondary="#0ea5e9",  # sky-500
        positive="#16a34a",  # green-600
        negative="#dc2626",  # red-600
        warning="#f59e0b",  # amber-500
    )

    ui.add_css(
        """
        body { background: #f8fafc; }
        .wp-container { max-width: 1200px; margin: 0 auto; padding: 16px; }
        .wp-subtitle { color: #475569; }
        .wp-header { border-bottom: 1px solid rgba(15, 23, 42, 0.08); }
        .wp-table table { width: 100%; table-layout: fixed; }
        .wp-table th, .wp-table td { white-space: normal !important; word-break: break-word; }
        .wp-day { min-height: 64px; }
        """
    )


def ensure_theme() -> None:
    """Apply theme once, but only when called from within a page context."""
    global _THEME_APPLIED
    if _THEME_APPLIED:
        return
    apply_theme()
    _THEME_APPLIED = True


@contextmanager
def page_container():
    with ui.element("div").classes("wp-container"):
        yield


def render_nav(active: str | None = None, *, title: str = "Work Orders") -> None:
    ensure_theme()
    active_key = active or "dashboard"
    sections: list[tuple[str, str, str]] = [
        ("dashboard", "Dashboard", "/"),
        ("modelos", "Models", "/modelos"),
        ("feriados", "Holidays", "/feriados"),
    ]

    with ui.header().classes("wp-header bg-white text-slate-900"):
        with ui.row().classes("w-full items-center justify-between gap-4 px-4 py-2"):
            ui.label(title).classes("text-xl md:text-2xl font-semibold leading-none")
            with ui.row().classes("items-center gap-1"):
                for key, label, path in sections:
                    props = "dense no-caps color=primary" + (" unelevated" if key == active_key else " flat")
                    ui.button(label, on_click=lambda p=path: ui.navigate.to(p)).props(props)


async def read_upload(e) -> bytes:
    """Extract the uploaded bytes across NiceGUI upload event variants."""
    if hasattr(e, "content"):
        return e.content.read()
    f = getattr(e, "file", None)
    if f is not None and hasattr(f, "read"):
        if inspect.iscoroutinefunction(f.read):
            return await f.read()
        return f.read()
    raise ValueError("Could not read the uploaded file")


def variance_badge(variance: int | None) -> None:
    if variance is None:
        ui.badge("no closing date", color="grey")
    elif variance > 0:
        ui.badge(f"+{variance} d late", color="negative")
    else:
        ui.badge(f"{variance} d", color="positive")


def render_line_calendar(line_id: str, days: list[dict]) -> None:
    """One card per line with the projected/recorded work per day."""
    with ui.card().classes("w-full"):
        ui.label(f"Line {line_id}").classes("text-lg font-semibold")
        if not days:
            ui.label("(no work scheduled)").classes("text-gray-500")
            return
        with ui.element("div").classes("w-full grid gap-2 grid-cols-2 md:grid-cols-5"):
            for entry in days:
                with ui.card().classes("wp-day p-2"):
                    ui.label(entry["date"]).classes("text-xs font-semibold text-slate-600")
                    for item in entry["items"]:
                        if item["type"] == "downtime":
                            ui.label(f"HALTED {item.get('reason') or ''}").classes("text-xs text-red-600 font-bold")
                            continue
                        label = item["name"]
                        if item["recorded"]:
                            label += f" ({item['status'].lower()})"
                        elif item["hours"]:
                            label += f" {item['hours']:g}h"
                        ui.label(label).classes("text-xs")
