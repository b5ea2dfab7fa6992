"""Order tracking service.

Glue between the repository and the projection engine: every state change is
persisted, then the order is re-projected.
"""

from workplan.orders.api import (
    build_calendar_view,
    build_dashboard_rows,
    build_order_metrics,
    close_incident,
    create_order,
    export_orders_report,
    import_orders,
    project,
    recompute_all,
    recompute_order,
    record_incident,
    remove_incident,
    set_model_critical_line,
    set_order_critical_line,
    update_step_status,
)

__all__ = [
    "build_calendar_view",
    "build_dashboard_rows",
    "build_order_metrics",
    "close_incident",
    "create_order",
    "export_orders_report",
    "import_orders",
    "project",
    "recompute_all",
    "recompute_order",
    "record_incident",
    "remove_incident",
    "set_model_critical_line",
    "set_order_critical_line",
    "update_step_status",
]
