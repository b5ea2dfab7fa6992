from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from nicegui import app, ui

from workplan.data.db import Db
from workplan.data.repository import Repository
from workplan.logging_conf import configure_logging
from workplan.orders.api import recompute_all
from workplan.settings import Settings
from workplan.ui.pages import register_pages

logger = logging.getLogger(__name__)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Work order completion tracking")
    parser.add_argument("--host", type=str, default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8080)
    parser.add_argument("--log-level", type=str, default="INFO")
    parser.add_argument("--db", type=str, default=None, help="SQLite file (default: db/workplan.db)")
    parser.add_argument("--log-file", type=str, default=None)
    return parser


def main() -> None:
    args = build_arg_parser().parse_args()
    settings = Settings.from_args(args)
    configure_logging(settings.log_level, log_file=settings.log_file)
    logger.info("Using database %s", settings.db_path)

    db = Db(settings.db_path)
    db.ensure_schema()

    repo = Repository(db)
    register_pages(repo)

    @app.on_startup
    async def refresh_projections() -> None:
        # Projections depend on "today"; refresh them once per start.
        updated = await asyncio.to_thread(recompute_all, repo)
        logger.info("Startup projection refresh: %d order(s)", len(updated))

    if sys.platform == "win32":
        @app.on_startup
        async def _silence_windows_connection_reset() -> None:
            # Suppress noisy ConnectionResetError 10054 from Windows clients dropping websockets.
            loop = asyncio.get_running_loop()

            def _handler(loop: asyncio.AbstractEventLoop, context: dict) -> None:
                exc = context.get("exception")
                if isinstance(exc, ConnectionResetError) and getattr(exc, "winerror", None) == 10054:
                    return
                loop.default_exception_handler(context)

            loop.set_exception_handler(_handler)

    title = repo.get_config(key="plant_name", default="Work Orders") or "Work Orders"
    ui.run(host=settings.host, port=settings.port, title=title, reload=False)


if __name__ in {"__main__", "__mp_main__"}:
    main()
