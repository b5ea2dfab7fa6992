from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that are too chatty at INFO.
NOISY_LOGGERS = ("uvicorn.access", "watchfiles", "nicegui")


def resolve_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    numeric_level = getattr(logging, str(level).strip().upper(), None)
    if not isinstance(numeric_level, int):
        print(f"Invalid log level: {level}, defaulting to INFO")
        return logging.INFO
    return numeric_level


def configure_logging(level: str | int = "INFO", *, log_file: Path | None = None) -> None:
    """Send application logs to stdout and, optionally, to a rotating file.

    Example line: "2026-01-05 10:00:00 [INFO] workplan.orders.api: Order WO-1 projected to 2026-01-07"
    """
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=3, encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(resolve_level(level))

    # Reloads call this again; start from a clean slate.
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
