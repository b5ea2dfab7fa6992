from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Settings:
    db_path: Path
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    # Rotating log file; stdout only when None.
    log_file: Path | None = None

    @classmethod
    def from_args(cls, args) -> "Settings":
        return cls(
            db_path=Path(args.db) if getattr(args, "db", None) else default_db_path(),
            host=args.host,
            port=args.port,
            log_level=args.log_level,
            log_file=Path(args.log_file) if getattr(args, "log_file", None) else None,
        )


def default_db_path() -> Path:
    # Repo-local database, same location on every machine.
    return Path("db") / "workplan.db"
