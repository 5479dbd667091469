# backend/tapecapture/config.py
import os
from dataclasses import dataclass
from typing import Tuple

BASE_DIR = os.path.dirname(os.path.abspath(__file__))


def _env_flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    collections_dir: str
    database_url: str
    capture_command: Tuple[str, ...]
    emulation_enabled: bool
    probe_timeout: float
    cancel_grace: float
    max_runtime: float
    log_level: str


def get_settings() -> Settings:
    """Read settings from the environment (defaults suit local dev)."""
    db_path = os.path.join(BASE_DIR, "database.db")
    return Settings(
        collections_dir=os.environ.get("COLLECTIONS_DIR", os.path.join(os.getcwd(), "collections")),
        database_url=os.environ.get("DATABASE_URL", f"sqlite:///{db_path}"),
        capture_command=tuple(os.environ.get("CAPTURE_COMMAND", "dvrescue").split()),
        emulation_enabled=_env_flag("CAPTURE_EMULATION", "1"),
        probe_timeout=float(os.environ.get("CAPTURE_PROBE_TIMEOUT", "5")),
        cancel_grace=float(os.environ.get("CAPTURE_CANCEL_GRACE", "5")),
        max_runtime=float(os.environ.get("CAPTURE_MAX_RUNTIME", str(30 * 60))),
        log_level=os.environ.get("LOG_LEVEL", "INFO"),
    )
