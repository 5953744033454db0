# src/invoice_harvester/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- Queue timings are plain settings so tests and slow sites can tune them.
- Paths default to a gitignored local directory.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from dotenv import load_dotenv

ENV_PREFIX = "HARVEST"

N = TypeVar("N", int, float)

load_dotenv(override=False)

_TRUE = {"1", "true", "yes", "y", "on"}


def _k(suffix: str) -> str:
    """HARVEST_<suffix>"""
    return f"{ENV_PREFIX}_{suffix}"


def _raw(suffix: str) -> str | None:
    """Value of HARVEST_<suffix>, or None when unset or blank."""
    v = os.getenv(_k(suffix))
    if v is None or v.strip() == "":
        return None
    return v.strip()


def _str(suffix: str, default: str) -> str:
    v = _raw(suffix)
    return default if v is None else v


def _flag(suffix: str, default: bool) -> bool:
    v = _raw(suffix)
    return default if v is None else v.lower() in _TRUE


def _number(suffix: str, default: N, cast: Callable[[str], N]) -> N:
    """Parse with cast; malformed values fall back to the default instead of failing startup."""
    v = _raw(suffix)
    if v is None:
        return default
    try:
        return cast(v)
    except ValueError:
        return default


def _path(suffix: str, default: Path) -> Path:
    v = _raw(suffix)
    return default if v is None else Path(v).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str
    console_enabled: bool

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    state_db_path: Path
    session_key: str

    # ---- Download store ----
    downloads_dir: Path
    download_root: str

    # ---- Executor ----
    executor_command: str
    executor_ack_on_start: bool

    # ---- Queue tuning ----
    max_retries: int
    ack_timeout_seconds: float
    poll_timeout_seconds: float
    poll_interval_seconds: float
    settle_delay_seconds: float
    retry_delay_seconds: float
    recent_window: int
    fallback_scan_limit: int

    @staticmethod
    def from_env() -> "Settings":
        data_dir = _path("DATA_DIR", Path(".local/harvest"))

        return Settings(
            app_name=_str("APP_NAME", "invoice-harvester"),
            log_level=_str("LOG_LEVEL", "INFO"),
            console_enabled=_flag("CONSOLE_ENABLED", True),
            data_dir=data_dir,
            state_db_path=_path("STATE_DB_PATH", data_dir / "session.sqlite3"),
            session_key=_str("SESSION_KEY", "harvest_session_state_v2"),
            downloads_dir=_path("DOWNLOADS_DIR", Path("~/Downloads").expanduser()),
            download_root=_str("DOWNLOAD_ROOT", "faktury").strip("/"),
            executor_command=_str("EXECUTOR_COMMAND", ""),
            executor_ack_on_start=_flag("EXECUTOR_ACK_ON_START", False),
            max_retries=max(1, _number("MAX_RETRIES", 3, int)),
            ack_timeout_seconds=_number("ACK_TIMEOUT_SECONDS", 30.0, float),
            poll_timeout_seconds=_number("POLL_TIMEOUT_SECONDS", 180.0, float),
            poll_interval_seconds=_number("POLL_INTERVAL_SECONDS", 1.0, float),
            settle_delay_seconds=_number("SETTLE_DELAY_SECONDS", 0.25, float),
            retry_delay_seconds=max(0.0, _number("RETRY_DELAY_SECONDS", 0.0, float)),
            recent_window=_number("RECENT_WINDOW", 80, int),
            fallback_scan_limit=_number("FALLBACK_SCAN_LIMIT", 500, int),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
