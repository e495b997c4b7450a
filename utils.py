"""
Shared utilities: logging setup, env helpers, durations, target masking.
"""
from __future__ import annotations

import logging
import os
import re
from datetime import date, datetime, time
from pathlib import Path
from typing import Any

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def setup_logging(
    level: str | int = "INFO",
    log_file: str | Path | None = None,
    format_string: str = LOG_FORMAT,
    date_format: str = LOG_DATE_FORMAT,
) -> None:
    """Configure root logger and optional file handler."""
    log_level = getattr(logging, level.upper(), logging.INFO) if isinstance(level, str) else level
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))
    logging.basicConfig(
        level=log_level,
        format=format_string,
        datefmt=date_format,
        handlers=handlers,
        force=True,
    )


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


# -----------------------------------------------------------------------------
# Config / env helpers
# -----------------------------------------------------------------------------

def env_bool(key: str, default: bool = False) -> bool:
    v = os.environ.get(key, "").strip().lower()
    if v in ("1", "true", "yes", "on"):
        return True
    if v in ("0", "false", "no", "off"):
        return False
    return default


def env_int(key: str, default: int = 0) -> int:
    try:
        return int(os.environ.get(key, default))
    except ValueError:
        return default


def env_str(key: str, default: str = "") -> str:
    return os.environ.get(key, default).strip()


def env_list(key: str) -> list[str]:
    """Comma-separated env value as a list, empty items dropped."""
    return [item.strip() for item in env_str(key).split(",") if item.strip()]


# -----------------------------------------------------------------------------
# Durations
# -----------------------------------------------------------------------------

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$", re.I)
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Seconds from a number or a string like '500ms', '10s', '5m', '1h'.

    Raises ValueError for anything else, including negative values.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value!r}")
        return float(value)
    m = _DURATION_RE.match(str(value))
    if not m:
        raise ValueError(f"Invalid duration: {value!r}")
    unit = (m.group(2) or "s").lower()
    return float(m.group(1)) * _DURATION_UNITS[unit]


def format_duration(seconds: float) -> str:
    """Short human-readable duration (e.g. 250ms, 10.0s)."""
    if seconds < 1:
        return f"{seconds * 1000:.0f}ms"
    return f"{seconds:.1f}s"


# -----------------------------------------------------------------------------
# Targets
# -----------------------------------------------------------------------------

def mask_url(url: str) -> str:
    """Database URL with the password hidden; opaque strings pass through."""
    from sqlalchemy.engine import make_url
    from sqlalchemy.exc import ArgumentError

    try:
        return make_url(url).render_as_string(hide_password=True)
    except ArgumentError:
        return url


# -----------------------------------------------------------------------------
# JSON
# -----------------------------------------------------------------------------

def json_default(value: Any) -> Any:
    """json.dumps default: ISO-8601 for dates, str for the rest."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    return str(value)
