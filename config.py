"""
Central configuration for the DB metrics collector.
Supports defaults, optional config file (YAML), and environment overrides.
"""
from __future__ import annotations

import copy
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from utils import env_bool, env_int, env_list, env_str, parse_duration

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_CATALOG: list[dict[str, str]] = [
    {
        "name": "oracledb_status",
        "query": "SELECT (SELECT dbid FROM v$database) dbid, instance_name, status FROM v$instance",
    },
]

DEFAULTS: dict[str, Any] = {
    "collector": {
        "period": "10s",
        "targets": [],
        "fallback_env": "DATA_SOURCE_NAME",
        "overlap": "allow",
        "shutdown_timeout_sec": 5,
        "connect_timeout_sec": None,
        # Oracle returns NUMBER as text; "." must be the decimal separator.
        "driver_env": {"NLS_LANG": "AMERICAN_AMERICA.AL32UTF8"},
    },
    "catalog": DEFAULT_CATALOG,
    "sinks": [{"type": "log"}],
    "api": {
        "enabled": False,
        "host": "127.0.0.1",
        "port": 8766,
    },
    "logging": {
        "level": "INFO",
        "file": None,
    },
}

OVERLAP_POLICIES = ("allow", "skip")


class ConfigError(ValueError):
    """Invalid or missing configuration; raised at startup only."""


# -----------------------------------------------------------------------------
# Config file loading (optional YAML)
# -----------------------------------------------------------------------------

_config_overrides: dict[str, Any] = {}
_loaded_path: Path | None = None


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if k in out and isinstance(out[k], dict) and isinstance(v, dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def default_paths() -> tuple[Path, ...]:
    return (
        Path(os.getcwd()) / "config.yaml",
        Path(os.getcwd()) / "config.yml",
        Path.home() / ".db_metrics_collector" / "config.yaml",
    )


def load_config_file(path: str | Path | None = None) -> bool:
    """Load optional YAML config. Returns True if loaded.

    An explicit path that does not exist, or a file that is not a YAML
    mapping, raises ConfigError.
    """
    global _config_overrides, _loaded_path
    explicit = path is not None
    if path is None:
        for p in default_paths():
            if p.exists():
                path = p
                break
    if path is None:
        return False
    path = Path(path).expanduser()
    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return False
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    _config_overrides = _deep_merge(_config_overrides, data)
    _loaded_path = path
    return True


def loaded_path() -> Path | None:
    return _loaded_path


def reset() -> None:
    """Forget loaded file overrides."""
    global _config_overrides, _loaded_path
    _config_overrides = {}
    _loaded_path = None


# -----------------------------------------------------------------------------
# Environment overrides (take precedence over file)
# -----------------------------------------------------------------------------

def _env_overrides() -> dict[str, Any]:
    return {
        "collector.period": env_str("DBMC_PERIOD"),
        "collector.targets": env_list("DBMC_TARGETS"),
        "collector.overlap": env_str("DBMC_OVERLAP"),
        "logging.level": env_str("DBMC_LOG_LEVEL"),
        "api.port": env_int("DBMC_API_PORT", 0),
        "api.enabled": env_bool("DBMC_API_ENABLED", False),
    }


def _with_env(merged: dict[str, Any]) -> dict[str, Any]:
    out = copy.deepcopy(merged)
    for path, value in _env_overrides().items():
        if value in (0, "", [], False):
            continue
        keys = path.split(".")
        d = out
        for k in keys[:-1]:
            if not isinstance(d.get(k), dict):
                d[k] = {}
            d = d[k]
        d[keys[-1]] = value
    return out


def merged_config() -> dict[str, Any]:
    return _with_env(_deep_merge(DEFAULTS, _config_overrides))


def get(key_path: str, default: Any = None) -> Any:
    """Get config value by dot path, e.g. 'collector.period'."""
    merged: Any = merged_config()
    for k in key_path.split("."):
        if isinstance(merged, dict) and k in merged:
            merged = merged[k]
        else:
            return default
    return merged


# -----------------------------------------------------------------------------
# Typed settings
# -----------------------------------------------------------------------------

@dataclass
class CollectorSettings:
    period_sec: float = 10.0
    targets: list[Any] = field(default_factory=list)
    fallback_env: str = "DATA_SOURCE_NAME"
    overlap: str = "allow"
    shutdown_timeout_sec: float = 5.0
    connect_timeout_sec: float | None = None
    driver_env: dict[str, str] = field(default_factory=dict)
    catalog: list[Any] = field(default_factory=list)
    sinks: list[Any] = field(default_factory=list)
    api_enabled: bool = False
    api_host: str = "127.0.0.1"
    api_port: int = 8766
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def load(cls) -> CollectorSettings:
        """Build settings from the merged config; raises ConfigError."""
        try:
            period = parse_duration(get("collector.period", "10s"))
            shutdown = parse_duration(get("collector.shutdown_timeout_sec", 5))
            connect = get("collector.connect_timeout_sec")
            connect_sec = parse_duration(connect) if connect is not None else None
        except ValueError as e:
            raise ConfigError(str(e)) from e
        if period <= 0:
            raise ConfigError("collector.period must be positive")

        overlap = str(get("collector.overlap", "allow")).lower()
        if overlap not in OVERLAP_POLICIES:
            raise ConfigError(f"collector.overlap must be one of {', '.join(OVERLAP_POLICIES)}, got {overlap!r}")

        targets = get("collector.targets") or []
        if not isinstance(targets, list):
            raise ConfigError("collector.targets must be a list")
        driver_env = get("collector.driver_env") or {}
        if not isinstance(driver_env, dict):
            raise ConfigError("collector.driver_env must be a mapping")
        sinks = get("sinks") or []
        if not isinstance(sinks, list):
            raise ConfigError("sinks must be a list")

        try:
            api_port = int(get("api.port", 8766))
        except (TypeError, ValueError) as e:
            raise ConfigError(f"api.port must be an integer: {e}") from e

        return cls(
            period_sec=period,
            targets=list(targets),
            fallback_env=str(get("collector.fallback_env", "DATA_SOURCE_NAME")),
            overlap=overlap,
            shutdown_timeout_sec=shutdown,
            connect_timeout_sec=connect_sec,
            driver_env={str(k): str(v) for k, v in driver_env.items()},
            catalog=get("catalog") or [],
            sinks=list(sinks),
            api_enabled=bool(get("api.enabled", False)),
            api_host=str(get("api.host", "127.0.0.1")),
            api_port=api_port,
            log_level=str(get("logging.level", "INFO")),
            log_file=get("logging.file"),
        )
