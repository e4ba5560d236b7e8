"""
Configuration loader for the waiting-room notifier.
Reads settings from YAML file with environment variable substitution.

Two layers:
  - Settings: process-wide wiring (scheduler, stores, collaborators, logging),
    read once at startup.
  - SystemConfiguration: the operational knobs under `notifier:` (wait
    thresholds, cutoff, exclusions, pauses). Served by ConfigSource as an
    immutable snapshot that is hot-reloaded when the YAML file changes.
"""
from __future__ import annotations

import logging
import os
import re
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import ValidationError

from models.schemas import SystemConfiguration

logger = structlog.get_logger()

DEFAULT_CONFIG_PATH = str(Path(__file__).parent / "settings.yaml")


@dataclass
class SchedulerConfig:
    interval_seconds: float = 60.0
    max_parallel_sends: int = 5          # bounded parallelism for the Send step
    reservation_timeout_seconds: int = 300


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"        # "memory" | "file"
    store_file_dir: str = "./data"
    retention_days: int = 7


@dataclass
class BackendConfig:
    type: str = "mock"                   # "rest" | "mock"
    base_url: str = ""
    auth_type: str = "bearer"
    auth_credentials: dict[str, Any] = field(default_factory=dict)
    endpoints: dict[str, str] = field(default_factory=dict)
    timeout_seconds: float = 30.0
    templates: dict[str, str] = field(default_factory=dict)   # message type → template id


@dataclass
class Settings:
    app_name: str = "WaitingRoomNotifier"
    debug: bool = False
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue_source: BackendConfig = field(default_factory=BackendConfig)
    sender: BackendConfig = field(default_factory=BackendConfig)
    notifier: SystemConfiguration = field(default_factory=SystemConfiguration)


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)\}')
    def replacer(match):
        var_name = match.group(1)
        return os.environ.get(var_name, match.group(0))
    return pattern.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _read_yaml(config_path: str) -> dict[str, Any]:
    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}
    return _process_values(raw)


def _backend_config(raw: dict[str, Any]) -> BackendConfig:
    return BackendConfig(
        type=raw.get("type", "mock"),
        base_url=raw.get("base_url", ""),
        auth_type=raw.get("auth_type", "bearer"),
        auth_credentials=raw.get("auth_credentials", {}),
        endpoints=raw.get("endpoints", {}),
        timeout_seconds=raw.get("timeout_seconds", 30.0),
        templates=raw.get("templates", {}),
    )


def resolve_config_path(config_path: Optional[str] = None) -> str:
    if config_path is None:
        config_path = os.environ.get("NOTIFIER_CONFIG", DEFAULT_CONFIG_PATH)
    return config_path


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Load settings from YAML file. Missing file → defaults."""
    config_path = resolve_config_path(config_path)
    settings = Settings()

    if not Path(config_path).exists():
        logger.warning("settings_file_missing", path=config_path)
        return settings

    raw = _read_yaml(config_path)

    settings.app_name = raw.get("app_name", settings.app_name)
    settings.debug = raw.get("debug", settings.debug)

    if "scheduler" in raw:
        sc = raw["scheduler"]
        settings.scheduler = SchedulerConfig(
            interval_seconds=sc.get("interval_seconds", 60.0),
            max_parallel_sends=sc.get("max_parallel_sends", 5),
            reservation_timeout_seconds=sc.get("reservation_timeout_seconds", 300),
        )

    if "database" in raw:
        db = raw["database"]
        settings.database = DatabaseConfig(
            store_backend=db.get("store_backend", settings.database.store_backend),
            store_file_dir=db.get("store_file_dir", settings.database.store_file_dir),
            retention_days=db.get("retention_days", settings.database.retention_days),
        )

    if "queue_source" in raw:
        settings.queue_source = _backend_config(raw["queue_source"])

    if "sender" in raw:
        settings.sender = _backend_config(raw["sender"])

    if "notifier" in raw:
        settings.notifier = SystemConfiguration.model_validate(raw["notifier"] or {})

    logger.info("settings_loaded", path=config_path,
                store_backend=settings.database.store_backend)
    return settings


def _stderr_logger(*args: Any) -> structlog.PrintLogger:
    # Looked up per logger: sys.stderr may be swapped after configure().
    return structlog.PrintLogger(sys.stderr)


def configure_logging(debug: bool = False) -> None:
    """
    Console output when debugging, one JSON object per line otherwise.
    Logs go to stderr; stdout is left to command output. Safe to call again
    once settings are known.
    """
    level = logging.DEBUG if debug else logging.INFO
    renderer = (
        structlog.dev.ConsoleRenderer() if debug
        else structlog.processors.JSONRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=_stderr_logger,
    )


# ──────────────────────────────────────────────────────────────
#  Hot-reloadable snapshot
# ──────────────────────────────────────────────────────────────

class ConfigSource:
    """
    Serves the current SystemConfiguration.

    snapshot() re-reads the `notifier:` section when the YAML file's mtime
    changes. A file that fails to parse or validate keeps the previous snapshot
    in service. update() applies operator overrides in memory (pause end-of-day,
    ignore business hours, …); they survive later reloads of other keys.
    """

    def __init__(self, initial: Optional[SystemConfiguration] = None, path: Optional[str] = None):
        self._lock = threading.Lock()
        self._path = Path(path) if path else None
        self._mtime: Optional[float] = None
        self._file_config = initial or SystemConfiguration()
        self._overrides: dict[str, Any] = {}
        self._current = self._file_config
        if self._path is not None and self._path.exists():
            self._reload()

    @classmethod
    def from_settings(cls, settings: Settings, path: Optional[str] = None) -> ConfigSource:
        return cls(initial=settings.notifier, path=path)

    def snapshot(self) -> SystemConfiguration:
        with self._lock:
            if self._path is not None:
                try:
                    mtime = self._path.stat().st_mtime
                except FileNotFoundError:
                    mtime = None
                if mtime is not None and mtime != self._mtime:
                    self._reload()
            return self._current

    def update(self, **changes: Any) -> SystemConfiguration:
        """Apply operator overrides. Raises pydantic ValidationError on bad values."""
        with self._lock:
            merged = {**self._overrides, **changes}
            candidate = SystemConfiguration.model_validate(
                {**self._file_config.model_dump(), **merged}
            )
            self._overrides = merged
            self._current = candidate
            logger.info("config_overridden", changes=sorted(changes))
            return candidate

    def clear_overrides(self) -> SystemConfiguration:
        with self._lock:
            self._overrides = {}
            self._current = self._file_config
            return self._current

    def _reload(self) -> None:
        """Re-read the file. Called with the lock held."""
        try:
            mtime = self._path.stat().st_mtime
            raw = _read_yaml(str(self._path))
            file_config = SystemConfiguration.model_validate(raw.get("notifier") or {})
            current = SystemConfiguration.model_validate(
                {**file_config.model_dump(), **self._overrides}
            )
        except (OSError, yaml.YAMLError, ValidationError) as e:
            logger.error("config_reload_failed", path=str(self._path), error=str(e))
            # Don't retry the same broken file on every tick.
            try:
                self._mtime = self._path.stat().st_mtime
            except OSError:
                pass
            return
        changed = current != self._current
        self._file_config = file_config
        self._current = current
        self._mtime = mtime
        if changed:
            logger.info("config_reloaded", path=str(self._path))
