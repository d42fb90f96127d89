"""
YAML configuration and logging setup.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from herald.errors import ConfigError

DEFAULT_CONFIG = "herald.yaml"
DEFAULT_TICK_SECONDS = 30
DEFAULT_JOB_TIMEOUT_SECONDS = 300
DEFAULT_JOBS_FILE = ".herald/jobs.yaml"
DEFAULT_HISTORY_FILE = ".herald/history.jsonl"
DEFAULT_DELIVERY_ENDPOINT = "http://127.0.0.1:4040"
DEFAULT_DELIVERY_TIMEOUT_MS = 300_000
DEFAULT_SENDER = "cron"
LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"
VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulerSettings:
    tick_seconds: int
    job_timeout_seconds: int
    scripts_enabled: bool
    timezone: ZoneInfo
    timezone_name: str


@dataclass(frozen=True)
class StorageSettings:
    jobs_file: Path
    history_file: Path


@dataclass(frozen=True)
class DeliverySettings:
    endpoint: str
    api_key: str
    timeout_ms: int
    sender: str
    silent: bool


@dataclass(frozen=True)
class LoggingSettings:
    level: str
    file: Optional[Path]


@dataclass(frozen=True)
class HeraldSettings:
    config_path: Path
    scheduler: SchedulerSettings
    storage: StorageSettings
    delivery: DeliverySettings
    logging: LoggingSettings


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    root = logging.getLogger("herald")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    formatter = logging.Formatter(LOG_FORMAT)
    if not root.handlers:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
    if log_file is not None and not any(isinstance(h, logging.FileHandler) for h in root.handlers):
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    return root


def system_timezone() -> Tuple[ZoneInfo, str]:
    local_tz = datetime.now().astimezone().tzinfo
    if isinstance(local_tz, ZoneInfo):
        return local_tz, local_tz.key
    tz_name = os.environ.get("TZ")
    if tz_name:
        try:
            zone = ZoneInfo(tz_name)
            return zone, tz_name
        except (ZoneInfoNotFoundError, ValueError):
            pass
    return ZoneInfo("UTC"), "UTC"


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: int, minimum: int = 1) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def ensure_mapping(raw: Any, field_path: str, allowed: set) -> Dict[str, Any]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    unknown = set(raw.keys()) - allowed
    if unknown:
        raise ConfigError(f"Error: Unknown keys in {field_path}: {sorted(unknown)}.")
    return raw


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        return {}
    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _resolve_path(value: Any, config_dir: Path, field_path: str) -> Path:
    raw = Path(ensure_str(value, field_path)).expanduser()
    return raw if raw.is_absolute() else (config_dir / raw).resolve()


def load_settings(config_path: Path) -> HeraldSettings:
    config_path = config_path.resolve()
    payload = _load_config_payload(config_path)
    config_dir = config_path.parent

    unknown_top = set(payload.keys()) - {"version", "scheduler", "storage", "delivery", "logging"}
    if unknown_top:
        raise ConfigError(f"Error: Unknown top-level keys: {sorted(unknown_top)}.")

    scheduler_raw = ensure_mapping(
        payload.get("scheduler"),
        "scheduler",
        {"tick_seconds", "job_timeout_seconds", "scripts_enabled", "timezone"},
    )
    timezone_name = scheduler_raw.get("timezone")
    if timezone_name is None:
        zone, timezone_name = system_timezone()
    else:
        timezone_name = ensure_str(timezone_name, "scheduler.timezone")
        zone = parse_timezone(timezone_name, "scheduler.timezone")
    scheduler = SchedulerSettings(
        tick_seconds=ensure_int(scheduler_raw.get("tick_seconds"), "scheduler.tick_seconds", DEFAULT_TICK_SECONDS),
        job_timeout_seconds=ensure_int(
            scheduler_raw.get("job_timeout_seconds"),
            "scheduler.job_timeout_seconds",
            DEFAULT_JOB_TIMEOUT_SECONDS,
        ),
        scripts_enabled=ensure_bool(scheduler_raw.get("scripts_enabled"), "scheduler.scripts_enabled", False),
        timezone=zone,
        timezone_name=timezone_name,
    )

    storage_raw = ensure_mapping(payload.get("storage"), "storage", {"jobs_file", "history_file"})
    storage = StorageSettings(
        jobs_file=_resolve_path(storage_raw.get("jobs_file", DEFAULT_JOBS_FILE), config_dir, "storage.jobs_file"),
        history_file=_resolve_path(
            storage_raw.get("history_file", DEFAULT_HISTORY_FILE),
            config_dir,
            "storage.history_file",
        ),
    )

    delivery_raw = ensure_mapping(
        payload.get("delivery"),
        "delivery",
        {"endpoint", "api_key", "timeout_ms", "sender", "silent"},
    )
    endpoint = ensure_str(delivery_raw.get("endpoint", DEFAULT_DELIVERY_ENDPOINT), "delivery.endpoint")
    if not (endpoint.startswith("http://") or endpoint.startswith("https://")):
        raise ConfigError("Error: delivery.endpoint must be an HTTP URL.")
    api_key = delivery_raw.get("api_key", "")
    if not isinstance(api_key, str):
        raise ConfigError("Error: delivery.api_key must be a string.")
    delivery = DeliverySettings(
        endpoint=endpoint,
        api_key=api_key,
        timeout_ms=ensure_int(delivery_raw.get("timeout_ms"), "delivery.timeout_ms", DEFAULT_DELIVERY_TIMEOUT_MS),
        sender=ensure_str(delivery_raw.get("sender", DEFAULT_SENDER), "delivery.sender"),
        silent=ensure_bool(delivery_raw.get("silent"), "delivery.silent", True),
    )

    logging_raw = ensure_mapping(payload.get("logging"), "logging", {"level", "file"})
    level = ensure_str(logging_raw.get("level", "INFO"), "logging.level").upper()
    if level not in VALID_LOG_LEVELS:
        raise ConfigError(f"Error: logging.level must be one of {sorted(VALID_LOG_LEVELS)}, got \"{level}\".")
    log_file = logging_raw.get("file")
    logging_settings = LoggingSettings(
        level=level,
        file=_resolve_path(log_file, config_dir, "logging.file") if log_file is not None else None,
    )

    return HeraldSettings(
        config_path=config_path,
        scheduler=scheduler,
        storage=storage,
        delivery=delivery,
        logging=logging_settings,
    )


def scripts_flag(config_path: Path) -> Callable[[], bool]:
    """Reader for ``scheduler.scripts_enabled`` that re-reads the file on every call."""

    def read() -> bool:
        try:
            return load_settings(config_path).scheduler.scripts_enabled
        except ConfigError as exc:
            logger.warning("Unable to read scripts_enabled from %s; treating as disabled: %s", config_path, exc)
            return False

    return read
