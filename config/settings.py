"""
Configuration for the timer drip services.

One YAML file (``TIMER_DRIP_CONFIG`` or config/settings.yaml) feeds every
process: API, promotion scheduler and workers. ``${VAR}`` placeholders are
expanded from the environment after .env is loaded; unset variables are left
as written. Sections or keys the file omits keep the dataclass defaults.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = Path(__file__).parent / "settings.yaml"

_ENV_PLACEHOLDER = re.compile(r"\$\{(\w+)\}")


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./timer_drip.db"        # postgresql:// | sqlite://
    store_backend: str = "sql"                     # "sql" | "memory"
    recent_partitions_limit: int = 500             # staging keys scanned per discovery pass
    pool_size: int = 10
    max_overflow: int = 20


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    stream_prefix: str = "timer:stream:"
    dead_letter_stream: str = "timer:dlq"
    lease_prefix: str = "timer:lease:"
    consumer_group: str = "timer-workers"
    promote_interval: float = 1.0       # seconds between promotion passes
    promote_error_backoff: float = 5.0  # seconds to wait after a failed pass
    promote_batch_size: int = 50


@dataclass
class WorkerConfig:
    consumer_name: str = ""             # defaults to worker-<host>-<pid>
    discovery_interval: float = 5.0     # seconds between partition scans
    read_block_ms: int = 2000
    claim_timeout_ms: int = 30_000      # pending entries idle this long get reclaimed
    lease_ttl_ms: int = 10_000          # partition read lease; at least 2x read_block_ms
    max_deliveries: int = 10            # 0 retries forever
    partition_idle_seconds: float = 300.0
    error_backoff: float = 1.0


@dataclass
class DownstreamConfig:
    type: str = "mock"                  # "rest" | "mock"
    base_url: str = ""
    api_key: str = ""
    field_name: str = "timerdone"
    field_value: str = "YES"
    timeout: float = 30.0


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 8000


@dataclass
class Settings:
    app_name: str = "TimerDrip"
    debug: bool = False
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    downstream: DownstreamConfig = field(default_factory=DownstreamConfig)
    api: ApiConfig = field(default_factory=ApiConfig)


_SECTIONS = ("database", "queue", "worker", "downstream", "api")

_settings: Optional[Settings] = None


def _expand_env(value: Any) -> Any:
    """Expand ${VAR} in every string of a parsed YAML tree."""
    if isinstance(value, str):
        return _ENV_PLACEHOLDER.sub(lambda m: os.environ.get(m.group(1), m.group(0)), value)
    if isinstance(value, dict):
        return {k: _expand_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v) for v in value]
    return value


def _merge(section, raw: dict[str, Any]):
    """Copy of a section dataclass with the YAML's known keys applied."""
    names = {f.name for f in fields(section)}
    return replace(section, **{k: v for k, v in (raw or {}).items() if k in names})


def load_settings(config_path: str = None) -> Settings:
    """Read the YAML file (if present) over the defaults and cache the result."""
    global _settings

    load_dotenv()
    path = Path(config_path or os.environ.get("TIMER_DRIP_CONFIG") or DEFAULT_CONFIG_PATH)

    settings = Settings()
    if path.exists():
        raw = _expand_env(yaml.safe_load(path.read_text()) or {})
        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = bool(raw.get("debug", settings.debug))
        for name in _SECTIONS:
            if name in raw:
                setattr(settings, name, _merge(getattr(settings, name), raw[name]))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from the default location."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop cached settings (for testing)."""
    global _settings
    _settings = None
