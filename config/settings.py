"""
Configuration loader for the message relay.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class ApiConfig:
    host: str = "0.0.0.0"
    port: int = 3001
    embedded_worker: bool = False       # run the delivery consumer inside the API process


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./message_relay.db"         # postgresql:// | mysql:// | sqlite://
    store_backend: str = "sql"                         # "sql" | "memory"
    connect_timeout: float = 10.0                      # seconds, per connection attempt


@dataclass
class QueueConfig:
    backend: str = "redis"              # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    consumer_group: str = "delivery-workers"
    consumer_concurrency: int = 5       # worker tasks, one job each at a time
    max_attempts: int = 3               # attempts per job before the DLQ
    backoff_type: str = "exponential"   # "exponential" | "fixed"
    backoff_delay: float = 5.0          # base seconds between attempts
    visibility_timeout: float = 30.0    # seconds before an unacked job is reclaimed
    promote_interval: float = 1.0       # seconds between delayed-queue scans
    socket_timeout: float = 5.0         # redis network operations
    shutdown_timeout: float = 30.0      # grace period for in-flight jobs


@dataclass
class ChannelSettings:
    type: str = "log"                   # "log" (simulated) | "smtp"
    smtp_host: str = "localhost"
    smtp_port: int = 25
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = False
    from_email: str = "relay@example.com"
    subject: str = "New message"
    timeout: float = 10.0


@dataclass
class HealthConfig:
    probe_timeout: float = 2.0


@dataclass
class Settings:
    app_name: str = "MessageRelay"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = True
    connect_attempts: int = 5           # startup connection attempts per dependency
    api: ApiConfig = field(default_factory=ApiConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    channel: ChannelSettings = field(default_factory=ChannelSettings)
    health: HealthConfig = field(default_factory=HealthConfig)


_settings: Optional[Settings] = None


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


def _merge(section: Any, values: dict[str, Any]) -> None:
    """Copy known keys from a YAML mapping onto a config dataclass."""
    for key, value in (values or {}).items():
        if hasattr(section, key):
            setattr(section, key, value)


def _apply_env_overrides(settings: Settings) -> None:
    """Well-known environment variables win over the YAML file."""
    if os.environ.get("DATABASE_URL"):
        settings.database.url = os.environ["DATABASE_URL"]
    if os.environ.get("REDIS_URL"):
        settings.queue.redis_url = os.environ["REDIS_URL"]
    if os.environ.get("PORT"):
        settings.api.port = int(os.environ["PORT"])


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "RELAY_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.log_level = raw.get("log_level", settings.log_level)
        settings.log_json = raw.get("log_json", settings.log_json)
        settings.connect_attempts = raw.get("connect_attempts", settings.connect_attempts)

        _merge(settings.api, raw.get("api"))
        _merge(settings.database, raw.get("database"))
        _merge(settings.queue, raw.get("queue"))
        _merge(settings.channel, raw.get("channel"))
        _merge(settings.health, raw.get("health"))

    _apply_env_overrides(settings)

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
