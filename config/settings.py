"""
Configuration loader for the BrandFlow job system.
Reads settings from YAML file with environment variable substitution.
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class QueueConfig:
    backend: str = "memory"             # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    key_prefix: str = "bq"
    poll_interval: float = 1.0          # seconds a worker blocks on an empty queue
    shutdown_grace: float = 30.0        # seconds in-flight jobs get on shutdown
    queues: list[str] = field(default_factory=list)   # empty = every registered queue
    schedule_recurring: bool = True
    scheduler_tick: float = 30.0


@dataclass
class ProgressConfig:
    relay: str = "local"                # "local" | "redis" (cross-process fan-out)
    redis_url: str = "redis://localhost:6379"
    channel: str = "progress:events"
    subscriber_buffer: int = 100


@dataclass
class CreditConfig:
    backend: str = "memory"             # "memory" | "redis"
    redis_url: str = "redis://localhost:6379"
    initial_balances: dict[str, int] = field(default_factory=dict)   # credit type → starting balance


@dataclass
class AbandonmentConfig:
    app_url: str = "http://localhost:3000"
    resume_token_secret: str = "dev-resume-token-secret-change-in-production"
    token_ttl_seconds: int = 86400
    inactivity_seconds: int = 86400
    batch_limit: int = 100


@dataclass
class IntegrationConfig:
    mode: str = "logging"               # "logging" (dev/test) | "rest"
    request_timeout: float = 30.0
    generation_url: str = ""
    generation_api_key: str = ""
    crm_url: str = ""
    crm_api_key: str = ""
    email_url: str = ""
    email_api_key: str = ""
    email_from: str = "hello@brandflow.app"
    storage_url: str = ""
    storage_api_key: str = ""


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"


@dataclass
class Settings:
    app_name: str = "BrandFlow Jobs"
    debug: bool = False
    environment: str = "development"
    queue: QueueConfig = field(default_factory=QueueConfig)
    progress: ProgressConfig = field(default_factory=ProgressConfig)
    credits: CreditConfig = field(default_factory=CreditConfig)
    abandonment: AbandonmentConfig = field(default_factory=AbandonmentConfig)
    integrations: IntegrationConfig = field(default_factory=IntegrationConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} / ${VAR_NAME:-default} patterns with environment variable values."""
    pattern = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        if default is None:
            return os.environ.get(var_name, match.group(0))
        return os.environ.get(var_name) or default
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


def _section(cls, raw: Optional[dict[str, Any]]):
    """Build a config dataclass from a YAML section, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "BRANDFLOW_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = raw.get("debug", settings.debug)
        settings.environment = raw.get("environment", settings.environment)

        settings.queue = _section(QueueConfig, raw.get("queue"))
        settings.progress = _section(ProgressConfig, raw.get("progress"))
        settings.credits = _section(CreditConfig, raw.get("credits"))
        settings.abandonment = _section(AbandonmentConfig, raw.get("abandonment"))
        settings.integrations = _section(IntegrationConfig, raw.get("integrations"))
        settings.database = _section(DatabaseConfig, raw.get("database"))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings
