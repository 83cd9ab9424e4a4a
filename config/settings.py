"""
Configuration loader for the TaskBoard accounts service.
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
class AuthConfig:
    access_token_secret: str = "change-me-access"
    access_token_life: int = 3600              # seconds
    refresh_token_secret: str = "change-me-refresh"
    refresh_token_life: int = 1209600          # 14 days
    algorithm: str = "HS256"


@dataclass
class DatabaseConfig:
    store_backend: str = "memory"              # "memory" | "file"
    store_file_dir: str = "./data"             # directory for file backend


@dataclass
class QueueConfig:
    backend: str = "memory"                    # "memory" for dev, "redis" for production
    redis_url: str = "redis://localhost:6379"
    propagation_queue: str = "update_cards_comments"
    max_attempts: int = 3
    backoff_delay_ms: int = 1000
    backoff_type: str = "fixed"                # "fixed" | "exponential"
    consumer_group: str = "taskboard-workers"
    concurrency: int = 1                       # max in-flight jobs per worker
    delayed_promote_interval: float = 0.5      # seconds between delayed-queue scans
    stalled_timeout_ms: int = 30000            # reclaim pending jobs idle longer than this
    embedded_worker: bool = True               # API process also consumes; false when a separate worker runs


@dataclass
class MailConfig:
    provider: str = "log"                      # "log" | "brevo"
    api_key: str = ""
    api_url: str = "https://api.brevo.com/v3/smtp/email"
    sender_email: str = "no-reply@taskboard.local"
    sender_name: str = "TaskBoard"


@dataclass
class UploadConfig:
    provider: str = "local"                    # "local" | "cloudinary"
    local_dir: str = "./uploads"
    public_base_url: str = "http://localhost:8000/uploads"
    cloudinary_cloud_name: str = ""
    cloudinary_upload_preset: str = ""
    max_avatar_bytes: int = 10 * 1024 * 1024
    allowed_content_types: list[str] = field(
        default_factory=lambda: ["image/jpeg", "image/png", "image/jpg", "image/webp"]
    )


@dataclass
class Settings:
    app_name: str = "TaskBoard Accounts"
    debug: bool = False
    log_level: str = "INFO"
    website_domain: str = "http://localhost:5173"
    auth: AuthConfig = field(default_factory=AuthConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    mail: MailConfig = field(default_factory=MailConfig)
    upload: UploadConfig = field(default_factory=UploadConfig)


_settings: Optional[Settings] = None


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR_NAME} and ${VAR_NAME:-default} patterns with environment values."""
    pattern = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")
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


def _build_section(cls, raw: dict[str, Any]):
    """Instantiate a config dataclass from a dict, ignoring unknown keys."""
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in known})


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "TASKBOARD_CONFIG",
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
        settings.website_domain = raw.get("website_domain", settings.website_domain)

        if "auth" in raw:
            settings.auth = _build_section(AuthConfig, raw["auth"])
        if "database" in raw:
            settings.database = _build_section(DatabaseConfig, raw["database"])
        if "queue" in raw:
            settings.queue = _build_section(QueueConfig, raw["queue"])
        if "mail" in raw:
            settings.mail = _build_section(MailConfig, raw["mail"])
        if "upload" in raw:
            settings.upload = _build_section(UploadConfig, raw["upload"])

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
