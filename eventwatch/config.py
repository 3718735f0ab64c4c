"""
Configuration loading and validation.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    pass


@dataclass
class DatabaseConfig:
    """Database configuration."""

    path: str = "data/eventwatch.db"


@dataclass
class ScheduleConfig:
    """Schedule configuration."""

    timezone: str = "America/New_York"
    cycle_interval_minutes: int = 15


@dataclass
class DispatchConfig:
    """Dispatch cycle tuning."""

    max_workers: int = 4
    channel_timeout_seconds: float = 10.0
    upcoming_limit: int = 50


@dataclass
class LedgerConfig:
    """Dedup ledger retention."""

    retention_margin_days: int = 7
    prune_each_cycle: bool = True


@dataclass
class EmailNotificationConfig:
    """Email notification settings."""

    enabled: bool = True
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    from_address: str = ""


@dataclass
class PushNotificationConfig:
    """Push gateway settings."""

    enabled: bool = True
    auth_token: str = ""
    ttl_seconds: int = 86400


@dataclass
class ChatNotificationConfig:
    """Telegram bot settings."""

    enabled: bool = True
    bot_token: str = ""


@dataclass
class NotificationsConfig:
    """Notifications configuration."""

    email: EmailNotificationConfig = field(default_factory=EmailNotificationConfig)
    push: PushNotificationConfig = field(default_factory=PushNotificationConfig)
    chat: ChatNotificationConfig = field(default_factory=ChatNotificationConfig)


@dataclass
class AdvancedConfig:
    """Advanced configuration."""

    log_level: str = "INFO"


@dataclass
class AppConfig:
    """Main application configuration."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    dispatch: DispatchConfig = field(default_factory=DispatchConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    advanced: AdvancedConfig = field(default_factory=AdvancedConfig)
    # None = built-in calendar
    events: Optional[list[dict[str, Any]]] = None


def _substitute_env_vars(value: Any) -> Any:
    """Substitute environment variables in string values."""
    if isinstance(value, str):
        # Match ${VAR_NAME} pattern
        pattern = r"\$\{([^}]+)\}"
        matches = re.findall(pattern, value)
        for var_name in matches:
            env_value = os.environ.get(var_name, "")
            value = value.replace(f"${{{var_name}}}", env_value)
        return value
    elif isinstance(value, dict):
        return {k: _substitute_env_vars(v) for k, v in value.items()}
    elif isinstance(value, list):
        return [_substitute_env_vars(item) for item in value]
    return value


def _validate_timezone(timezone: str) -> None:
    """Validate timezone string."""
    if not timezone:
        raise ConfigValidationError("Timezone cannot be empty")
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        raise ConfigValidationError(f"Unknown timezone: {timezone}")


def _validate_config(config_dict: dict[str, Any]) -> None:
    """Validate configuration values."""
    # Check database path is provided
    db_config = config_dict.get("database") or {}
    db_path = db_config.get("path")
    if not db_path:
        raise ConfigValidationError("Database path is required")

    path = Path(db_path)
    parent = path.parent
    if parent.exists() and not os.access(parent, os.W_OK):
        raise ConfigValidationError(f"Database path not writable: {parent}")

    schedule = config_dict.get("schedule") or {}
    _validate_timezone(schedule.get("timezone", "America/New_York"))
    if int(schedule.get("cycle_interval_minutes", 15)) <= 0:
        raise ConfigValidationError("cycle_interval_minutes must be positive")

    dispatch = config_dict.get("dispatch") or {}
    if int(dispatch.get("max_workers", 4)) <= 0:
        raise ConfigValidationError("dispatch.max_workers must be positive")
    if float(dispatch.get("channel_timeout_seconds", 10.0)) <= 0:
        raise ConfigValidationError("dispatch.channel_timeout_seconds must be positive")

    ledger = config_dict.get("ledger") or {}
    if int(ledger.get("retention_margin_days", 7)) < 0:
        raise ConfigValidationError("ledger.retention_margin_days cannot be negative")

    events = config_dict.get("events")
    if events is not None and not isinstance(events, list):
        raise ConfigValidationError("events must be a list of event types")


def load_config(config_path: str) -> AppConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to configuration file

    Returns:
        AppConfig instance

    Raises:
        ConfigValidationError: If configuration is invalid
        FileNotFoundError: If config file doesn't exist
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(path) as f:
        raw_config = yaml.safe_load(f) or {}

    # Substitute environment variables
    config_dict = _substitute_env_vars(raw_config)

    # Validate
    _validate_config(config_dict)

    try:
        database = DatabaseConfig(**config_dict.get("database", {}))
        schedule = ScheduleConfig(**(config_dict.get("schedule") or {}))
        dispatch = DispatchConfig(**(config_dict.get("dispatch") or {}))
        ledger = LedgerConfig(**(config_dict.get("ledger") or {}))

        # Notifications
        notif_dict = config_dict.get("notifications") or {}
        notifications = NotificationsConfig(
            email=EmailNotificationConfig(**(notif_dict.get("email") or {})),
            push=PushNotificationConfig(**(notif_dict.get("push") or {})),
            chat=ChatNotificationConfig(**(notif_dict.get("chat") or {})),
        )

        advanced = AdvancedConfig(**(config_dict.get("advanced") or {}))
    except TypeError as e:
        raise ConfigValidationError(f"Unknown configuration key: {e}")

    return AppConfig(
        database=database,
        schedule=schedule,
        dispatch=dispatch,
        ledger=ledger,
        notifications=notifications,
        advanced=advanced,
        events=config_dict.get("events"),
    )
