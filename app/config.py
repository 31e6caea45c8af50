"""
Configuration for the TenantLock access core
============================================
Runtime settings for authorization, dispatch, adapters and storage, loaded
from ``TENANTLOCK_*`` environment variables. Sets up the logging
configuration as well.
"""

import logging
import os
import sys
from contextlib import suppress
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable

from app.enums.access import BusyPolicy


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer.") from None


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number.") from None


_DEFAULT_SECRET_KEY = "TenantLockDevSecretKey"


@dataclass
class AppConfig:
    """Runtime configuration loaded from environment variables."""

    environment: str = field(default_factory=lambda: os.getenv("TENANTLOCK_ENV", "development"))
    DEBUG: bool = field(default_factory=lambda: _env_bool("TENANTLOCK_DEBUG", False))
    secret_key: str = field(default_factory=lambda: os.getenv("TENANTLOCK_SECRET_KEY", _DEFAULT_SECRET_KEY))
    database_path: str = field(default_factory=lambda: os.getenv("TENANTLOCK_DATABASE_PATH", "database/tenantlock.db"))
    audit_log_path: str = field(default_factory=lambda: os.getenv("TENANTLOCK_AUDIT_LOG_PATH", "logs/audit.log"))
    log_level: str = field(default_factory=lambda: os.getenv("TENANTLOCK_LOG_LEVEL", "INFO"))

    # Role association cache (0 disables it; revocations then apply immediately)
    role_cache_ttl_seconds: float = field(default_factory=lambda: _env_float("TENANTLOCK_ROLE_CACHE_TTL", 5.0))
    role_cache_maxsize: int = field(default_factory=lambda: _env_int("TENANTLOCK_ROLE_CACHE_MAXSIZE", 1024))

    # Dispatch
    dispatch_max_attempts: int = field(default_factory=lambda: _env_int("TENANTLOCK_DISPATCH_MAX_ATTEMPTS", 3))
    dispatch_backoff_base_seconds: float = field(
        default_factory=lambda: _env_float("TENANTLOCK_DISPATCH_BACKOFF_BASE", 0.5)
    )
    dispatch_backoff_max_seconds: float = field(
        default_factory=lambda: _env_float("TENANTLOCK_DISPATCH_BACKOFF_MAX", 8.0)
    )
    adapter_timeout_seconds: float = field(default_factory=lambda: _env_float("TENANTLOCK_ADAPTER_TIMEOUT", 10.0))
    busy_policy: str = field(default_factory=lambda: os.getenv("TENANTLOCK_BUSY_POLICY", "queue"))
    device_queue_depth: int = field(default_factory=lambda: _env_int("TENANTLOCK_DEVICE_QUEUE_DEPTH", 4))
    idempotency_short_circuit: bool = field(
        default_factory=lambda: _env_bool("TENANTLOCK_IDEMPOTENCY_SHORT_CIRCUIT", False)
    )
    idempotency_ttl_seconds: float = field(default_factory=lambda: _env_float("TENANTLOCK_IDEMPOTENCY_TTL", 3.0))
    dispatch_worker_count: int = field(default_factory=lambda: _env_int("TENANTLOCK_DISPATCH_WORKERS", 8))

    # Device state
    state_refresh_interval_seconds: float = field(
        default_factory=lambda: _env_float("TENANTLOCK_STATE_REFRESH_INTERVAL", 300.0)
    )
    state_history_per_device: int = field(default_factory=lambda: _env_int("TENANTLOCK_STATE_HISTORY", 20))

    # Adapters
    adapters_config_path: str = field(
        default_factory=lambda: os.getenv("TENANTLOCK_ADAPTERS_CONFIG", "config/adapters.json")
    )
    credential_cache_ttl_seconds: float = field(
        default_factory=lambda: _env_float("TENANTLOCK_CREDENTIAL_CACHE_TTL", 300.0)
    )
    enable_mqtt: bool = field(default_factory=lambda: _env_bool("TENANTLOCK_ENABLE_MQTT", False))
    mqtt_broker_host: str = field(default_factory=lambda: os.getenv("TENANTLOCK_MQTT_HOST", "localhost"))
    mqtt_broker_port: int = field(default_factory=lambda: _env_int("TENANTLOCK_MQTT_PORT", 1883))

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        # SECURITY: Fail fast if using default secret key in production
        if self.environment == "production" and self.secret_key == _DEFAULT_SECRET_KEY:
            raise RuntimeError(
                "SECURITY ERROR: Cannot use default secret key in production!\n"
                "Set TENANTLOCK_SECRET_KEY environment variable to a secure random value.\n"
                'Generate one with: python -c "import secrets; print(secrets.token_hex(32))"'
            )

    @property
    def busy_policy_enum(self) -> BusyPolicy:
        return BusyPolicy(self.busy_policy)

    def as_flask_config(self) -> dict[str, Any]:
        """Render configuration values for Flask application."""
        return {
            "ENV": self.environment,
            "SECRET_KEY": self.secret_key,
            "DATABASE_PATH": self.database_path,
            "AUDIT_LOG_PATH": self.audit_log_path,
            "DEBUG": self.DEBUG,
            "JSON_SORT_KEYS": False,
        }


def validate_config(config: AppConfig) -> list[str]:
    """
    Validate configuration and return list of warnings.

    Args:
        config: AppConfig instance

    Returns:
        List of warning messages (empty if all valid)

    Raises:
        ValueError: for settings the service cannot run with
    """
    try:
        BusyPolicy(config.busy_policy)
    except ValueError:
        raise ValueError(
            f"TENANTLOCK_BUSY_POLICY must be 'queue' or 'fail_fast', got {config.busy_policy!r}"
        ) from None
    if config.dispatch_max_attempts < 1:
        raise ValueError("TENANTLOCK_DISPATCH_MAX_ATTEMPTS must be at least 1")
    if config.adapter_timeout_seconds <= 0:
        raise ValueError("TENANTLOCK_ADAPTER_TIMEOUT must be positive")

    warnings = []

    if config.role_cache_ttl_seconds > 60:
        warnings.append(
            f"Role cache TTL ({config.role_cache_ttl_seconds}s) delays revocations by up to that long. "
            "Recommended: 0-10s"
        )
    if config.device_queue_depth < 1 and config.busy_policy_enum == BusyPolicy.QUEUE:
        warnings.append("Device queue depth below 1 makes the queue policy reject every concurrent command")
    if config.dispatch_backoff_max_seconds < config.dispatch_backoff_base_seconds:
        warnings.append("Backoff cap is below the base delay; every retry will wait the cap")
    if 0 < config.state_refresh_interval_seconds < 30:
        warnings.append(
            f"State refresh interval ({config.state_refresh_interval_seconds}s) is short and may hit vendor rate limits"
        )
    if config.adapters_config_path and not Path(config.adapters_config_path).exists():
        warnings.append(f"Adapter configuration file does not exist: {config.adapters_config_path}")

    return warnings


_CONSOLE_HANDLER = "tenantlock_console"
_FILE_HANDLER = "tenantlock_file"
_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Loggers that are chatty at DEBUG (one line per vendor request or MQTT packet).
_QUIET_LOGGERS = ("urllib3", "paho")


def setup_logging(debug: bool = False) -> None:
    """
    Attach console and rotating file handlers to the root logger.

    Safe to call repeatedly: handlers are found by name and only their level
    is updated. ``TENANTLOCK_LOG_TO_FILE=0`` skips ``logs/tenantlock.log``.
    """
    level = logging.DEBUG if debug else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    existing = {h.name: h for h in root.handlers if h.name}
    formatter = logging.Formatter(_LOG_FORMAT)

    wanted: dict[str, Callable[[], logging.Handler]] = {_CONSOLE_HANDLER: _console_handler}
    if _env_bool("TENANTLOCK_LOG_TO_FILE", True):
        wanted[_FILE_HANDLER] = _file_handler

    added = []
    for name, build in wanted.items():
        handler = existing.get(name)
        if handler is None:
            handler = build()
            handler.name = name
            handler.setFormatter(formatter)
            root.addHandler(handler)
            added.append(name)
        handler.setLevel(level)

    if added:
        root.info("Logging initialized at level %s (%s)", logging.getLevelName(level), ", ".join(added))

    if _env_bool("TENANTLOCK_SILENCE_WERKZEUG", True):
        logging.getLogger("werkzeug").setLevel(logging.WARNING)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _console_handler() -> logging.Handler:
    stream = sys.stdout
    with suppress(AttributeError, ValueError):
        stream.reconfigure(encoding="utf-8", errors="replace")
    return logging.StreamHandler(stream=stream)


def _file_handler() -> logging.Handler:
    Path("logs").mkdir(exist_ok=True)
    return RotatingFileHandler("logs/tenantlock.log", maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")


def load_config() -> AppConfig:
    """Build the configuration from the environment and log any warnings."""
    config = AppConfig()
    for warning in validate_config(config):
        logging.getLogger("config_loader").warning("Configuration: %s", warning)
    return config
