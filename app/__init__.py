from __future__ import annotations

import atexit
import contextlib
import logging
import signal
import threading
from typing import Any

from flask import Flask, request
from werkzeug.exceptions import HTTPException

from app.config import AppConfig, load_config, setup_logging

logger = logging.getLogger(__name__)


def _apply_overrides(config: AppConfig, overrides: dict[str, Any] | None) -> AppConfig:
    for key, value in (overrides or {}).items():
        name = key if key == "DEBUG" else key.lower()
        if not hasattr(config, name):
            raise ValueError(f"Unknown configuration key: {key}")
        setattr(config, name, value)
    return config


def create_app(
    config_overrides: dict[str, Any] | None = None,
    *,
    bootstrap_runtime: bool = False,
    adapters=None,
) -> Flask:
    """
    Build the Flask application around a freshly wired ServiceContainer.

    Args:
        config_overrides: AppConfig fields to override (keys are case-insensitive)
        bootstrap_runtime: Initialize adapters, start the state refresher and
            install signal handlers
        adapters: Pre-built AdapterRegistry (tests)
    """
    from app.blueprints.api.access import access_api
    from app.services.container import ServiceContainer

    config = _apply_overrides(load_config(), config_overrides)
    setup_logging(debug=config.DEBUG)

    flask_app = Flask(__name__)
    flask_app.config.update(config.as_flask_config())

    container = ServiceContainer.build(config, start_background=bootstrap_runtime, adapters=adapters)
    flask_app.config["CONTAINER"] = container
    if bootstrap_runtime:
        _ShutdownHook(container).install()

    flask_app.register_blueprint(access_api, url_prefix="/api/access")
    flask_app.register_error_handler(Exception, _api_error)
    flask_app.add_url_rule("/api/health", "health", lambda: _health(container))

    logger.info("TenantLock access core initialized (%d adapter(s))", len(container.adapters))
    return flask_app


def _api_error(exc: Exception):
    """JSON envelope for anything an /api route did not handle itself."""
    if not request.path.startswith("/api/"):
        raise exc
    from app.domain.exceptions import TenantLockError
    from app.utils.http import error_response, safe_error

    if isinstance(exc, HTTPException):
        status = exc.code or 500
        message = exc.description or "Request failed"
    elif isinstance(exc, TenantLockError):
        status = exc.http_status
        message = str(exc) or "Request failed"
    else:
        return safe_error(exc, 500, context="unhandled")
    if status >= 500:
        return safe_error(exc, status, context=type(exc).__name__)
    return error_response(message, status)


def _health(container):
    from app.utils.http import success_response

    return success_response(
        {
            "adapters": len(container.adapters),
            "cached_devices": len(container.state_cache),
            "refresher": container.state_refresher.get_status(),
            "locks": container.dispatcher.locks.stats(),
        }
    )


class _ShutdownHook:
    """Stops the container exactly once on SIGINT, SIGTERM or interpreter exit."""

    def __init__(self, container) -> None:
        self.container = container
        self._lock = threading.Lock()
        self._done = False

    def install(self) -> None:
        atexit.register(self.run, "atexit")
        for sig in (signal.SIGINT, signal.SIGTERM):
            # Only the main thread may install signal handlers.
            with contextlib.suppress(OSError, ValueError):
                signal.signal(sig, self._on_signal)

    def run(self, reason: str) -> None:
        with self._lock:
            if self._done:
                return
            self._done = True
        logger.info("Graceful shutdown initiated (%s)", reason)
        try:
            self.container.shutdown()
        except Exception as exc:
            logger.warning("Error during graceful shutdown: %s", exc)

    def _on_signal(self, signum: int, _frame: object) -> None:
        self.run(signal.Signals(signum).name)
        raise SystemExit(0)


__all__ = ["create_app"]
