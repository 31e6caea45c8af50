"""
JSON envelope helpers for the access API.

Every response has the shape ``{"ok": bool, "data": ..., "error": ...}``.
Errors carry a short message and, where safe, machine-readable details such
as a denial reason or an adapter error kind. Exception text from vendors,
SQLite or Python internals is logged and never returned.
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable

from flask import Response, jsonify
from pydantic import ValidationError as PydanticValidationError

from app.utils.time import iso_now

_log = logging.getLogger(__name__)

_STATUS_MESSAGES: dict[int, str] = {
    400: "Invalid request",
    403: "Access denied",
    404: "Resource not found",
    409: "Device is busy",
    499: "Request cancelled",
    500: "An internal error occurred",
    502: "The device vendor did not complete the request",
}


def _envelope(ok: bool, data: Any, error: dict | None, status: int, **extra: Any) -> Response:
    body: dict[str, Any] = {"ok": ok, "data": data, "error": error}
    body.update({k: v for k, v in extra.items() if v is not None})
    response = jsonify(body)
    response.status_code = status
    return response


def success_response(data: dict | list | None = None, status: int = 200, *, message: str | None = None) -> Response:
    return _envelope(True, data, None, status, message=message)


def error_response(message: str, status: int = 500, *, details: dict | None = None) -> Response:
    """
    Error envelope.

    ``details`` is merged into the ``error`` object and repeated under a
    top-level ``details`` key for clients that only read that.
    """
    error = {"message": message, "timestamp": iso_now(), **(details or {})}
    return _envelope(False, None, error, status, message=message, details=details or None)


def safe_error(exc: BaseException, status: int = 500, *, context: str = "", details: dict | None = None) -> Response:
    """Log *exc* with its traceback and answer with the generic message for *status*."""
    _log.error("API error [%s] %s: %s", status, context, exc, exc_info=exc)
    return error_response(_STATUS_MESSAGES.get(status, _STATUS_MESSAGES[500]), status, details=details)


def _field_errors(exc: PydanticValidationError) -> list[dict[str, Any]]:
    return [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]


def safe_route(error_message: str = "An internal error occurred", *, error_status: int = 500) -> Callable:
    """
    Map exceptions raised by a route to envelopes.

    - pydantic validation errors: 400 with per-field messages
    - ``AdapterFailedError``: 502 carrying only the adapter error kind
    - other ``TenantLockError``: ``exc.http_status``; 4xx keep their message and detail
    - anything else: *error_status* with a generic message

    Usage::

        @access_api.get("/devices/<device_id>/status")
        @safe_route("Failed to read device status")
        def device_status(device_id): ...
    """
    from app.domain.exceptions import AdapterFailedError, TenantLockError

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Response:
            try:
                return fn(*args, **kwargs)
            except PydanticValidationError as exc:
                return error_response("Invalid request", 400, details={"errors": _field_errors(exc)})
            except AdapterFailedError as exc:
                kind = exc.last_error.kind.value
                return safe_error(exc, exc.http_status, context=error_message, details={"kind": kind})
            except TenantLockError as exc:
                if exc.http_status >= 500:
                    return safe_error(exc, exc.http_status, context=error_message)
                return error_response(str(exc) or error_message, exc.http_status, details=exc.detail or None)
            except Exception as exc:
                return safe_error(exc, error_status, context=error_message)

        return wrapper

    return decorator
