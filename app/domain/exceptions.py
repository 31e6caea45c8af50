"""Centralized exception hierarchy for TenantLock.

All domain and service exceptions inherit from :class:`TenantLockError` so that
callers can catch a single base class when they need a broad safety net, yet
still match on specific subclasses where narrower handling is appropriate.

Blueprint-level error handling (see ``app/utils/http.safe_route``) maps these
to the correct HTTP status codes automatically.

Hierarchy
---------
::

    TenantLockError (base: maps to 500)
    ├── ValidationError          (400: bad input from caller)
    ├── NotAuthorizedError       (403: policy denial, carries the Decision)
    ├── NotFoundError            (404: entity does not exist)
    ├── BusyError                (409: device already has a dispatch in flight)
    ├── DispatchCancelledError   (499: caller cancelled the dispatch)
    ├── DataIntegrityError       (500: containment chain cannot be resolved)
    ├── ServiceError             (500: business-logic failure)
    │   ├── RepositoryError      (500: database / persistence)
    │   └── AdapterFailedError   (502: vendor call failed after retries)
    └── ConfigurationError       (500: missing / invalid config)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from app.domain.access import Decision
    from app.hardware.adapters.base_adapter import AdapterError


class TenantLockError(Exception):
    """Base exception for all TenantLock application errors.

    Parameters
    ----------
    message:
        Human-readable description (logged server-side, **not** leaked to
        the HTTP client unless the exception class opts in).
    detail:
        Optional machine-readable context dict attached to the error for
        structured logging.
    """

    http_status: int = 500

    def __init__(self, message: str = "", *, detail: dict | None = None) -> None:
        super().__init__(message)
        self.detail = detail or {}


# ── Client errors (4xx) ──────────────────────────────────────────────


class ValidationError(TenantLockError):
    """Caller supplied invalid or incomplete input (HTTP 400)."""

    http_status: int = 400


class NotAuthorizedError(TenantLockError):
    """The authorization engine denied the request (HTTP 403).

    The message is the human-readable denial reason and is safe to show
    to the caller verbatim.
    """

    http_status: int = 403

    def __init__(self, decision: "Decision") -> None:
        super().__init__(
            decision.message,
            detail={"reason": decision.reason.value if decision.reason else None},
        )
        self.decision = decision


class NotFoundError(TenantLockError):
    """Requested entity does not exist (HTTP 404)."""

    http_status: int = 404


class BusyError(TenantLockError):
    """Another dispatch for the same device is in flight (HTTP 409)."""

    http_status: int = 409


class DispatchCancelledError(TenantLockError):
    """The caller cancelled an in-flight dispatch."""

    http_status: int = 499


# ── Server errors (5xx) ──────────────────────────────────────────────


class DataIntegrityError(TenantLockError):
    """A device's containment chain cannot be resolved (HTTP 500).

    Distinct from a denial: the request could not be evaluated at all.
    """

    http_status: int = 500


class ServiceError(TenantLockError):
    """Business-logic failure in a service method (HTTP 500)."""

    http_status: int = 500


class RepositoryError(ServiceError):
    """Database / persistence layer failure (HTTP 500)."""

    http_status: int = 500


class AdapterFailedError(ServiceError):
    """A vendor call failed after the retry policy was exhausted (HTTP 502)."""

    http_status: int = 502

    def __init__(self, message: str, *, last_error: "AdapterError", attempts: int) -> None:
        super().__init__(
            message,
            detail={"kind": last_error.kind.value, "attempts": attempts},
        )
        self.last_error = last_error
        self.attempts = attempts


class ConfigurationError(TenantLockError):
    """Missing or invalid application configuration (HTTP 500)."""

    http_status: int = 500
