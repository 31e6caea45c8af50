"""
Access Decisions and Records
============================

``Decision`` is what the authorization engine returns; ``AccessRecord`` is
the immutable audit entry the dispatcher appends for every call.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from app.enums.access import AccessOutcome, DenialReason, Operation
from app.utils.time import to_iso


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenialReason | None = None
    matched_roles: tuple[str, ...] = ()
    via_guest_grant: bool = False

    @classmethod
    def allow(cls, matched_roles: tuple[str, ...] = (), *, via_guest_grant: bool = False) -> "Decision":
        return cls(allowed=True, matched_roles=matched_roles, via_guest_grant=via_guest_grant)

    @classmethod
    def deny(cls, reason: DenialReason, matched_roles: tuple[str, ...] = ()) -> "Decision":
        return cls(allowed=False, reason=reason, matched_roles=matched_roles)

    @property
    def message(self) -> str:
        if self.allowed:
            return "Allowed"
        return self.reason.message if self.reason else "Access denied"

    def __bool__(self) -> bool:
        return self.allowed

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason.value if self.reason else None,
            "message": self.message,
            "matched_roles": list(self.matched_roles),
            "via_guest_grant": self.via_guest_grant,
        }


@dataclass(frozen=True)
class AccessRecord:
    """
    One audit entry. Immutable once written.

    ``denial_reason`` is set for denied requests; ``failure_reason`` for
    granted requests that did not succeed (an adapter error kind, or one of
    busy / cancelled / interrupted). ``sequence`` is assigned by the sink on
    append and reflects append order.
    """

    device_id: str
    actor_id: str
    operation: Operation
    requested_at: datetime
    outcome: AccessOutcome
    denial_reason: DenialReason | None = None
    failure_reason: str | None = None
    completed_at: datetime | None = None
    attempts: int = 0
    details: dict[str, Any] = field(default_factory=dict, compare=False)
    sequence: int | None = None

    def __post_init__(self) -> None:
        if not isinstance(self.operation, Operation):
            object.__setattr__(self, "operation", Operation(self.operation))
        if not isinstance(self.outcome, AccessOutcome):
            object.__setattr__(self, "outcome", AccessOutcome(self.outcome))
        if self.denial_reason is not None and not isinstance(self.denial_reason, DenialReason):
            object.__setattr__(self, "denial_reason", DenialReason(self.denial_reason))
        if self.outcome == AccessOutcome.DENIED and self.denial_reason is None:
            raise ValueError("Denied access records need a denial reason")

    @property
    def succeeded(self) -> bool:
        return self.outcome == AccessOutcome.GRANTED_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "device_id": self.device_id,
            "actor_id": self.actor_id,
            "operation": self.operation.value,
            "requested_at": to_iso(self.requested_at),
            "completed_at": to_iso(self.completed_at),
            "outcome": self.outcome.value,
            "denial_reason": self.denial_reason.value if self.denial_reason else None,
            "failure_reason": self.failure_reason,
            "attempts": self.attempts,
            "details": dict(self.details),
        }
