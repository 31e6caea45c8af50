"""
Role Associations and Guest Grants

Grants are stored exactly as issued. Nothing here implies access on lower
levels of the hierarchy; the authorization engine computes that by walking
the containment chain.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from app.enums.access import DenialReason, EntityType, Role


@dataclass(frozen=True)
class RoleAssociation:
    actor_id: str
    entity_type: EntityType
    entity_id: str
    role: Role

    def __post_init__(self) -> None:
        if not isinstance(self.entity_type, EntityType):
            object.__setattr__(self, "entity_type", EntityType(self.entity_type))
        if not isinstance(self.role, Role):
            object.__setattr__(self, "role", Role(self.role))

    def describe(self) -> str:
        return f"{self.role.value}@{self.entity_type.value}:{self.entity_id}"


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class GuestGrant:
    """
    Time-boxed access to an explicit list of devices.

    Independent of where those devices sit in the hierarchy. The window is
    inclusive on both ends.
    """

    actor_id: str
    valid_from: datetime
    valid_until: datetime
    device_ids: frozenset[str] = field(default_factory=frozenset)
    grant_id: int | None = None
    created_by: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "valid_from", _as_utc(self.valid_from))
        object.__setattr__(self, "valid_until", _as_utc(self.valid_until))
        if not isinstance(self.device_ids, frozenset):
            object.__setattr__(self, "device_ids", frozenset(self.device_ids))
        if self.valid_until < self.valid_from:
            raise ValueError("Guest grant valid_until precedes valid_from")

    def covers(self, device_id: str) -> bool:
        return device_id in self.device_ids

    def window_problem(self, now: datetime) -> DenialReason | None:
        """Return why the window rejects *now*, or ``None`` when *now* is inside it."""
        now = _as_utc(now)
        if now < self.valid_from:
            return DenialReason.GUEST_WINDOW_NOT_STARTED
        if now > self.valid_until:
            return DenialReason.GUEST_WINDOW_EXPIRED
        return None

    def is_active(self, now: datetime) -> bool:
        return self.window_problem(now) is None
