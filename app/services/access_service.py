"""
Access Service
==============

Caller-facing facade over the authorization engine, the command dispatcher
and the audit log. The HTTP layer talks only to this class.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping

from app.domain.access import AccessRecord, Decision
from app.domain.device_state import DeviceSnapshot
from app.domain.exceptions import NotAuthorizedError, NotFoundError, ValidationError
from app.domain.roles import GuestGrant
from app.enums.access import BusyPolicy, DenialReason, Operation
from app.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from app.services.audit_log import AuditLog
    from app.services.authorization.engine import AuthorizationEngine
    from app.services.dispatch.dispatcher import CommandDispatcher
    from infrastructure.database.repositories.roles import CachedRoleAssociationStore

logger = logging.getLogger(__name__)


class AccessService:
    def __init__(
        self,
        engine: "AuthorizationEngine",
        dispatcher: "CommandDispatcher",
        audit: "AuditLog",
        roles: "CachedRoleAssociationStore",
    ):
        self.engine = engine
        self.dispatcher = dispatcher
        self.audit = audit
        self.roles = roles

    # --- Commands & status ----------------------------------------------------
    def dispatch(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation | str,
        params: Mapping[str, Any] | None = None,
        *,
        busy_policy: BusyPolicy | str | None = None,
        cancel: CancellationToken | None = None,
    ) -> DeviceSnapshot:
        return self.dispatcher.dispatch(
            actor_id, device_id, operation, params, busy_policy=busy_policy, cancel=cancel
        )

    def get_status(self, actor_id: str, device_id: str, *, refresh: bool = False) -> DeviceSnapshot:
        return self.dispatcher.read_status(actor_id, device_id, refresh=refresh)

    # --- Preflight ------------------------------------------------------------
    def explain(self, actor_id: str, device_id: str, operation: Operation | str) -> Decision:
        """The decision a dispatch would get right now, without dispatching."""
        device = self.dispatcher.load_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found", detail={"device_id": device_id})
        return self.engine.decide(actor_id, device, operation)

    def can_perform(self, actor_id: str, device_id: str, operation: Operation | str) -> bool:
        return self.explain(actor_id, device_id, operation).allowed

    def permissions(self, actor_id: str, device_id: str) -> dict[Operation, Decision]:
        """Decision for every operation on one device (UI preflight)."""
        device = self.dispatcher.load_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found", detail={"device_id": device_id})
        return {op: self.engine.decide(actor_id, device, op) for op in Operation}

    def _require(self, actor_id: str, device_id: str, operation: Operation) -> None:
        decision = self.explain(actor_id, device_id, operation)
        if not decision.allowed:
            raise NotAuthorizedError(decision)

    # --- History --------------------------------------------------------------
    def access_history(self, actor_id: str, device_id: str, limit: int = 50) -> list[AccessRecord]:
        """Most recent access records for a device; needs ``view_access_history``."""
        self._require(actor_id, device_id, Operation.VIEW_ACCESS_HISTORY)
        return self.audit.history(device_id, limit)

    def audit_query(
        self,
        actor_id: str,
        *,
        device_id: str | None = None,
        subject_id: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 100,
    ) -> list[AccessRecord]:
        """
        Filtered audit query.

        With ``device_id`` the caller needs ``view_access_history`` on that
        device and may filter by any subject. Without it, callers only see
        their own records.
        """
        if device_id is not None:
            self._require(actor_id, device_id, Operation.VIEW_ACCESS_HISTORY)
        elif subject_id not in (None, actor_id):
            raise NotAuthorizedError(Decision.deny(DenialReason.INSUFFICIENT_ROLE))
        else:
            subject_id = actor_id
        return self.audit.query(device_id=device_id, actor_id=subject_id, since=since, until=until, limit=limit)

    # --- Guest grants ---------------------------------------------------------
    def issue_guest_grant(
        self,
        actor_id: str,
        guest_id: str,
        device_ids: Iterable[str],
        valid_from: datetime,
        valid_until: datetime,
    ) -> GuestGrant:
        """Issue a time-boxed grant; the issuer needs ``manage_access`` on every device."""
        device_ids = sorted(set(device_ids))
        if not device_ids:
            raise ValidationError("A guest grant needs at least one device")
        if valid_until < valid_from:
            raise ValidationError("valid_until must not precede valid_from")
        for device_id in device_ids:
            self._require(actor_id, device_id, Operation.MANAGE_ACCESS)

        grant = self.roles.issue_guest_grant(guest_id, device_ids, valid_from, valid_until, created_by=actor_id)
        logger.info(
            "Guest grant %s issued by %s to %s for %d device(s)",
            grant.grant_id,
            actor_id,
            guest_id,
            len(device_ids),
        )
        return grant

    def revoke_guest_grant(self, actor_id: str, grant_id: int) -> None:
        grant = self.roles.get_guest_grant(grant_id)
        if grant is None:
            raise NotFoundError(f"Guest grant {grant_id} not found", detail={"grant_id": grant_id})
        if not self.engine.can_manage_guest_grant(actor_id, grant):
            logger.info("Actor %s may not revoke guest grant %s", actor_id, grant_id)
            raise NotAuthorizedError(Decision.deny(DenialReason.INSUFFICIENT_ROLE))
        self.roles.revoke_guest_grant(grant_id)
        logger.info("Guest grant %s revoked by %s", grant_id, actor_id)
