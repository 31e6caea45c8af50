"""
Authorization Engine
====================

Decides whether an actor may perform an operation on a device.

The engine walks the device's containment chain (Unit → Property →
Portfolio) and matches the actor's role associations against it. Storage
never implies inheritance; every "higher level covers lower level" answer is
computed here. Default is deny.

Evaluation order:
    1. Resolve the chain; failure is a DataIntegrityError, not a denial.
    2. Match role associations effective at their scope and union their
       permission categories.
    3. Only when nothing matched, evaluate guest grants.
    4. Check that the device kind supports the operation.
    5. Apply device gates (remote operation, connectivity).

A role denial is reported in preference to a device-gate denial so callers
see the more fundamental problem first.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from app.domain.access import Decision
from app.domain.device_state import supported_operations
from app.domain.exceptions import DataIntegrityError, NotFoundError
from app.domain.hierarchy import ContainmentChain, Device
from app.domain.operations import spec_for
from app.domain.roles import GuestGrant, RoleAssociation
from app.enums.access import DenialReason, EntityType, Operation, PermissionCategory
from app.services.authorization.permissions import (
    GRANT_MANAGER_ROLES,
    GUEST_OPERATIONS,
    categories_for,
    is_effective,
)
from app.utils.time import utc_now

if TYPE_CHECKING:
    from app.services.protocols import EntityStore, RoleAssociationStore

logger = logging.getLogger(__name__)


class AuthorizationEngine:
    """Pure policy evaluation over the entity and role stores (read-only)."""

    def __init__(
        self,
        entities: "EntityStore",
        roles: "RoleAssociationStore",
        *,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Args:
            entities: Entity store used to resolve containment chains
            roles: Role association store (usually the TTL-cached wrapper)
            clock: Wall-clock source, only consulted for guest windows
        """
        self.entities = entities
        self.roles = roles
        self._clock = clock

    # ------------------------------------------------------------------
    # Chain resolution
    # ------------------------------------------------------------------

    def resolve_chain(self, device: Device) -> ContainmentChain:
        """
        Resolve the Unit / Property / Portfolio ancestors of *device*.

        Raises:
            DataIntegrityError: device is orphaned or an ancestor is missing
        """
        unit_id = None
        if device.unit_id:
            unit = self.entities.get_unit(device.unit_id)
            if unit is None:
                raise self._integrity_error(device, f"unit {device.unit_id} does not exist")
            unit_id = unit.id
            property_id = unit.property_id
        elif device.property_id:
            property_id = device.property_id
        else:
            raise self._integrity_error(device, "device is not attached to a unit or property")

        prop = self.entities.get_property(property_id)
        if prop is None:
            raise self._integrity_error(device, f"property {property_id} does not exist")

        portfolio = self.entities.get_portfolio_for_property(prop.id)
        if portfolio is None:
            raise self._integrity_error(device, f"property {prop.id} has no portfolio")

        return ContainmentChain(
            device_id=device.id,
            unit_id=unit_id,
            property_id=prop.id,
            portfolio_id=portfolio.id,
        )

    @staticmethod
    def _integrity_error(device: Device, problem: str) -> DataIntegrityError:
        logger.error("Containment chain for device %s cannot be resolved: %s", device.id, problem)
        return DataIntegrityError(
            f"Containment chain for device {device.id} cannot be resolved: {problem}",
            detail={"device_id": device.id},
        )

    @staticmethod
    def matches(association: RoleAssociation, chain: ContainmentChain) -> bool:
        """True when *association* is scoped to an entity on *chain* at its natural level."""
        if not is_effective(association.role, association.entity_type):
            return False
        if association.entity_type == EntityType.UNIT:
            return chain.unit_id is not None and association.entity_id == chain.unit_id
        if association.entity_type == EntityType.PROPERTY:
            return association.entity_id == chain.property_id
        return association.entity_id == chain.portfolio_id

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def decide(
        self,
        actor_id: str,
        device: Device,
        operation: Operation | str,
        *,
        now: datetime | None = None,
    ) -> Decision:
        """
        Decide whether *actor_id* may perform *operation* on *device*.

        Args:
            actor_id: Requesting actor
            device: Device record with current connectivity applied
            operation: Requested operation
            now: Evaluation time for guest windows (defaults to the clock)

        Returns:
            Decision carrying the denial reason when not allowed

        Raises:
            DataIntegrityError: the device's chain cannot be resolved
            ValidationError: unknown operation
        """
        spec = spec_for(operation)
        chain = self.resolve_chain(device)

        decision = self._role_decision(actor_id, device, chain, spec.operation, spec.category, now)
        if not decision.allowed:
            logger.info(
                "Denied %s on device %s for actor %s: %s",
                spec.operation.value,
                device.id,
                actor_id,
                decision.reason.value if decision.reason else "unknown",
            )
            return decision

        gate = self._device_gate(device, spec.operation)
        if gate is not None:
            logger.info(
                "Denied %s on device %s for actor %s: %s",
                spec.operation.value,
                device.id,
                actor_id,
                gate.value,
            )
            return Decision.deny(gate, decision.matched_roles)
        return decision

    def can_perform(self, actor_id: str, device: Device, operation: Operation | str) -> bool:
        return self.decide(actor_id, device, operation).allowed

    def decide_by_id(self, actor_id: str, device_id: str, operation: Operation | str) -> Decision:
        device = self.entities.get_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found", detail={"device_id": device_id})
        return self.decide(actor_id, device, operation)

    def _role_decision(
        self,
        actor_id: str,
        device: Device,
        chain: ContainmentChain,
        operation: Operation,
        category: PermissionCategory,
        now: datetime | None,
    ) -> Decision:
        matched = [a for a in self.roles.get_associations(actor_id) if self.matches(a, chain)]
        if matched:
            labels = tuple(a.describe() for a in matched)
            granted: set[PermissionCategory] = set()
            for association in matched:
                granted |= categories_for(association.role)
            if category not in granted:
                return Decision.deny(DenialReason.INSUFFICIENT_ROLE, labels)
            return Decision.allow(labels)

        return self._guest_decision(actor_id, device, operation, now or self._clock())

    def _guest_decision(self, actor_id: str, device: Device, operation: Operation, now: datetime) -> Decision:
        covering = [g for g in self.roles.get_guest_grants(actor_id) if g.covers(device.id)]
        if not covering:
            return Decision.deny(DenialReason.NO_MATCHING_ROLE)

        problems = []
        for grant in covering:
            problem = grant.window_problem(now)
            if problem is None:
                if operation not in GUEST_OPERATIONS:
                    return Decision.deny(DenialReason.INSUFFICIENT_ROLE, ("guest",))
                return Decision.allow(("guest",), via_guest_grant=True)
            problems.append(problem)

        if DenialReason.GUEST_WINDOW_NOT_STARTED in problems:
            return Decision.deny(DenialReason.GUEST_WINDOW_NOT_STARTED)
        return Decision.deny(DenialReason.GUEST_WINDOW_EXPIRED)

    @staticmethod
    def _device_gate(device: Device, operation: Operation) -> DenialReason | None:
        spec = spec_for(operation)
        if operation not in supported_operations(device.kind):
            return DenialReason.UNSUPPORTED_OPERATION
        if spec.remote_actuation and not device.remote_operation_enabled:
            return DenialReason.REMOTE_OPERATION_DISABLED
        if spec.requires_connectivity and not device.is_online:
            return DenialReason.DEVICE_OFFLINE
        return None

    # ------------------------------------------------------------------
    # Guest grant administration
    # ------------------------------------------------------------------

    def can_manage_guest_grant(self, actor_id: str, grant: GuestGrant) -> bool:
        """
        Whether *actor_id* may revoke or amend *grant*.

        The creator may always manage their own grant. Anyone else needs a
        manager role (PropertyManager, PortfolioAdmin or Owner) whose scope
        covers every device on the grant, whoever created it.
        """
        if grant.created_by and grant.created_by == actor_id:
            return True

        associations = [
            a for a in self.roles.get_associations(actor_id) if a.role in GRANT_MANAGER_ROLES
        ]
        if not associations or not grant.device_ids:
            return False

        checked = 0
        for device_id in grant.device_ids:
            device = self.entities.get_device(device_id)
            if device is None:
                # A device that no longer exists cannot be misused; skip it.
                continue
            try:
                chain = self.resolve_chain(device)
            except DataIntegrityError:
                return False
            if not any(self.matches(a, chain) for a in associations):
                return False
            checked += 1
        return checked > 0
