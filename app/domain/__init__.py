"""
Domain Value Objects Package
=============================
Immutable records for the ownership hierarchy, grants, device state and
audit entries. No I/O happens in this package.
"""

from .access import AccessRecord, Decision
from .device_state import (
    DeviceSnapshot,
    LightPayload,
    LockPayload,
    SwitchPayload,
    ThermostatPayload,
    apply_command,
    is_state_assertion,
    payload_from_dict,
    snapshot_to_dict,
    supported_operations,
)
from .hierarchy import ContainmentChain, Device, Portfolio, Property, Unit
from .operations import OPERATION_SPECS, DeviceCommand, OperationSpec, spec_for
from .roles import GuestGrant, RoleAssociation

__all__ = [
    # Hierarchy
    "Portfolio",
    "Property",
    "Unit",
    "Device",
    "ContainmentChain",
    # Grants
    "RoleAssociation",
    "GuestGrant",
    # Operations
    "OperationSpec",
    "OPERATION_SPECS",
    "DeviceCommand",
    "spec_for",
    # Device state
    "DeviceSnapshot",
    "LockPayload",
    "ThermostatPayload",
    "LightPayload",
    "SwitchPayload",
    "apply_command",
    "is_state_assertion",
    "payload_from_dict",
    "snapshot_to_dict",
    "supported_operations",
    # Audit
    "Decision",
    "AccessRecord",
]
