"""
Enums Module
============

This module provides enumeration types for the TenantLock access core.
Enums ensure type safety and consistency across the codebase.
"""

from app.enums.access import (
    AccessOutcome,
    BusyPolicy,
    DenialReason,
    DeviceKind,
    EntityType,
    FailureReason,
    LockState,
    Operation,
    PermissionCategory,
    Role,
    ThermostatMode,
)

__all__ = [
    "AccessOutcome",
    "BusyPolicy",
    "DenialReason",
    "DeviceKind",
    "EntityType",
    "FailureReason",
    "LockState",
    "Operation",
    "PermissionCategory",
    "Role",
    "ThermostatMode",
]
