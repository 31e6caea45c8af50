"""
Operation Catalogue
===================

Every operation an actor can request is described once here: which
permission category it belongs to, whether it is sent to the device at all,
and which device-level gates apply to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from app.domain.exceptions import ValidationError
from app.enums.access import Operation, PermissionCategory


@dataclass(frozen=True)
class OperationSpec:
    operation: Operation
    category: PermissionCategory
    dispatched: bool
    requires_connectivity: bool
    remote_actuation: bool
    required_params: tuple[str, ...] = ()


def _actuation(op: Operation, *params: str) -> OperationSpec:
    return OperationSpec(
        operation=op,
        category=PermissionCategory.ACTUATE,
        dispatched=True,
        requires_connectivity=True,
        remote_actuation=True,
        required_params=params,
    )


def _administrative(op: Operation, category: PermissionCategory) -> OperationSpec:
    return OperationSpec(
        operation=op,
        category=category,
        dispatched=False,
        requires_connectivity=False,
        remote_actuation=False,
    )


OPERATION_SPECS: dict[Operation, OperationSpec] = {
    # Served from the state cache, so an offline device can still be read.
    Operation.READ_STATUS: OperationSpec(
        operation=Operation.READ_STATUS,
        category=PermissionCategory.READ_STATUS,
        dispatched=False,
        requires_connectivity=False,
        remote_actuation=False,
    ),
    Operation.LOCK: _actuation(Operation.LOCK),
    Operation.UNLOCK: _actuation(Operation.UNLOCK),
    Operation.AUTO_LOCK: _actuation(Operation.AUTO_LOCK),
    Operation.AUTO_UNLOCK: _actuation(Operation.AUTO_UNLOCK),
    Operation.TURN_ON: _actuation(Operation.TURN_ON),
    Operation.TURN_OFF: _actuation(Operation.TURN_OFF),
    Operation.SET_BRIGHTNESS: _actuation(Operation.SET_BRIGHTNESS, "brightness"),
    Operation.SET_TEMPERATURE: _actuation(Operation.SET_TEMPERATURE, "target_temperature"),
    Operation.SET_MODE: _actuation(Operation.SET_MODE, "mode"),
    Operation.CHANGE_SETTINGS: OperationSpec(
        operation=Operation.CHANGE_SETTINGS,
        category=PermissionCategory.CHANGE_SETTINGS,
        dispatched=True,
        requires_connectivity=True,
        remote_actuation=False,
        required_params=("settings",),
    ),
    Operation.MANAGE_ACCESS: _administrative(Operation.MANAGE_ACCESS, PermissionCategory.MANAGE_ACCESS),
    Operation.VIEW_ACCESS_HISTORY: _administrative(
        Operation.VIEW_ACCESS_HISTORY, PermissionCategory.VIEW_HISTORY
    ),
    Operation.RENAME: _administrative(Operation.RENAME, PermissionCategory.LIFECYCLE),
    Operation.REMOVE: _administrative(Operation.REMOVE, PermissionCategory.LIFECYCLE),
}


def spec_for(operation: Operation | str) -> OperationSpec:
    try:
        return OPERATION_SPECS[Operation(operation)]
    except ValueError as exc:
        raise ValidationError(f"Unknown operation: {operation}") from exc


@dataclass(frozen=True)
class DeviceCommand:
    """A single state-changing command sent to a device adapter."""

    operation: Operation
    params: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        spec = spec_for(self.operation)
        object.__setattr__(self, "operation", spec.operation)
        if not spec.dispatched:
            raise ValidationError(
                f"Operation '{spec.operation.value}' is not sent to devices",
                detail={"operation": spec.operation.value},
            )
        missing = [p for p in spec.required_params if self.params.get(p) is None]
        if missing:
            raise ValidationError(
                f"Operation '{spec.operation.value}' requires parameters: {', '.join(missing)}",
                detail={"missing": missing},
            )
        object.__setattr__(self, "params", dict(self.params))

    @property
    def spec(self) -> OperationSpec:
        return OPERATION_SPECS[self.operation]

    def to_dict(self) -> dict[str, Any]:
        return {"operation": self.operation.value, "params": dict(self.params)}
