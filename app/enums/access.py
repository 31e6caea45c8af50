"""
Access Control Enumerations
===========================

Enums shared by the authorization engine, the command dispatcher and the
audit log. Values are persisted verbatim in SQLite and in the JSON audit
stream, so they must stay stable.
"""

from enum import Enum


class EntityType(str, Enum):
    """Level of the ownership hierarchy a role association is scoped to."""

    PORTFOLIO = "portfolio"
    PROPERTY = "property"
    UNIT = "unit"

    def __str__(self) -> str:
        return self.value


class Role(str, Enum):
    """Role held by an actor on one entity."""

    OWNER = "owner"
    PORTFOLIO_ADMIN = "portfolio_admin"
    PROPERTY_MANAGER = "property_manager"
    TENANT = "tenant"
    GUEST = "guest"

    def __str__(self) -> str:
        return self.value


class DeviceKind(str, Enum):
    """Device kinds; each one has its own payload in app.domain.device_state."""

    LOCK = "lock"
    THERMOSTAT = "thermostat"
    LIGHT = "light"
    SWITCH = "switch"

    def __str__(self) -> str:
        return self.value


class LockState(str, Enum):
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    JAMMED = "jammed"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value: object) -> "LockState | None":
        """Accept vendor spellings such as ``LOCKED`` or ``Unlocked``."""
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
            return cls.UNKNOWN
        return None


class ThermostatMode(str, Enum):
    OFF = "off"
    HEAT = "heat"
    COOL = "cool"
    AUTO = "auto"
    FAN_ONLY = "fan_only"

    @classmethod
    def _missing_(cls, value: object) -> "ThermostatMode | None":
        if isinstance(value, str):
            lowered = value.strip().lower()
            for member in cls:
                if member.value == lowered:
                    return member
        return None


class PermissionCategory(str, Enum):
    """
    Columns of the operation-permission table.

    Operations are grouped into categories; roles are granted categories.
    """

    READ_STATUS = "read_status"
    ACTUATE = "actuate"
    CHANGE_SETTINGS = "change_settings"
    MANAGE_ACCESS = "manage_access"
    LIFECYCLE = "lifecycle"
    VIEW_HISTORY = "view_history"


class Operation(str, Enum):
    """Operations an actor can request on a device."""

    READ_STATUS = "read_status"
    LOCK = "lock"
    UNLOCK = "unlock"
    AUTO_LOCK = "auto_lock"
    AUTO_UNLOCK = "auto_unlock"
    TURN_ON = "turn_on"
    TURN_OFF = "turn_off"
    SET_BRIGHTNESS = "set_brightness"
    SET_TEMPERATURE = "set_temperature"
    SET_MODE = "set_mode"
    CHANGE_SETTINGS = "change_settings"
    MANAGE_ACCESS = "manage_access"
    VIEW_ACCESS_HISTORY = "view_access_history"
    RENAME = "rename"
    REMOVE = "remove"

    def __str__(self) -> str:
        return self.value


class AccessOutcome(str, Enum):
    """Outcome stored on every access record."""

    GRANTED_SUCCESS = "granted_success"
    GRANTED_FAILURE = "granted_failure"
    DENIED = "denied"

    def __str__(self) -> str:
        return self.value


class DenialReason(str, Enum):
    """Why the authorization engine refused a request."""

    NO_MATCHING_ROLE = "no_matching_role"
    INSUFFICIENT_ROLE = "insufficient_role"
    GUEST_WINDOW_EXPIRED = "guest_window_expired"
    GUEST_WINDOW_NOT_STARTED = "guest_window_not_started"
    DEVICE_OFFLINE = "device_offline"
    REMOTE_OPERATION_DISABLED = "remote_operation_disabled"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    DEVICE_NOT_FOUND = "device_not_found"
    DATA_INTEGRITY = "data_integrity"
    INVALID_REQUEST = "invalid_request"

    @property
    def message(self) -> str:
        return _DENIAL_MESSAGES[self]

    def __str__(self) -> str:
        return self.value


_DENIAL_MESSAGES = {
    DenialReason.NO_MATCHING_ROLE: "You have no role on this device's unit, property or portfolio",
    DenialReason.INSUFFICIENT_ROLE: "Your role does not allow this operation on this device",
    DenialReason.GUEST_WINDOW_EXPIRED: "Your guest access window has expired",
    DenialReason.GUEST_WINDOW_NOT_STARTED: "Your guest access window has not started yet",
    DenialReason.DEVICE_OFFLINE: "The device is offline",
    DenialReason.REMOTE_OPERATION_DISABLED: "Remote operation is disabled on this device",
    DenialReason.UNSUPPORTED_OPERATION: "This device does not support the requested operation",
    DenialReason.DEVICE_NOT_FOUND: "Device not found",
    DenialReason.DATA_INTEGRITY: "The device's location in the property hierarchy cannot be resolved",
    DenialReason.INVALID_REQUEST: "The request is not valid for this operation",
}


class FailureReason(str, Enum):
    """Reason attached to ``granted_failure`` records that did not come from a vendor."""

    BUSY = "busy"
    CANCELLED = "cancelled"
    INTERRUPTED = "interrupted"
    ADAPTER_NOT_CONFIGURED = "adapter_not_configured"
    INTERNAL_ERROR = "internal_error"


class BusyPolicy(str, Enum):
    """What a dispatch does when another dispatch holds the same device."""

    QUEUE = "queue"
    FAIL_FAST = "fail_fast"

    @classmethod
    def _missing_(cls, value: object) -> "BusyPolicy | None":
        if isinstance(value, str):
            normalized = value.strip().lower().replace("-", "_")
            for member in cls:
                if member.value == normalized:
                    return member
        return None
