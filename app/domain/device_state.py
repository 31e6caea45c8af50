"""
Device State
============

Kind-tagged snapshots of what a device last reported.

A ``DeviceSnapshot`` carries a ``kind`` and a payload whose type is fixed by
that kind. Behaviour lives in the free functions at the bottom of the module
(``supported_operations``, ``apply_command`` ...) rather than on per-kind
subclasses, so new kinds only add a payload and a branch in each function.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from typing import Any, Mapping, Union

from app.domain.operations import DeviceCommand
from app.enums.access import DeviceKind, LockState, Operation, PermissionCategory, ThermostatMode
from app.utils.time import coerce_datetime, to_iso, utc_now


@dataclass(frozen=True)
class LockPayload:
    state: LockState = LockState.UNKNOWN
    battery_level: int | None = None
    last_changed_at: datetime | None = None
    auto_lock_seconds: int | None = None


@dataclass(frozen=True)
class ThermostatPayload:
    mode: ThermostatMode = ThermostatMode.OFF
    current_temperature: float | None = None
    target_temperature: float | None = None
    fan_mode: str = "auto"
    min_temperature: float = 40.0
    max_temperature: float = 90.0


@dataclass(frozen=True)
class LightPayload:
    is_on: bool = False
    brightness: int = 0


@dataclass(frozen=True)
class SwitchPayload:
    is_on: bool = False


DevicePayload = Union[LockPayload, ThermostatPayload, LightPayload, SwitchPayload]

PAYLOAD_TYPES: dict[DeviceKind, type] = {
    DeviceKind.LOCK: LockPayload,
    DeviceKind.THERMOSTAT: ThermostatPayload,
    DeviceKind.LIGHT: LightPayload,
    DeviceKind.SWITCH: SwitchPayload,
}

FAN_MODES = frozenset({"auto", "on", "circulate"})


@dataclass(frozen=True)
class DeviceSnapshot:
    """Last observed state of one device."""

    device_id: str
    kind: DeviceKind
    payload: DevicePayload
    is_online: bool = True
    observed_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        if not isinstance(self.kind, DeviceKind):
            object.__setattr__(self, "kind", DeviceKind(self.kind))
        expected = PAYLOAD_TYPES[self.kind]
        if not isinstance(self.payload, expected):
            raise ValueError(
                f"Snapshot for {self.kind.value} device {self.device_id} needs {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def lock_state(self) -> LockState | None:
        if isinstance(self.payload, LockPayload):
            return self.payload.state
        return None

    def newer_than(self, other: "DeviceSnapshot | None") -> bool:
        return other is None or self.observed_at >= other.observed_at


# ----------------------------------------------------------------------
# Capabilities
# ----------------------------------------------------------------------

_COMMON_OPERATIONS = frozenset(
    {
        Operation.READ_STATUS,
        Operation.MANAGE_ACCESS,
        Operation.VIEW_ACCESS_HISTORY,
        Operation.RENAME,
        Operation.REMOVE,
    }
)

_KIND_OPERATIONS: dict[DeviceKind, frozenset[Operation]] = {
    DeviceKind.LOCK: frozenset(
        {
            Operation.LOCK,
            Operation.UNLOCK,
            Operation.AUTO_LOCK,
            Operation.AUTO_UNLOCK,
            Operation.CHANGE_SETTINGS,
        }
    ),
    DeviceKind.THERMOSTAT: frozenset(
        {Operation.SET_TEMPERATURE, Operation.SET_MODE, Operation.CHANGE_SETTINGS}
    ),
    DeviceKind.LIGHT: frozenset(
        {Operation.TURN_ON, Operation.TURN_OFF, Operation.SET_BRIGHTNESS, Operation.CHANGE_SETTINGS}
    ),
    DeviceKind.SWITCH: frozenset({Operation.TURN_ON, Operation.TURN_OFF}),
}

# Keys accepted by change_settings, per kind.
_SETTINGS_KEYS: dict[DeviceKind, frozenset[str]] = {
    DeviceKind.LOCK: frozenset({"auto_lock_seconds"}),
    DeviceKind.THERMOSTAT: frozenset({"fan_mode", "min_temperature", "max_temperature"}),
    DeviceKind.LIGHT: frozenset({"brightness"}),
    DeviceKind.SWITCH: frozenset(),
}


def supported_operations(kind: DeviceKind) -> frozenset[Operation]:
    return _COMMON_OPERATIONS | _KIND_OPERATIONS[DeviceKind(kind)]


def empty_payload(kind: DeviceKind) -> DevicePayload:
    return PAYLOAD_TYPES[DeviceKind(kind)]()


def unknown_snapshot(device_id: str, kind: DeviceKind, *, is_online: bool = False) -> DeviceSnapshot:
    """Placeholder for a device nothing has been observed about yet."""
    return DeviceSnapshot(device_id=device_id, kind=kind, payload=empty_payload(kind), is_online=is_online)


# ----------------------------------------------------------------------
# Behaviour
# ----------------------------------------------------------------------


def apply_command(
    snapshot: DeviceSnapshot,
    command: DeviceCommand,
    *,
    observed_at: datetime | None = None,
) -> DeviceSnapshot:
    """
    Return the snapshot a device should report after executing *command*.

    Raises:
        ValueError: the command is unsupported for the kind or its parameters
            are out of range. Adapters report this as a rejected command.
    """
    if command.operation not in supported_operations(snapshot.kind):
        raise ValueError(f"{snapshot.kind.value} devices do not support '{command.operation.value}'")

    now = observed_at or utc_now()
    payload = snapshot.payload
    op = command.operation
    params = command.params

    if isinstance(payload, LockPayload):
        new_payload = _apply_lock(payload, op, params, now)
    elif isinstance(payload, ThermostatPayload):
        new_payload = _apply_thermostat(payload, op, params)
    elif isinstance(payload, LightPayload):
        new_payload = _apply_light(payload, op, params)
    else:
        new_payload = SwitchPayload(is_on=op == Operation.TURN_ON)

    return replace(snapshot, payload=new_payload, is_online=True, observed_at=now)


def _apply_lock(payload: LockPayload, op: Operation, params: Mapping[str, Any], now: datetime) -> LockPayload:
    if op == Operation.CHANGE_SETTINGS:
        settings = _settings(DeviceKind.LOCK, params)
        seconds = settings.get("auto_lock_seconds", payload.auto_lock_seconds)
        if seconds is not None:
            seconds = int(seconds)
            if seconds < 0:
                raise ValueError("auto_lock_seconds must be zero or positive")
        return replace(payload, auto_lock_seconds=seconds or None)

    if payload.state == LockState.JAMMED:
        raise ValueError("Lock is jammed")
    target = LockState.LOCKED if op in (Operation.LOCK, Operation.AUTO_LOCK) else LockState.UNLOCKED
    if target == payload.state:
        return payload
    return replace(payload, state=target, last_changed_at=now)


def _apply_thermostat(payload: ThermostatPayload, op: Operation, params: Mapping[str, Any]) -> ThermostatPayload:
    if op == Operation.SET_TEMPERATURE:
        target = float(params["target_temperature"])
        if not payload.min_temperature <= target <= payload.max_temperature:
            raise ValueError(
                f"Target temperature {target} outside {payload.min_temperature}-{payload.max_temperature}"
            )
        return replace(payload, target_temperature=target)

    if op == Operation.SET_MODE:
        try:
            mode = ThermostatMode(params["mode"])
        except ValueError as exc:
            raise ValueError(f"Unknown thermostat mode: {params['mode']}") from exc
        return replace(payload, mode=mode)

    settings = _settings(DeviceKind.THERMOSTAT, params)
    fan_mode = str(settings.get("fan_mode", payload.fan_mode)).lower()
    if fan_mode not in FAN_MODES:
        raise ValueError(f"Unknown fan mode: {fan_mode}")
    low = float(settings.get("min_temperature", payload.min_temperature))
    high = float(settings.get("max_temperature", payload.max_temperature))
    if low >= high:
        raise ValueError("min_temperature must be below max_temperature")
    return replace(payload, fan_mode=fan_mode, min_temperature=low, max_temperature=high)


def _apply_light(payload: LightPayload, op: Operation, params: Mapping[str, Any]) -> LightPayload:
    if op == Operation.TURN_ON:
        return replace(payload, is_on=True, brightness=payload.brightness or 100)
    if op == Operation.TURN_OFF:
        return replace(payload, is_on=False)

    if op == Operation.SET_BRIGHTNESS:
        level = params["brightness"]
    else:
        level = _settings(DeviceKind.LIGHT, params).get("brightness", payload.brightness)
    level = max(0, min(100, int(level)))
    # Brightness 0 switches the light off; anything else switches it on.
    return LightPayload(is_on=level > 0, brightness=level)


def _settings(kind: DeviceKind, params: Mapping[str, Any]) -> Mapping[str, Any]:
    settings = params.get("settings") or {}
    if not isinstance(settings, Mapping):
        raise ValueError("settings must be an object")
    unknown = set(settings) - _SETTINGS_KEYS[kind]
    if unknown:
        raise ValueError(f"Unsupported {kind.value} settings: {', '.join(sorted(unknown))}")
    return settings


def is_state_assertion(snapshot: DeviceSnapshot, command: DeviceCommand) -> bool:
    """True when *command* only asserts the state *snapshot* already shows (e.g. lock when locked)."""
    if command.spec.category != PermissionCategory.ACTUATE:
        return False
    if isinstance(snapshot.payload, LockPayload) and snapshot.payload.state == LockState.UNKNOWN:
        return False
    try:
        result = apply_command(snapshot, command, observed_at=snapshot.observed_at)
    except ValueError:
        return False
    return result.payload == snapshot.payload


# ----------------------------------------------------------------------
# Serialization
# ----------------------------------------------------------------------

_BOOL_STRINGS = {"on": True, "off": False, "true": True, "false": False, "1": True, "0": False}


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, str):
        return _BOOL_STRINGS.get(value.strip().lower(), default)
    return bool(value)


def _as_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected a number, got {value!r}") from exc


def payload_from_dict(kind: DeviceKind, data: Mapping[str, Any]) -> DevicePayload:
    """
    Build a payload from a vendor-neutral mapping.

    Accepts a few common aliases (``lock_state``/``state``, ``battery``,
    ``on``/``state`` for lights) so adapters can pass lightly translated
    vendor bodies straight through. Raises ``ValueError`` on bad values.
    """
    kind = DeviceKind(kind)
    if not isinstance(data, Mapping):
        raise ValueError("Device state must be an object")

    if kind == DeviceKind.LOCK:
        raw_state = data.get("state", data.get("lock_state"))
        battery = data.get("battery_level", data.get("battery"))
        auto_lock = data.get("auto_lock_seconds")
        return LockPayload(
            state=LockState(raw_state) if raw_state is not None else LockState.UNKNOWN,
            battery_level=int(battery) if battery is not None else None,
            last_changed_at=coerce_datetime(data.get("last_changed_at")),
            auto_lock_seconds=int(auto_lock) if auto_lock else None,
        )

    if kind == DeviceKind.THERMOSTAT:
        defaults = ThermostatPayload()
        raw_mode = data.get("mode", data.get("system_mode"))
        try:
            mode = ThermostatMode(raw_mode) if raw_mode is not None else ThermostatMode.OFF
        except ValueError as exc:
            raise ValueError(f"Unknown thermostat mode: {raw_mode}") from exc
        return ThermostatPayload(
            mode=mode,
            current_temperature=_as_float(data.get("current_temperature", data.get("local_temperature"))),
            target_temperature=_as_float(data.get("target_temperature")),
            fan_mode=str(data.get("fan_mode", defaults.fan_mode)).lower(),
            min_temperature=_as_float(data.get("min_temperature")) or defaults.min_temperature,
            max_temperature=_as_float(data.get("max_temperature")) or defaults.max_temperature,
        )

    on_value = data.get("is_on", data.get("on", data.get("state")))
    if kind == DeviceKind.LIGHT:
        brightness = data.get("brightness")
        return LightPayload(
            is_on=_as_bool(on_value, False),
            brightness=max(0, min(100, int(brightness))) if brightness is not None else 0,
        )
    return SwitchPayload(is_on=_as_bool(on_value, False))


def payload_to_dict(payload: DevicePayload) -> dict[str, Any]:
    data = asdict(payload)
    for key, value in data.items():
        if isinstance(value, datetime):
            data[key] = to_iso(value)
        elif hasattr(value, "value"):
            data[key] = value.value
    return data


def snapshot_to_dict(snapshot: DeviceSnapshot) -> dict[str, Any]:
    return {
        "device_id": snapshot.device_id,
        "kind": snapshot.kind.value,
        "is_online": snapshot.is_online,
        "observed_at": to_iso(snapshot.observed_at),
        "state": payload_to_dict(snapshot.payload),
    }


def snapshot_from_dict(data: Mapping[str, Any]) -> DeviceSnapshot:
    kind = DeviceKind(data["kind"])
    return DeviceSnapshot(
        device_id=str(data["device_id"]),
        kind=kind,
        payload=payload_from_dict(kind, data.get("state") or {}),
        is_online=bool(data.get("is_online", True)),
        observed_at=coerce_datetime(data.get("observed_at")) or utc_now(),
    )
