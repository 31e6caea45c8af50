"""
Zigbee2MQTT Device Adapter

Drives locks, lights, switches and thermostats paired to a Zigbee2MQTT
bridge. Commands go to ``<prefix>/<friendly_name>/set``; the bridge answers
by republishing the device state on ``<prefix>/<friendly_name>``, which is
what ``execute`` waits for before returning.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from datetime import datetime
from typing import TYPE_CHECKING, Any, Iterable, Mapping

import paho.mqtt.client as mqtt

from app.domain.device_state import DeviceSnapshot, payload_from_dict
from app.enums.access import DeviceKind, Operation
from app.hardware.adapters.base_adapter import AdapterError, DeviceAdapter
from app.hardware.mqtt.client_factory import connect_mqtt_client
from app.utils.time import utc_now

if TYPE_CHECKING:
    from app.domain.hierarchy import Device
    from app.domain.operations import DeviceCommand

logger = logging.getLogger(__name__)


def command_to_zigbee(kind: DeviceKind, command: "DeviceCommand") -> dict[str, Any]:
    """Translate a command into the Zigbee2MQTT ``/set`` payload for *kind*."""
    op = command.operation
    params = command.params
    settings = params.get("settings") or {}

    if kind == DeviceKind.LOCK:
        if op in (Operation.LOCK, Operation.AUTO_LOCK):
            return {"state": "LOCK"}
        if op in (Operation.UNLOCK, Operation.AUTO_UNLOCK):
            return {"state": "UNLOCK"}
        if op == Operation.CHANGE_SETTINGS and "auto_lock_seconds" in settings:
            return {"auto_relock_time": int(settings["auto_lock_seconds"] or 0)}

    elif kind in (DeviceKind.LIGHT, DeviceKind.SWITCH):
        if op == Operation.TURN_ON:
            return {"state": "ON"}
        if op == Operation.TURN_OFF:
            return {"state": "OFF"}
        level = params.get("brightness", settings.get("brightness"))
        if kind == DeviceKind.LIGHT and level is not None:
            level = max(0, min(100, int(level)))
            # Zigbee brightness is 0-254
            return {"state": "ON" if level > 0 else "OFF", "brightness": round(level * 2.54)}

    elif kind == DeviceKind.THERMOSTAT:
        if op == Operation.SET_TEMPERATURE:
            return {"occupied_heating_setpoint": float(params["target_temperature"])}
        if op == Operation.SET_MODE:
            return {"system_mode": str(params["mode"]).lower()}
        if op == Operation.CHANGE_SETTINGS and "fan_mode" in settings:
            return {"fan_mode": str(settings["fan_mode"]).lower()}

    raise ValueError(f"Zigbee2MQTT cannot express '{op.value}' for {kind.value} devices")


def zigbee_to_state(kind: DeviceKind, data: Mapping[str, Any]) -> dict[str, Any]:
    """Translate a Zigbee2MQTT state message into the neutral payload mapping."""
    raw_state = str(data.get("state", "")).upper()

    if kind == DeviceKind.LOCK:
        lock_state = data.get("lock_state")
        if lock_state is None and raw_state in ("LOCK", "UNLOCK"):
            lock_state = "locked" if raw_state == "LOCK" else "unlocked"
        if lock_state == "not_fully_locked":
            lock_state = "jammed"
        return {
            "state": lock_state,
            "battery": data.get("battery"),
            "auto_lock_seconds": data.get("auto_relock_time"),
        }

    if kind == DeviceKind.THERMOSTAT:
        return {
            "mode": data.get("system_mode"),
            "local_temperature": data.get("local_temperature"),
            "target_temperature": data.get("occupied_heating_setpoint"),
            "fan_mode": data.get("fan_mode", "auto"),
        }

    state: dict[str, Any] = {"is_on": raw_state == "ON"}
    if kind == DeviceKind.LIGHT and data.get("brightness") is not None:
        state["brightness"] = round(float(data["brightness"]) / 2.54)
    return state


class Zigbee2MQTTAdapter(DeviceAdapter):
    """
    Zigbee2MQTT protocol adapter.

    Tracks the latest state and availability of every friendly name seen on
    the bridge topics. ``execute`` publishes the command, waits for a state
    message newer than the publish and, if none arrives, requests one with
    ``/get`` before giving up as ``device_unreachable``.
    """

    def __init__(
        self,
        vendor: str,
        mqtt_client: Any,
        *,
        topic_prefix: str = "zigbee2mqtt",
        kinds: Iterable[DeviceKind] | None = None,
        default_timeout: float = 10.0,
        broker_host: str | None = None,
        broker_port: int = 1883,
        device_kinds: Mapping[str, str] | None = None,
    ):
        """
        Initialize Zigbee2MQTT adapter.

        Args:
            vendor: Vendor key
            mqtt_client: paho client (connected here when ``broker_host`` is set)
            topic_prefix: Zigbee2MQTT base topic
            kinds: Device kinds served
            default_timeout: Deadline for confirmations when none is given
            broker_host: Broker to connect to during initialize()
            broker_port: Broker port
            device_kinds: Friendly name → kind, used by fetch_devices()
        """
        super().__init__(vendor, kinds=kinds, default_timeout=default_timeout)
        self.mqtt_client = mqtt_client
        self.topic_prefix = topic_prefix.rstrip("/")
        self.broker_host = broker_host
        self.broker_port = broker_port

        self._cond = threading.Condition()
        self._states: dict[str, tuple[int, datetime, dict[str, Any]]] = {}
        self._availability: dict[str, bool] = {}
        self._versions: dict[str, int] = {}
        self._device_kinds: dict[str, DeviceKind] = {
            name: DeviceKind(kind) for name, kind in (device_kinds or {}).items()
        }
        self._initialized = False

    # ==================== Session ====================

    def initialize(self) -> None:
        if self._initialized:
            return
        if self.broker_host:
            try:
                connect_mqtt_client(self.mqtt_client, self.broker_host, self.broker_port)
            except OSError as exc:
                raise AdapterError.unreachable(f"MQTT broker {self.broker_host}: {exc}") from exc

        state_topic = f"{self.topic_prefix}/+"
        availability_topic = f"{self.topic_prefix}/+/availability"
        self.mqtt_client.message_callback_add(state_topic, self._on_state_message)
        self.mqtt_client.message_callback_add(availability_topic, self._on_availability_message)
        result, _mid = self.mqtt_client.subscribe([(state_topic, 0), (availability_topic, 0)])
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise AdapterError.unreachable(f"Subscribe to {state_topic} failed with code {result}")
        self._initialized = True
        logger.info("Zigbee2MQTT adapter %s subscribed to %s", self.vendor, state_topic)

    def close(self) -> None:
        if not self._initialized:
            return
        self.mqtt_client.message_callback_remove(f"{self.topic_prefix}/+")
        self.mqtt_client.message_callback_remove(f"{self.topic_prefix}/+/availability")
        if self.broker_host:
            self.mqtt_client.loop_stop()
            self.mqtt_client.disconnect()
        self._initialized = False

    # ==================== MQTT callbacks ====================

    def _friendly_name(self, topic: str) -> str:
        return topic[len(self.topic_prefix) + 1 :].split("/", 1)[0]

    def _on_state_message(self, client, userdata, msg) -> None:
        name = self._friendly_name(msg.topic)
        if name == "bridge":
            return
        try:
            data = json.loads(msg.payload.decode())
        except (UnicodeDecodeError, ValueError):
            logger.warning("Ignoring non-JSON state message on %s", msg.topic)
            return
        if not isinstance(data, dict):
            return
        with self._cond:
            version = self._versions.get(name, 0) + 1
            self._versions[name] = version
            self._states[name] = (version, utc_now(), data)
            self._cond.notify_all()

    def _on_availability_message(self, client, userdata, msg) -> None:
        name = self._friendly_name(msg.topic)
        raw = msg.payload.decode(errors="replace").strip()
        try:
            parsed = json.loads(raw)
            raw = parsed.get("state", raw) if isinstance(parsed, dict) else raw
        except ValueError:
            pass
        with self._cond:
            self._availability[name] = str(raw).lower() == "online"

    # ==================== Helpers ====================

    def _publish(self, topic: str, body: Mapping[str, Any]) -> None:
        info = self.mqtt_client.publish(topic, json.dumps(body))
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            raise AdapterError.unreachable(f"Publish to {topic} failed with code {info.rc}")

    def _current_version(self, name: str) -> int:
        with self._cond:
            return self._versions.get(name, 0)

    def _wait_for_state(self, name: str, after_version: int, deadline: float) -> tuple[datetime, dict] | None:
        with self._cond:
            while True:
                entry = self._states.get(name)
                if entry and entry[0] > after_version:
                    return entry[1], entry[2]
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def _snapshot(self, device_id: str, name: str, kind: DeviceKind, observed_at: datetime, data: dict) -> DeviceSnapshot:
        try:
            payload = payload_from_dict(kind, zigbee_to_state(kind, data))
        except (ValueError, TypeError) as exc:
            raise AdapterError.malformed(f"Zigbee2MQTT state for {name}: {exc}") from exc
        with self._cond:
            online = self._availability.get(name, True)
        return DeviceSnapshot(
            device_id=device_id,
            kind=kind,
            payload=payload,
            is_online=online,
            observed_at=observed_at,
        )

    def _request_state(self, name: str, deadline: float) -> tuple[datetime, dict] | None:
        version = self._current_version(name)
        self._publish(f"{self.topic_prefix}/{name}/get", {"state": ""})
        return self._wait_for_state(name, version, deadline)

    # ==================== Capabilities ====================

    def fetch_devices(self, *, timeout: float | None = None) -> list[DeviceSnapshot]:
        self.initialize()
        snapshots = []
        with self._cond:
            known = {name: self._states[name] for name in self._device_kinds if name in self._states}
        for name, (_version, observed_at, data) in known.items():
            kind = self._device_kinds[name]
            if not self.supports_kind(kind):
                continue
            try:
                snapshots.append(self._snapshot(name, name, kind, observed_at, data))
            except AdapterError as exc:
                logger.warning("Skipping %s during discovery: %s", name, exc)
        return snapshots

    def get_status(self, device: "Device", *, timeout: float | None = None) -> DeviceSnapshot:
        self.initialize()
        name = device.vendor_device_id
        self._device_kinds.setdefault(name, device.kind)
        deadline = time.monotonic() + self._timeout(timeout)

        entry = self._request_state(name, deadline)
        if entry is None:
            with self._cond:
                cached = self._states.get(name)
            if cached is None:
                raise AdapterError.unreachable(f"No state received from {name}")
            entry = cached[1], cached[2]
        return self._snapshot(device.id, name, device.kind, *entry)

    def execute(self, device: "Device", command: "DeviceCommand", *, timeout: float | None = None) -> DeviceSnapshot:
        self.initialize()
        name = device.vendor_device_id
        self._device_kinds.setdefault(name, device.kind)
        with self._cond:
            if self._availability.get(name) is False:
                raise AdapterError.unreachable(f"{name} is reported offline by the bridge")

        try:
            body = command_to_zigbee(device.kind, command)
        except (ValueError, TypeError, KeyError) as exc:
            raise AdapterError.rejected(str(exc)) from exc

        budget = self._timeout(timeout)
        started = time.monotonic()
        version = self._current_version(name)
        self._publish(f"{self.topic_prefix}/{name}/set", body)
        logger.info("Zigbee2MQTT: sent %s to %s", body, name)

        # Two thirds of the budget for the pushed state, the rest for one poll.
        entry = self._wait_for_state(name, version, started + budget * 2 / 3)
        if entry is None:
            entry = self._request_state(name, started + budget)
        if entry is None:
            raise AdapterError.unreachable(f"{name} did not confirm {command.operation.value}")
        return self._snapshot(device.id, name, device.kind, *entry)
