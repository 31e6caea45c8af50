from __future__ import annotations

import json
from types import SimpleNamespace

import paho.mqtt.client as mqtt
import pytest

from app.domain.hierarchy import Device
from app.domain.operations import DeviceCommand
from app.enums.access import DeviceKind, LockState, Operation
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind
from app.hardware.adapters.zigbee2mqtt_adapter import Zigbee2MQTTAdapter, command_to_zigbee, zigbee_to_state

DOOR = Device("D1", "Front door", DeviceKind.LOCK, "zigbee", unit_id="u1", external_id="front_door")


class FakeBridgeClient:
    """Stands in for a paho client; optionally answers like a Zigbee2MQTT bridge."""

    def __init__(self, *, subscribe_rc=mqtt.MQTT_ERR_SUCCESS):
        self.callbacks = {}
        self.published = []
        self.subscribe_rc = subscribe_rc
        self.replies = {}

    def message_callback_add(self, topic, callback):
        self.callbacks[topic] = callback

    def message_callback_remove(self, topic):
        self.callbacks.pop(topic, None)

    def subscribe(self, topics):
        self.subscriptions = topics
        return self.subscribe_rc, 1

    def publish(self, topic, payload):
        self.published.append((topic, json.loads(payload)))
        reply = self.replies.get(topic)
        if reply is not None:
            self.deliver(topic.rsplit("/", 1)[0], reply)
        return SimpleNamespace(rc=mqtt.MQTT_ERR_SUCCESS)

    def deliver(self, topic, data):
        raw = data if isinstance(data, bytes) else json.dumps(data).encode()
        pattern = "zigbee2mqtt/+/availability" if topic.endswith("/availability") else "zigbee2mqtt/+"
        self.callbacks[pattern](self, None, SimpleNamespace(topic=topic, payload=raw))


@pytest.fixture()
def bridge():
    return FakeBridgeClient()


@pytest.fixture()
def zigbee(bridge):
    adapter = Zigbee2MQTTAdapter("zigbee", bridge, device_kinds={"front_door": "lock"})
    adapter.initialize()
    return adapter


# ---------------------------------------------------------------------------
# Payload translation
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "kind, command, expected",
    [
        (DeviceKind.LOCK, DeviceCommand(Operation.UNLOCK), {"state": "UNLOCK"}),
        (DeviceKind.LOCK, DeviceCommand(Operation.AUTO_LOCK), {"state": "LOCK"}),
        (
            DeviceKind.LOCK,
            DeviceCommand(Operation.CHANGE_SETTINGS, {"settings": {"auto_lock_seconds": 30}}),
            {"auto_relock_time": 30},
        ),
        (
            DeviceKind.LIGHT,
            DeviceCommand(Operation.SET_BRIGHTNESS, {"brightness": 50}),
            {"state": "ON", "brightness": 127},
        ),
        (
            DeviceKind.LIGHT,
            DeviceCommand(Operation.SET_BRIGHTNESS, {"brightness": 0}),
            {"state": "OFF", "brightness": 0},
        ),
        (DeviceKind.SWITCH, DeviceCommand(Operation.TURN_OFF), {"state": "OFF"}),
        (
            DeviceKind.THERMOSTAT,
            DeviceCommand(Operation.SET_TEMPERATURE, {"target_temperature": 70}),
            {"occupied_heating_setpoint": 70.0},
        ),
        (DeviceKind.THERMOSTAT, DeviceCommand(Operation.SET_MODE, {"mode": "HEAT"}), {"system_mode": "heat"}),
    ],
)
def test_command_to_zigbee(kind, command, expected):
    assert command_to_zigbee(kind, command) == expected


def test_command_to_zigbee_rejects_unexpressible_commands():
    with pytest.raises(ValueError):
        command_to_zigbee(DeviceKind.LOCK, DeviceCommand(Operation.CHANGE_SETTINGS, {"settings": {}}))


def test_zigbee_to_state():
    assert zigbee_to_state(DeviceKind.LOCK, {"state": "LOCK", "battery": 70}) == {
        "state": "locked",
        "battery": 70,
        "auto_lock_seconds": None,
    }
    assert zigbee_to_state(DeviceKind.LOCK, {"lock_state": "not_fully_locked"})["state"] == "jammed"
    assert zigbee_to_state(DeviceKind.LIGHT, {"state": "ON", "brightness": 254}) == {"is_on": True, "brightness": 100}
    assert zigbee_to_state(DeviceKind.THERMOSTAT, {"system_mode": "cool", "local_temperature": 21})["mode"] == "cool"


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


def test_initialize_subscribes_once(zigbee, bridge):
    zigbee.initialize()

    assert set(bridge.callbacks) == {"zigbee2mqtt/+", "zigbee2mqtt/+/availability"}
    assert bridge.subscriptions == [("zigbee2mqtt/+", 0), ("zigbee2mqtt/+/availability", 0)]


def test_failed_subscribe_is_unreachable():
    adapter = Zigbee2MQTTAdapter("zigbee", FakeBridgeClient(subscribe_rc=mqtt.MQTT_ERR_NO_CONN))

    with pytest.raises(AdapterError) as exc_info:
        adapter.initialize()

    assert exc_info.value.kind == AdapterErrorKind.DEVICE_UNREACHABLE


def test_execute_waits_for_the_bridge_state(zigbee, bridge):
    bridge.replies["zigbee2mqtt/front_door/set"] = {"state": "UNLOCK", "battery": 64}

    snapshot = zigbee.execute(DOOR, DeviceCommand(Operation.UNLOCK), timeout=1.0)

    assert bridge.published == [("zigbee2mqtt/front_door/set", {"state": "UNLOCK"})]
    assert snapshot.device_id == "D1"
    assert snapshot.lock_state == LockState.UNLOCKED
    assert snapshot.payload.battery_level == 64


def test_execute_polls_once_before_giving_up(zigbee, bridge):
    with pytest.raises(AdapterError) as exc_info:
        zigbee.execute(DOOR, DeviceCommand(Operation.LOCK), timeout=0.1)

    assert exc_info.value.kind == AdapterErrorKind.DEVICE_UNREACHABLE
    assert [topic for topic, _ in bridge.published] == ["zigbee2mqtt/front_door/set", "zigbee2mqtt/front_door/get"]


def test_execute_on_device_reported_offline(zigbee, bridge):
    bridge.deliver("zigbee2mqtt/front_door/availability", {"state": "offline"})

    with pytest.raises(AdapterError) as exc_info:
        zigbee.execute(DOOR, DeviceCommand(Operation.LOCK), timeout=0.1)

    assert exc_info.value.kind == AdapterErrorKind.DEVICE_UNREACHABLE
    assert bridge.published == []


def test_unexpressible_command_is_rejected(zigbee, bridge):
    with pytest.raises(AdapterError) as exc_info:
        zigbee.execute(DOOR, DeviceCommand(Operation.CHANGE_SETTINGS, {"settings": {}}), timeout=0.1)

    assert exc_info.value.kind == AdapterErrorKind.REJECTED
    assert bridge.published == []


def test_get_status_requests_fresh_state(zigbee, bridge):
    bridge.replies["zigbee2mqtt/front_door/get"] = {"state": "LOCK"}

    snapshot = zigbee.get_status(DOOR, timeout=1.0)

    assert snapshot.lock_state == LockState.LOCKED
    assert snapshot.is_online


def test_get_status_falls_back_to_last_pushed_state(zigbee, bridge):
    bridge.deliver("zigbee2mqtt/front_door", {"state": "UNLOCK"})
    bridge.deliver("zigbee2mqtt/front_door/availability", b"offline")

    snapshot = zigbee.get_status(DOOR, timeout=0.05)

    assert snapshot.lock_state == LockState.UNLOCKED
    assert snapshot.is_online is False


def test_get_status_without_any_state(zigbee):
    with pytest.raises(AdapterError):
        zigbee.get_status(DOOR, timeout=0.05)


def test_bad_messages_are_ignored(zigbee, bridge):
    bridge.deliver("zigbee2mqtt/front_door", b"not json")
    bridge.deliver("zigbee2mqtt/bridge", {"state": "online"})

    assert zigbee.fetch_devices() == []


def test_fetch_devices_reports_configured_names(zigbee, bridge):
    bridge.deliver("zigbee2mqtt/front_door", {"state": "LOCK", "battery": 50})
    bridge.deliver("zigbee2mqtt/hall_sensor", {"temperature": 20})

    [snapshot] = zigbee.fetch_devices()

    assert snapshot.device_id == "front_door"
    assert snapshot.lock_state == LockState.LOCKED


def test_close_removes_callbacks(zigbee, bridge):
    zigbee.close()

    assert bridge.callbacks == {}
