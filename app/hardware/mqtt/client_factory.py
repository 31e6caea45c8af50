"""
Helpers for constructing paho-mqtt clients.

Clients use the version 2 callback API; message callbacks keep the
``(client, userdata, msg)`` signature.
"""
from __future__ import annotations

import logging
from typing import Any, Dict

import paho.mqtt.client as mqtt

logger = logging.getLogger(__name__)


def create_mqtt_client(client_id: str = "", **kwargs: Any) -> mqtt.Client:
    """
    Build an MQTT client.

    Args:
        client_id: Optional client identifier.
        kwargs: Extra keyword arguments forwarded to the client constructor.
    """
    client_kwargs: Dict[str, Any] = {"client_id": client_id or ""}

    # Keep MQTT v3.1.1 protocol by default for broker compatibility.
    client_kwargs["protocol"] = kwargs.pop("protocol", mqtt.MQTTv311)
    client_kwargs.update(kwargs)
    return mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, **client_kwargs)


def connect_mqtt_client(client: mqtt.Client, host: str, port: int = 1883, keepalive: int = 60) -> None:
    """Connect *client* and start its network loop thread."""
    client.connect(host, port, keepalive)
    client.loop_start()
    logger.info("Connected to MQTT broker %s:%s", host, port)
