"""
Device Adapters

Vendor integrations behind the uniform DeviceAdapter contract.
"""
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind, DeviceAdapter
from app.hardware.adapters.http_cloud_adapter import HTTPCloudAdapter
from app.hardware.adapters.registry import AdapterFactory, AdapterRegistry, build_registry, load_adapter_settings
from app.hardware.adapters.simulated_adapter import SimulatedAdapter
from app.hardware.adapters.zigbee2mqtt_adapter import Zigbee2MQTTAdapter

__all__ = [
    "AdapterError",
    "AdapterErrorKind",
    "AdapterFactory",
    "AdapterRegistry",
    "DeviceAdapter",
    "HTTPCloudAdapter",
    "SimulatedAdapter",
    "Zigbee2MQTTAdapter",
    "build_registry",
    "load_adapter_settings",
]
