"""
Adapter Registry

Adapters are keyed by vendor, optionally narrowed to a device kind, and
resolved by lookup. The registry is populated once at startup from the
adapter configuration file through ``AdapterFactory``.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from pydantic import ValidationError as PydanticValidationError

from app.domain.exceptions import ConfigurationError
from app.enums.access import DeviceKind
from app.hardware.adapters.base_adapter import AdapterError, DeviceAdapter
from app.hardware.adapters.http_cloud_adapter import HTTPCloudAdapter
from app.hardware.adapters.simulated_adapter import SimulatedAdapter
from app.hardware.adapters.zigbee2mqtt_adapter import Zigbee2MQTTAdapter
from app.hardware.mqtt.client_factory import create_mqtt_client
from app.schemas.access import AdapterRegistrySettings, AdapterSettings

if TYPE_CHECKING:
    from app.security.credentials import CredentialProvider

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Lookup table of vendor adapters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_vendor: dict[str, DeviceAdapter] = {}
        self._by_vendor_kind: dict[tuple[str, DeviceKind], DeviceAdapter] = {}

    def register(self, adapter: DeviceAdapter) -> None:
        """
        Register *adapter* for its vendor, or for each of its kinds when
        it declares any.

        Raises:
            ConfigurationError: if the vendor/kind slot is already taken
        """
        vendor = adapter.vendor.lower()
        with self._lock:
            if adapter.kinds is None:
                if vendor in self._by_vendor:
                    raise ConfigurationError(f"Adapter for vendor '{vendor}' already registered")
                self._by_vendor[vendor] = adapter
            else:
                for kind in adapter.kinds:
                    if (vendor, kind) in self._by_vendor_kind:
                        raise ConfigurationError(f"Adapter for vendor '{vendor}' and kind '{kind.value}' already registered")
                    self._by_vendor_kind[(vendor, kind)] = adapter
        logger.info("Registered %s", adapter)

    def resolve(self, vendor: str, kind: DeviceKind) -> DeviceAdapter:
        vendor = vendor.lower()
        with self._lock:
            adapter = self._by_vendor_kind.get((vendor, DeviceKind(kind))) or self._by_vendor.get(vendor)
        if adapter is None:
            raise ConfigurationError(
                f"No adapter configured for vendor '{vendor}' and kind '{DeviceKind(kind).value}'",
                detail={"vendor": vendor, "kind": DeviceKind(kind).value},
            )
        return adapter

    def adapters(self) -> list[DeviceAdapter]:
        with self._lock:
            unique: dict[int, DeviceAdapter] = {}
            for adapter in (*self._by_vendor.values(), *self._by_vendor_kind.values()):
                unique[id(adapter)] = adapter
        return list(unique.values())

    def initialize_all(self) -> dict[str, str]:
        """
        Initialize every adapter.

        Returns:
            Vendor → error message for adapters that failed; failures are
            logged and left for the dispatcher to retry on first use.
        """
        failures = {}
        for adapter in self.adapters():
            try:
                adapter.initialize()
            except (AdapterError, ConfigurationError) as exc:
                logger.error("Failed to initialize %s: %s", adapter, exc)
                failures[adapter.vendor] = str(exc)
        return failures

    def close_all(self) -> None:
        for adapter in self.adapters():
            try:
                adapter.close()
            except Exception as exc:
                logger.warning("Error closing %s: %s", adapter, exc)

    def __len__(self) -> int:
        return len(self.adapters())


class AdapterFactory:
    """
    Factory for creating adapters from their configuration entries.

    Supported types:
    - http: vendor REST bridges (requests)
    - zigbee2mqtt: devices paired to a Zigbee2MQTT bridge (paho-mqtt)
    - simulated: in-memory vendor

    Usage:
        factory = AdapterFactory(credentials, mqtt_host="localhost")
        adapter = factory.create(settings)
    """

    def __init__(
        self,
        credentials: "CredentialProvider",
        *,
        default_timeout: float = 10.0,
        mqtt_host: str | None = None,
        mqtt_port: int = 1883,
        mqtt_client_factory: Callable[..., Any] = create_mqtt_client,
    ):
        self.credentials = credentials
        self.default_timeout = default_timeout
        self.mqtt_host = mqtt_host
        self.mqtt_port = mqtt_port
        self.mqtt_client_factory = mqtt_client_factory

    def create(self, settings: AdapterSettings) -> DeviceAdapter:
        """
        Create adapter based on type.

        Raises:
            ConfigurationError: If the type is not supported or misconfigured
        """
        if settings.type == "http":
            adapter = HTTPCloudAdapter(
                settings.vendor,
                settings.base_url,
                self.credentials,
                kinds=settings.kinds,
                confirm_with_status=settings.confirm_with_status,
                min_request_interval=settings.min_request_interval_seconds,
                default_timeout=self.default_timeout,
                scope=settings.options.get("scope"),
            )
        elif settings.type == "zigbee2mqtt":
            host = settings.options.get("broker_host", self.mqtt_host)
            if not host:
                raise ConfigurationError(f"Adapter '{settings.vendor}' needs an MQTT broker host")
            adapter = Zigbee2MQTTAdapter(
                settings.vendor,
                self.mqtt_client_factory(client_id=f"tenantlock-{settings.vendor}"),
                topic_prefix=settings.topic_prefix,
                kinds=settings.kinds,
                default_timeout=self.default_timeout,
                broker_host=host,
                broker_port=int(settings.options.get("broker_port", self.mqtt_port)),
                device_kinds=settings.options.get("devices"),
            )
        elif settings.type == "simulated":
            adapter = SimulatedAdapter(
                settings.vendor,
                kinds=settings.kinds,
                latency_seconds=float(settings.options.get("latency_seconds", 0.0)),
                default_timeout=self.default_timeout,
            )
        else:
            raise ConfigurationError(f"Unsupported adapter type: {settings.type}")

        logger.info("Created %s adapter for vendor %s", settings.type, settings.vendor)
        return adapter


def load_adapter_settings(path: str | Path) -> list[AdapterSettings]:
    """
    Read and validate the adapter registry file.

    The file holds either a JSON list of adapter entries or an object with an
    ``adapters`` list.
    """
    path = Path(path)
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Adapter config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Adapter config {path} is not valid JSON: {exc}") from exc

    if isinstance(raw, list):
        raw = {"adapters": raw}
    try:
        return AdapterRegistrySettings.model_validate(raw).adapters
    except PydanticValidationError as exc:
        raise ConfigurationError(f"Invalid adapter config {path}: {exc}") from exc


def build_registry(settings: list[AdapterSettings], factory: AdapterFactory) -> AdapterRegistry:
    registry = AdapterRegistry()
    for entry in settings:
        registry.register(factory.create(entry))
    return registry
