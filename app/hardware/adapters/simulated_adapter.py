"""
Simulated Device Adapter

In-memory vendor used for development and tests. Devices behave according
to ``apply_command``; failures can be scripted per device or globally.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Iterable

from app.domain.device_state import DeviceSnapshot, apply_command, empty_payload
from app.enums.access import DeviceKind
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind, DeviceAdapter
from app.utils.time import utc_now

if TYPE_CHECKING:
    from app.domain.device_state import DevicePayload
    from app.domain.hierarchy import Device
    from app.domain.operations import DeviceCommand

logger = logging.getLogger(__name__)

_ANY_DEVICE = "*"


class SimulatedAdapter(DeviceAdapter):
    """
    Fake vendor backed by a dict of snapshots.

    Usage:
        adapter = SimulatedAdapter("sim")
        adapter.add_device("front-door", DeviceKind.LOCK)
        adapter.fail_next(AdapterErrorKind.RATE_LIMITED, retry_after=0)
    """

    def __init__(
        self,
        vendor: str = "simulated",
        *,
        kinds: Iterable[DeviceKind] | None = None,
        latency_seconds: float = 0.0,
        default_timeout: float = 10.0,
    ):
        super().__init__(vendor, kinds=kinds, default_timeout=default_timeout)
        self.latency_seconds = latency_seconds
        self._lock = threading.Lock()
        self._devices: dict[str, DeviceSnapshot] = {}
        self._failures: dict[str, deque[AdapterError]] = defaultdict(deque)
        self._in_flight: dict[str, int] = defaultdict(int)

        self.initialize_count = 0
        self.requires_initialize = False
        self.execute_calls: list[tuple[str, Any]] = []
        self.max_concurrent_per_device = 0

    # ==================== Scripting ====================

    def add_device(
        self,
        vendor_device_id: str,
        kind: DeviceKind,
        payload: "DevicePayload | None" = None,
        *,
        is_online: bool = True,
    ) -> DeviceSnapshot:
        snapshot = DeviceSnapshot(
            device_id=vendor_device_id,
            kind=kind,
            payload=payload or empty_payload(kind),
            is_online=is_online,
        )
        with self._lock:
            self._devices[vendor_device_id] = snapshot
        return snapshot

    def set_online(self, vendor_device_id: str, is_online: bool) -> None:
        with self._lock:
            self._devices[vendor_device_id] = replace(self._devices[vendor_device_id], is_online=is_online)

    def fail_next(
        self,
        kind: AdapterErrorKind,
        *,
        times: int = 1,
        device_id: str | None = None,
        retry_after: float | None = None,
        vendor_reason: str | None = None,
    ) -> None:
        """Queue *times* failures of *kind* for the next calls (optionally for one device)."""
        with self._lock:
            for _ in range(times):
                self._failures[device_id or _ANY_DEVICE].append(
                    AdapterError(kind, retry_after=retry_after, vendor_reason=vendor_reason)
                )

    def snapshot_of(self, vendor_device_id: str) -> DeviceSnapshot | None:
        with self._lock:
            return self._devices.get(vendor_device_id)

    def _pop_failure(self, vendor_device_id: str) -> AdapterError | None:
        with self._lock:
            for key in (vendor_device_id, _ANY_DEVICE):
                if self._failures[key]:
                    return self._failures[key].popleft()
        return None

    # ==================== Capabilities ====================

    def initialize(self) -> None:
        self.initialize_count += 1
        self.requires_initialize = False

    def fetch_devices(self, *, timeout: float | None = None) -> list[DeviceSnapshot]:
        with self._lock:
            return [s for s in self._devices.values() if self.supports_kind(s.kind)]

    def get_status(self, device: "Device", *, timeout: float | None = None) -> DeviceSnapshot:
        vendor_id = device.vendor_device_id
        failure = self._pop_failure(vendor_id)
        if failure is not None:
            raise failure
        snapshot = self.snapshot_of(vendor_id)
        if snapshot is None:
            raise AdapterError.rejected(f"Unknown device {vendor_id}")
        if not snapshot.is_online:
            raise AdapterError.unreachable(f"{vendor_id} is offline")
        return replace(snapshot, device_id=device.id, observed_at=utc_now())

    def execute(self, device: "Device", command: "DeviceCommand", *, timeout: float | None = None) -> DeviceSnapshot:
        vendor_id = device.vendor_device_id
        with self._lock:
            self._in_flight[vendor_id] += 1
            self.max_concurrent_per_device = max(self.max_concurrent_per_device, self._in_flight[vendor_id])
            self.execute_calls.append((vendor_id, command))
        try:
            if self.latency_seconds:
                if self.latency_seconds > self._timeout(timeout):
                    time.sleep(self._timeout(timeout))
                    raise AdapterError.unreachable(f"{vendor_id} timed out")
                time.sleep(self.latency_seconds)

            failure = self._pop_failure(vendor_id)
            if failure is not None:
                if failure.is_auth:
                    self.requires_initialize = True
                raise failure
            if self.requires_initialize:
                raise AdapterError.auth_expired()

            with self._lock:
                current = self._devices.get(vendor_id)
                if current is None:
                    raise AdapterError.rejected(f"Unknown device {vendor_id}")
                if not current.is_online:
                    raise AdapterError.unreachable(f"{vendor_id} is offline")
                try:
                    updated = apply_command(current, command)
                except ValueError as exc:
                    raise AdapterError.rejected(str(exc)) from exc
                self._devices[vendor_id] = updated

            logger.debug("Simulated %s: %s -> %s", vendor_id, command.operation.value, updated.payload)
            return replace(updated, device_id=device.id)
        finally:
            with self._lock:
                self._in_flight[vendor_id] -= 1
