"""
State Refresher: periodic background pull of device state from every vendor.

Each cycle asks every registered adapter for ``fetch_devices()`` on a bounded
worker pool and writes the snapshots of known devices into the shared state
cache. Cache writes are monotonic in ``observed_at``, so a cycle that started
before a dispatch finished cannot overwrite the dispatch result.

Usage:
    refresher = StateRefresher(adapters, entities, cache, interval_seconds=300)
    refresher.start()
    ...
    refresher.stop()
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from app.hardware.adapters.base_adapter import AdapterError

if TYPE_CHECKING:
    from app.hardware.adapters.base_adapter import DeviceAdapter
    from app.hardware.adapters.registry import AdapterRegistry
    from app.services.state_cache import DeviceStateCache

logger = logging.getLogger(__name__)


@dataclass
class RefreshReport:
    """Result of one refresh cycle."""

    updated: int = 0
    stale: int = 0
    unknown: int = 0
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"updated": self.updated, "stale": self.stale, "unknown": self.unknown, "errors": dict(self.errors)}


class StateRefresher:
    """Daemon loop that keeps the state cache warm between commands."""

    def __init__(
        self,
        adapters: "AdapterRegistry",
        entities,
        cache: "DeviceStateCache",
        *,
        interval_seconds: float = 300.0,
        max_workers: int = 4,
        adapter_timeout_seconds: float = 10.0,
    ):
        """
        Args:
            adapters: Registry whose adapters are polled
            entities: Entity repository; needs ``list_devices(vendor)``
            cache: Shared device state cache
            interval_seconds: Pause between cycles (0 disables the loop)
            max_workers: Adapters polled in parallel
            adapter_timeout_seconds: Budget for one ``fetch_devices`` call
        """
        self.adapters = adapters
        self.entities = entities
        self.cache = cache
        self.interval = float(interval_seconds)
        self.max_workers = max(1, max_workers)
        self.adapter_timeout = adapter_timeout_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._executor: ThreadPoolExecutor | None = None
        self._cycles = 0
        self.last_report: RefreshReport | None = None

    # ==================== Control ====================

    def start(self) -> None:
        if self.interval <= 0:
            logger.info("State refresh disabled (interval %s)", self.interval)
            return
        if self.is_running():
            logger.warning("StateRefresher already running")
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="StateRefresh")
        self._thread = threading.Thread(target=self._run_loop, daemon=True, name="StateRefresher")
        self._thread.start()
        logger.info("StateRefresher started (every %.0fs)", self.interval)

    def stop(self, wait: bool = True, timeout: float = 5.0) -> None:
        self._stop.set()
        if wait and self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.refresh_once()
            except Exception:
                logger.exception("State refresh cycle failed")
            self._stop.wait(self.interval)

    # ==================== Refresh ====================

    def refresh_once(self) -> RefreshReport:
        """Run one cycle synchronously and return what it did."""
        report = RefreshReport()
        adapters = self.adapters.adapters()

        if self._executor is not None:
            pending = [(a, self._executor.submit(self._refresh_adapter, a)) for a in adapters]
            results = [(adapter, future.result) for adapter, future in pending]
        else:
            results = [(adapter, lambda a=adapter: self._refresh_adapter(a)) for adapter in adapters]

        for adapter, collect in results:
            try:
                updated, stale, unknown = collect()
            except AdapterError as err:
                report.errors[adapter.vendor] = err.kind.value
                logger.warning("Refresh of %s failed: %s", adapter.vendor, err)
                continue
            report.updated += updated
            report.stale += stale
            report.unknown += unknown

        self._cycles += 1
        self.last_report = report
        logger.debug("Refresh cycle %d: %s", self._cycles, report.to_dict())
        return report

    def _refresh_adapter(self, adapter: "DeviceAdapter") -> tuple[int, int, int]:
        known = {
            device.vendor_device_id: device
            for device in self.entities.list_devices(vendor=adapter.vendor)
            if adapter.supports_kind(device.kind)
        }
        updated = stale = unknown = 0
        for snapshot in adapter.fetch_devices(timeout=self.adapter_timeout):
            device = known.get(snapshot.device_id)
            if device is None or device.kind != snapshot.kind:
                unknown += 1
                continue
            if self.cache.update(replace(snapshot, device_id=device.id), source="refresh"):
                updated += 1
            else:
                stale += 1
        return updated, stale, unknown

    def get_status(self) -> dict:
        return {
            "running": self.is_running(),
            "interval_seconds": self.interval,
            "cycles": self._cycles,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }
