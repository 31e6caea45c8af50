"""
Device State Cache
==================

Last-known snapshot per device, written by the dispatcher and the
background refresher.

Reads never take a lock: writers build a new mapping and swap the
reference, so a reader always sees one complete generation. Writes are
monotonic in ``observed_at``; an older observation (e.g. a refresh that
started before a dispatch finished) is ignored.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict, deque
from dataclasses import replace
from datetime import datetime, timedelta
from types import MappingProxyType
from typing import Callable, Mapping

from app.domain.device_state import DeviceSnapshot
from app.utils.concurrency import synchronized
from app.utils.time import utc_now

logger = logging.getLogger(__name__)


class DeviceStateCache:
    """Snapshot-consistent cache of device state."""

    def __init__(self, *, history_per_device: int = 20, clock: Callable[[], datetime] = utc_now):
        """
        Args:
            history_per_device: Snapshots kept per device for diagnostics (0 keeps none)
            clock: Time source used for freshness checks
        """
        self._lock = threading.Lock()
        self._clock = clock
        self._snapshots: Mapping[str, DeviceSnapshot] = MappingProxyType({})
        # Devices whose offline flag was inferred from failed calls, not reported by the vendor.
        self._inferred_offline: frozenset[str] = frozenset()
        self._history_size = max(0, history_per_device)
        self._history: dict[str, deque[DeviceSnapshot]] = defaultdict(lambda: deque(maxlen=self._history_size))

    # ------------------------------------------------------------------
    # Reads (lock-free)
    # ------------------------------------------------------------------

    def get(self, device_id: str) -> DeviceSnapshot | None:
        return self._snapshots.get(device_id)

    def snapshot(self) -> Mapping[str, DeviceSnapshot]:
        """The current generation; stays unchanged while the caller holds it."""
        return self._snapshots

    def is_fresh(self, device_id: str, ttl_seconds: float, *, now: datetime | None = None) -> bool:
        current = self._snapshots.get(device_id)
        if current is None or ttl_seconds <= 0:
            return False
        age = (now or self._clock()) - current.observed_at
        return age <= timedelta(seconds=ttl_seconds)

    def reported_online(self, device_id: str) -> bool | None:
        """
        Connectivity as last reported by the vendor.

        ``None`` when nothing is cached or the cached offline flag was only
        inferred from failed calls.
        """
        current = self._snapshots.get(device_id)
        if current is None or device_id in self._inferred_offline:
            return None
        return current.is_online

    def history(self, device_id: str) -> list[DeviceSnapshot]:
        with self._lock:
            return list(self._history.get(device_id, ()))

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._snapshots

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @synchronized
    def update(self, snapshot: DeviceSnapshot, *, source: str = "dispatch") -> bool:
        """
        Store *snapshot* unless a newer one is already cached.

        Returns:
            True if the cache changed
        """
        current = self._snapshots.get(snapshot.device_id)
        if current is not None and current.observed_at > snapshot.observed_at:
            logger.debug(
                "Ignoring stale %s snapshot for %s (%s < %s)",
                source,
                snapshot.device_id,
                snapshot.observed_at,
                current.observed_at,
            )
            return False

        generation = dict(self._snapshots)
        generation[snapshot.device_id] = snapshot
        self._snapshots = MappingProxyType(generation)
        self._inferred_offline -= {snapshot.device_id}
        if self._history_size:
            self._history[snapshot.device_id].append(snapshot)
        return True

    @synchronized
    def mark_connectivity(
        self,
        device_id: str,
        is_online: bool,
        *,
        observed_at: datetime | None = None,
        inferred: bool = False,
    ) -> bool:
        """
        Record reachability without touching the payload.

        ``inferred`` marks an offline flag derived from failed calls rather
        than reported by the vendor; ``reported_online`` ignores such flags.
        """
        current = self._snapshots.get(device_id)
        if current is None or current.is_online == is_online:
            return False
        observed_at = observed_at or self._clock()
        if observed_at < current.observed_at:
            return False
        generation = dict(self._snapshots)
        generation[device_id] = replace(current, is_online=is_online, observed_at=observed_at)
        guessed = inferred and not is_online
        if guessed:
            self._inferred_offline |= {device_id}
        self._snapshots = MappingProxyType(generation)
        if not guessed:
            self._inferred_offline -= {device_id}
        logger.info("Device %s is now %s", device_id, "online" if is_online else "offline")
        return True

    @synchronized
    def remove(self, device_id: str) -> None:
        if device_id not in self._snapshots:
            return
        generation = dict(self._snapshots)
        generation.pop(device_id, None)
        self._snapshots = MappingProxyType(generation)
        self._history.pop(device_id, None)
        self._inferred_offline -= {device_id}
