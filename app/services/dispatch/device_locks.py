"""
Per-device dispatch serialization.

At most one dispatch per device id runs at a time. Unrelated devices never
contend: each device has its own lock, created on first use and dropped when
nobody holds or waits for it.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator

from app.domain.exceptions import BusyError, DispatchCancelledError
from app.enums.access import BusyPolicy
from app.utils.concurrency import CancellationToken

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.05


@dataclass
class _Slot:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0  # holder plus waiters


class DeviceLockRegistry:
    """
    Per-device locks with a bounded wait queue.

    ``queue`` waits behind the current holder as long as fewer than
    ``queue_depth`` callers are already waiting; ``fail_fast`` raises
    ``BusyError`` whenever the device is held.
    """

    def __init__(
        self,
        *,
        queue_depth: int = 4,
        policy: BusyPolicy = BusyPolicy.QUEUE,
        max_wait_seconds: float | None = None,
    ):
        self.queue_depth = max(0, queue_depth)
        self.policy = BusyPolicy(policy)
        self.max_wait_seconds = max_wait_seconds
        self._guard = threading.Lock()
        self._slots: dict[str, _Slot] = {}

    def _enter(self, device_id: str, policy: BusyPolicy) -> _Slot:
        with self._guard:
            slot = self._slots.setdefault(device_id, _Slot())
            if slot.users > 0:
                if policy == BusyPolicy.FAIL_FAST:
                    raise BusyError(f"Device {device_id} is busy", detail={"device_id": device_id})
                waiting = slot.users - 1
                if waiting >= self.queue_depth:
                    raise BusyError(
                        f"Device {device_id} is busy and its queue is full",
                        detail={"device_id": device_id, "queue_depth": self.queue_depth},
                    )
            slot.users += 1
            return slot

    def _leave(self, device_id: str, slot: _Slot) -> None:
        with self._guard:
            slot.users -= 1
            if slot.users == 0 and self._slots.get(device_id) is slot:
                del self._slots[device_id]

    @contextmanager
    def hold(
        self,
        device_id: str,
        *,
        policy: BusyPolicy | None = None,
        cancel: CancellationToken | None = None,
    ) -> Iterator[None]:
        """
        Hold the device's lock for the duration of the ``with`` block.

        Raises:
            BusyError: device busy under fail_fast, queue full, or max wait exceeded
            DispatchCancelledError: cancelled while waiting
        """
        policy = BusyPolicy(policy) if policy is not None else self.policy
        slot = self._enter(device_id, policy)
        acquired = False
        try:
            deadline = None if self.max_wait_seconds is None else time.monotonic() + self.max_wait_seconds
            while not acquired:
                if cancel is not None and cancel.cancelled:
                    raise DispatchCancelledError(
                        f"Dispatch to {device_id} cancelled while queued", detail={"device_id": device_id}
                    )
                acquired = slot.lock.acquire(timeout=_POLL_INTERVAL)
                if not acquired and deadline is not None and time.monotonic() >= deadline:
                    raise BusyError(
                        f"Timed out waiting for device {device_id}", detail={"device_id": device_id}
                    )
            yield
        finally:
            if acquired:
                slot.lock.release()
            self._leave(device_id, slot)

    def is_busy(self, device_id: str) -> bool:
        with self._guard:
            slot = self._slots.get(device_id)
            return slot is not None and slot.users > 0

    def stats(self) -> dict[str, int]:
        with self._guard:
            return {
                "devices": len(self._slots),
                "waiting": sum(max(0, s.users - 1) for s in self._slots.values()),
            }
