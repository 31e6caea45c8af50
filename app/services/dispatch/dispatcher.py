"""
Command Dispatcher
==================

The single entry point for state-changing device operations.

Sequence for one dispatch:
    1. Load the device and overlay connectivity from the state cache.
    2. Ask the authorization engine. A denial is recorded and raised as
       ``NotAuthorizedError``; the adapter is never touched.
    3. Take the per-device lock (queue or fail fast).
    4. Write a provisional intent, call the adapter with retries, then
       replace the intent with the final record and update the cache.

Every call naming a known operation produces exactly one access record,
and it is durable before the call returns or raises. An unknown operation
name is rejected before any record is written, because records only carry
known operations.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, replace
from datetime import datetime
from threading import Lock
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from app.domain.access import AccessRecord
from app.domain.device_state import DeviceSnapshot, is_state_assertion
from app.domain.exceptions import (
    AdapterFailedError,
    BusyError,
    ConfigurationError,
    DataIntegrityError,
    DispatchCancelledError,
    NotAuthorizedError,
    NotFoundError,
    TenantLockError,
    ValidationError,
)
from app.domain.hierarchy import Device
from app.domain.operations import DeviceCommand, spec_for
from app.enums.access import AccessOutcome, BusyPolicy, DenialReason, FailureReason, Operation
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind
from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.retry import RetryPolicy
from app.utils.concurrency import CancellationToken
from app.utils.time import utc_now

if TYPE_CHECKING:
    from app.hardware.adapters.base_adapter import DeviceAdapter
    from app.hardware.adapters.registry import AdapterRegistry
    from app.services.audit_log import AuditLog
    from app.services.authorization.engine import AuthorizationEngine
    from app.services.protocols import EntityStore
    from app.services.state_cache import DeviceStateCache

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DispatchSettings:
    adapter_timeout_seconds: float = 10.0
    idempotency_short_circuit: bool = False
    idempotency_ttl_seconds: float = 3.0
    worker_count: int = 8


@dataclass(frozen=True)
class DispatchRequest:
    """One entry of a bulk dispatch."""

    actor_id: str
    device_id: str
    operation: Operation
    params: Mapping[str, Any] | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    request: DispatchRequest
    snapshot: DeviceSnapshot | None = None
    error: TenantLockError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class CommandDispatcher:
    """
    Authorizes, serializes, executes and audits device commands.

    All collaborators are injected; nothing here is global.
    """

    def __init__(
        self,
        entities: "EntityStore",
        engine: "AuthorizationEngine",
        adapters: "AdapterRegistry",
        cache: "DeviceStateCache",
        audit: "AuditLog",
        *,
        locks: DeviceLockRegistry | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: DispatchSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            entities: Entity store used to load devices
            engine: Authorization engine consulted before every command
            adapters: Registry resolving vendor/kind to an adapter
            cache: Shared device state cache
            audit: Audit log (journal plus file mirror)
            locks: Per-device lock registry (default: queue policy)
            retry_policy: Retry policy for vendor errors
            settings: Timeouts, idempotency and worker pool size
            clock: Time source for record timestamps
            sleep: Backoff sleep used when no cancellation token is given
        """
        self.entities = entities
        self.engine = engine
        self.adapters = adapters
        self.cache = cache
        self.audit = audit
        self.locks = locks or DeviceLockRegistry()
        self.retry_policy = retry_policy or RetryPolicy()
        self.settings = settings or DispatchSettings()
        self._clock = clock
        self._sleep = sleep
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = Lock()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def effective_device(self, device: Device) -> Device:
        """
        *device* with connectivity taken from the last vendor observation.

        An offline flag inferred from this dispatcher's own failed calls does
        not gate later commands; the next command goes to the vendor again.
        """
        is_online = self.cache.reported_online(device.id)
        if is_online is None:
            return device
        return device.with_connectivity(is_online)

    def load_device(self, device_id: str) -> Device | None:
        device = self.entities.get_device(device_id)
        return self.effective_device(device) if device is not None else None

    def _record(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation,
        requested_at: datetime,
        outcome: AccessOutcome,
        *,
        denial_reason: DenialReason | None = None,
        failure_reason: str | None = None,
        attempts: int = 0,
        details: Mapping[str, Any] | None = None,
    ) -> AccessRecord:
        return AccessRecord(
            device_id=device_id,
            actor_id=actor_id,
            operation=operation,
            requested_at=requested_at,
            outcome=outcome,
            denial_reason=denial_reason,
            failure_reason=failure_reason,
            completed_at=self._clock(),
            attempts=attempts,
            details=dict(details or {}),
        )

    def _deny(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation,
        requested_at: datetime,
        reason: DenialReason,
        **details,
    ) -> AccessRecord:
        return self.audit.record(
            self._record(
                actor_id,
                device_id,
                operation,
                requested_at,
                AccessOutcome.DENIED,
                denial_reason=reason,
                details=details,
            )
        )

    def _fail(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation,
        requested_at: datetime,
        reason: str,
        **details,
    ) -> AccessRecord:
        return self.audit.record(
            self._record(
                actor_id,
                device_id,
                operation,
                requested_at,
                AccessOutcome.GRANTED_FAILURE,
                failure_reason=reason,
                details=details,
            )
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def dispatch(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation | str,
        params: Mapping[str, Any] | None = None,
        *,
        busy_policy: BusyPolicy | str | None = None,
        cancel: CancellationToken | None = None,
    ) -> DeviceSnapshot:
        """
        Authorize and execute *operation* on *device_id* for *actor_id*.

        An unknown *operation* name raises before anything is recorded; every
        other outcome leaves exactly one access record.

        Returns:
            The state observed after the command

        Raises:
            ValidationError: unknown operation (not recorded), or bad parameters
            NotFoundError: device does not exist (recorded as denied)
            DataIntegrityError: containment chain cannot be resolved (recorded as denied)
            NotAuthorizedError: policy denial (recorded as denied)
            BusyError: device busy under fail_fast or queue full
            DispatchCancelledError: cancelled before the vendor confirmed
            AdapterFailedError: vendor call failed after retries
            ConfigurationError: no adapter for the device's vendor
        """
        op = spec_for(operation).operation
        requested_at = self._clock()

        device = self.entities.get_device(device_id)
        if device is None:
            self._deny(actor_id, device_id, op, requested_at, DenialReason.DEVICE_NOT_FOUND)
            raise NotFoundError(f"Device {device_id} not found", detail={"device_id": device_id})
        device = self.effective_device(device)

        try:
            command = DeviceCommand(op, params or {})
        except ValidationError as exc:
            self._deny(actor_id, device_id, op, requested_at, DenialReason.INVALID_REQUEST, error=str(exc))
            raise

        try:
            decision = self.engine.decide(actor_id, device, op)
        except DataIntegrityError:
            self._deny(actor_id, device_id, op, requested_at, DenialReason.DATA_INTEGRITY)
            raise
        if not decision.allowed:
            self._deny(
                actor_id,
                device_id,
                op,
                requested_at,
                decision.reason,
                matched_roles=list(decision.matched_roles),
            )
            raise NotAuthorizedError(decision)

        try:
            adapter = self.adapters.resolve(device.vendor, device.kind)
        except ConfigurationError:
            logger.error("No adapter for vendor %s (%s) of device %s", device.vendor, device.kind.value, device.id)
            self._fail(actor_id, device_id, op, requested_at, FailureReason.ADAPTER_NOT_CONFIGURED.value)
            raise

        entered = False
        try:
            with self.locks.hold(device.id, policy=busy_policy, cancel=cancel):
                entered = True
                return self._execute_locked(actor_id, device, command, adapter, requested_at, cancel)
        except BusyError as exc:
            if entered:
                raise
            logger.info("Dispatch of %s to %s rejected: %s", op.value, device_id, exc)
            self._fail(actor_id, device_id, op, requested_at, FailureReason.BUSY.value)
            raise
        except DispatchCancelledError:
            if entered:
                raise
            self._fail(actor_id, device_id, op, requested_at, FailureReason.CANCELLED.value, stage="queued")
            raise

    def _execute_locked(
        self,
        actor_id: str,
        device: Device,
        command: DeviceCommand,
        adapter: "DeviceAdapter",
        requested_at: datetime,
        cancel: CancellationToken | None,
    ) -> DeviceSnapshot:
        op = command.operation

        if self.settings.idempotency_short_circuit:
            cached = self.cache.get(device.id)
            if (
                cached is not None
                and self.cache.is_fresh(device.id, self.settings.idempotency_ttl_seconds)
                and is_state_assertion(cached, command)
            ):
                logger.debug("Short-circuiting %s on %s: cache already shows the target state", op.value, device.id)
                self.audit.record(
                    self._record(
                        actor_id,
                        device.id,
                        op,
                        requested_at,
                        AccessOutcome.GRANTED_SUCCESS,
                        details={"short_circuit": True},
                    )
                )
                return cached

        intent_id = self.audit.begin(
            AccessRecord(
                device_id=device.id,
                actor_id=actor_id,
                operation=op,
                requested_at=requested_at,
                outcome=AccessOutcome.GRANTED_FAILURE,
                failure_reason=FailureReason.INTERRUPTED.value,
                details={"params": dict(command.params)},
            )
        )

        attempts = 0
        auth_retry_used = False
        last_error: AdapterError | None = None

        def finish(outcome: AccessOutcome, failure_reason: str | None = None, **details) -> AccessRecord:
            return self.audit.complete(
                intent_id,
                self._record(
                    actor_id,
                    device.id,
                    op,
                    requested_at,
                    outcome,
                    failure_reason=failure_reason,
                    attempts=attempts,
                    details=details,
                ),
            )

        def cancelled() -> DispatchCancelledError:
            finish(AccessOutcome.GRANTED_FAILURE, FailureReason.CANCELLED.value, stage="retry")
            logger.info("Dispatch of %s to %s cancelled after %d attempt(s)", op.value, device.id, attempts)
            return DispatchCancelledError(
                f"Dispatch of {op.value} to {device.id} cancelled",
                detail={"device_id": device.id, "attempts": attempts},
            )

        while True:
            if cancel is not None and cancel.cancelled:
                raise cancelled()

            attempts += 1
            try:
                snapshot = adapter.execute(device, command, timeout=self.settings.adapter_timeout_seconds)
            except AdapterError as err:
                last_error = err
                if not self.retry_policy.should_retry(err, attempts, auth_retry_used=auth_retry_used):
                    break
                logger.warning(
                    "Attempt %d of %s on %s failed (%s); retrying",
                    attempts,
                    op.value,
                    device.id,
                    err.kind.value,
                )
                if err.is_auth:
                    auth_retry_used = True
                    try:
                        adapter.initialize()
                    except AdapterError as init_err:
                        last_error = init_err
                        break
                    except Exception as exc:
                        logger.exception("Re-initializing %s failed unexpectedly for %s", adapter, device.id)
                        finish(
                            AccessOutcome.GRANTED_FAILURE,
                            FailureReason.INTERNAL_ERROR.value,
                            error=type(exc).__name__,
                            stage="initialize",
                        )
                        raise
                    continue
                delay = self.retry_policy.delay_for(err, attempts)
                if cancel is not None:
                    if cancel.wait(delay):
                        raise cancelled()
                elif delay > 0:
                    self._sleep(delay)
                continue
            except Exception as exc:
                logger.exception("Adapter %s raised unexpectedly for %s", adapter, device.id)
                finish(AccessOutcome.GRANTED_FAILURE, FailureReason.INTERNAL_ERROR.value, error=type(exc).__name__)
                raise

            snapshot = replace(snapshot, device_id=device.id)
            self.cache.update(snapshot, source="dispatch")
            finish(AccessOutcome.GRANTED_SUCCESS)
            logger.info("%s on %s by %s succeeded after %d attempt(s)", op.value, device.id, actor_id, attempts)
            return snapshot

        if last_error.kind == AdapterErrorKind.DEVICE_UNREACHABLE:
            self.cache.mark_connectivity(device.id, False, inferred=True)
        finish(
            AccessOutcome.GRANTED_FAILURE,
            last_error.kind.value,
            vendor_reason=last_error.vendor_reason,
            error=str(last_error),
        )
        logger.warning(
            "%s on %s failed after %d attempt(s): %s",
            op.value,
            device.id,
            attempts,
            last_error.kind.value,
        )
        raise AdapterFailedError(
            f"{op.value} on {device.id} failed: {last_error}",
            last_error=last_error,
            attempts=attempts,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def read_status(self, actor_id: str, device_id: str, *, refresh: bool = False) -> DeviceSnapshot:
        """
        Return the device's state, from the cache unless *refresh* is set or
        nothing is cached yet.

        Raises:
            NotFoundError, DataIntegrityError, NotAuthorizedError,
            AdapterFailedError (refresh failed and nothing is cached)
        """
        device = self.load_device(device_id)
        if device is None:
            raise NotFoundError(f"Device {device_id} not found", detail={"device_id": device_id})
        decision = self.engine.decide(actor_id, device, Operation.READ_STATUS)
        if not decision.allowed:
            raise NotAuthorizedError(decision)

        cached = self.cache.get(device.id)
        if cached is not None and not refresh:
            return cached
        return self.refresh_status(device, fallback=cached)

    def refresh_status(self, device: Device, *, fallback: DeviceSnapshot | None = None) -> DeviceSnapshot:
        """Read *device* from its adapter, serialized with commands to the same device."""
        adapter = self.adapters.resolve(device.vendor, device.kind)
        try:
            with self.locks.hold(device.id, policy=BusyPolicy.QUEUE):
                snapshot = adapter.get_status(device, timeout=self.settings.adapter_timeout_seconds)
        except AdapterError as err:
            if err.kind == AdapterErrorKind.DEVICE_UNREACHABLE:
                self.cache.mark_connectivity(device.id, False, inferred=True)
            if fallback is not None:
                logger.warning("Status refresh for %s failed (%s); serving cached state", device.id, err.kind.value)
                return self.cache.get(device.id) or fallback
            raise AdapterFailedError(f"Status read for {device.id} failed: {err}", last_error=err, attempts=1) from err

        snapshot = replace(snapshot, device_id=device.id)
        self.cache.update(snapshot, source="status")
        return self.cache.get(device.id) or snapshot

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def _pool(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=max(1, self.settings.worker_count),
                    thread_name_prefix="DispatchWorker",
                )
            return self._executor

    def submit(
        self,
        actor_id: str,
        device_id: str,
        operation: Operation | str,
        params: Mapping[str, Any] | None = None,
        *,
        busy_policy: BusyPolicy | str | None = None,
        cancel: CancellationToken | None = None,
    ) -> "Future[DeviceSnapshot]":
        """Run :meth:`dispatch` on the worker pool."""
        return self._pool().submit(
            self.dispatch,
            actor_id,
            device_id,
            operation,
            params,
            busy_policy=busy_policy,
            cancel=cancel,
        )

    def dispatch_many(
        self,
        requests: Iterable[DispatchRequest],
        *,
        busy_policy: BusyPolicy | str = BusyPolicy.FAIL_FAST,
        cancel: CancellationToken | None = None,
    ) -> list[DispatchOutcome]:
        """
        Dispatch a batch in parallel (bulk and automation callers).

        Each request still produces its own record; failures are collected
        rather than raised.
        """
        requests = list(requests)
        futures = [
            self.submit(r.actor_id, r.device_id, r.operation, r.params, busy_policy=busy_policy, cancel=cancel)
            for r in requests
        ]
        outcomes = []
        for request, future in zip(requests, futures):
            try:
                outcomes.append(DispatchOutcome(request, snapshot=future.result()))
            except TenantLockError as exc:
                outcomes.append(DispatchOutcome(request, error=exc))
        return outcomes

    def recover(self) -> list[AccessRecord]:
        """Close intents left by a previous process; call once at start-up."""
        return self.audit.recover()

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
