from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from app.domain.access import AccessRecord
from app.domain.exceptions import (
    AdapterFailedError,
    BusyError,
    ConfigurationError,
    DataIntegrityError,
    DispatchCancelledError,
    NotAuthorizedError,
    NotFoundError,
    ValidationError,
)
from app.domain.hierarchy import Device
from app.enums.access import AccessOutcome, DenialReason, DeviceKind, LockState, Operation
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind
from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.dispatcher import DispatchRequest, DispatchSettings
from app.utils.concurrency import CancellationToken
from app.utils.time import utc_now


def _records(repo, **filters):
    return repo.query(**filters)


# ---------------------------------------------------------------------------
# End-to-end scenarios
# ---------------------------------------------------------------------------


def test_tenant_unlocks_their_own_door(dispatcher, state_cache, access_record_repo):
    snapshot = dispatcher.dispatch("eve", "D1", Operation.UNLOCK)

    assert snapshot.device_id == "D1"
    assert snapshot.lock_state == LockState.UNLOCKED
    assert state_cache.get("D1").lock_state == LockState.UNLOCKED

    records = _records(access_record_repo)
    assert len(records) == 1
    assert records[0].outcome == AccessOutcome.GRANTED_SUCCESS
    assert records[0].actor_id == "eve"
    assert records[0].operation == Operation.UNLOCK
    assert records[0].attempts == 1
    assert records[0].completed_at is not None


def test_tenant_denied_on_sibling_unit_never_reaches_the_vendor(dispatcher, adapter, access_record_repo):
    with pytest.raises(NotAuthorizedError) as exc_info:
        dispatcher.dispatch("eve", "D2", "lock")

    assert exc_info.value.decision.reason == DenialReason.NO_MATCHING_ROLE
    assert adapter.execute_calls == []

    records = _records(access_record_repo)
    assert len(records) == 1
    assert records[0].outcome == AccessOutcome.DENIED
    assert records[0].denial_reason == DenialReason.NO_MATCHING_ROLE


def test_remote_disabled_device_refuses_actuation_but_accepts_settings(dispatcher, adapter, access_record_repo):
    for operation in ("lock", "unlock"):
        with pytest.raises(NotAuthorizedError) as exc_info:
            dispatcher.dispatch("pat", "D3", operation)
        assert exc_info.value.decision.reason == DenialReason.REMOTE_OPERATION_DISABLED

    snapshot = dispatcher.dispatch("pat", "D3", "change_settings", {"settings": {"auto_lock_seconds": 30}})

    assert snapshot.payload.auto_lock_seconds == 30
    assert [call[0] for call in adapter.execute_calls] == ["D3"]
    outcomes = [r.outcome for r in _records(access_record_repo, device_id="D3")]
    assert outcomes == [AccessOutcome.DENIED, AccessOutcome.DENIED, AccessOutcome.GRANTED_SUCCESS]


def test_guest_grant_allows_unlock_inside_window(dispatcher, role_repo, guest_window, access_record_repo):
    role_repo.issue_guest_grant("gus", ["D2"], *guest_window, created_by="pat")

    assert dispatcher.dispatch("gus", "D2", "unlock").lock_state == LockState.UNLOCKED
    with pytest.raises(NotAuthorizedError):
        dispatcher.dispatch("gus", "D2", "change_settings", {"settings": {"auto_lock_seconds": 10}})

    outcomes = [r.outcome for r in _records(access_record_repo, actor_id="gus")]
    assert outcomes == [AccessOutcome.GRANTED_SUCCESS, AccessOutcome.DENIED]


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------


def test_unknown_device_is_recorded_as_denied(dispatcher, access_record_repo):
    with pytest.raises(NotFoundError):
        dispatcher.dispatch("eve", "nope", "lock")

    [record] = _records(access_record_repo)
    assert record.denial_reason == DenialReason.DEVICE_NOT_FOUND


def test_unknown_operation_name_is_rejected_before_recording(dispatcher, access_record_repo):
    with pytest.raises(ValidationError):
        dispatcher.dispatch("eve", "D1", "teleport")

    assert _records(access_record_repo) == []


def test_missing_parameters_are_recorded_as_invalid_request(dispatcher, adapter, access_record_repo):
    with pytest.raises(ValidationError):
        dispatcher.dispatch("eve", "T1", "set_temperature", {})

    [record] = _records(access_record_repo)
    assert record.denial_reason == DenialReason.INVALID_REQUEST
    assert adapter.execute_calls == []


def test_administrative_operations_are_not_dispatched(dispatcher, access_record_repo):
    with pytest.raises(ValidationError):
        dispatcher.dispatch("pat", "D1", Operation.RENAME)

    assert _records(access_record_repo)[0].denial_reason == DenialReason.INVALID_REQUEST


def test_orphaned_device_is_a_data_integrity_failure(dispatcher, seeded, access_record_repo):
    seeded.create_device(Device("X1", "Loose lock", DeviceKind.LOCK, "simulated"))

    with pytest.raises(DataIntegrityError):
        dispatcher.dispatch("olga", "X1", "lock")

    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.DENIED
    assert record.denial_reason == DenialReason.DATA_INTEGRITY


def test_device_without_adapter_fails_with_configuration_error(dispatcher, seeded, access_record_repo):
    seeded.create_device(Device("A1", "Acme lock", DeviceKind.LOCK, "Acme", unit_id="u1"))

    with pytest.raises(ConfigurationError):
        dispatcher.dispatch("eve", "A1", "unlock")

    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.GRANTED_FAILURE
    assert record.failure_reason == "adapter_not_configured"


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------


def test_rate_limits_are_retried_with_exponential_backoff(dispatcher, adapter, sleeps, access_record_repo):
    adapter.fail_next(AdapterErrorKind.RATE_LIMITED, times=2)

    dispatcher.dispatch("eve", "D1", "unlock")

    assert sleeps == [0.5, 1.0]
    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.GRANTED_SUCCESS
    assert record.attempts == 3


def test_retry_after_hint_extends_the_delay(dispatcher, adapter, sleeps):
    adapter.fail_next(AdapterErrorKind.RATE_LIMITED, retry_after=2.0)

    dispatcher.dispatch("eve", "D1", "unlock")

    assert sleeps == [2.0]


def test_unreachable_device_is_shown_offline_but_still_reachable_by_the_next_command(
    dispatcher, adapter, state_cache, access_record_repo
):
    dispatcher.dispatch("eve", "D1", "unlock")
    adapter.fail_next(AdapterErrorKind.DEVICE_UNREACHABLE, times=3)

    with pytest.raises(AdapterFailedError) as exc_info:
        dispatcher.dispatch("eve", "D1", "lock")

    assert exc_info.value.last_error.kind == AdapterErrorKind.DEVICE_UNREACHABLE
    assert exc_info.value.attempts == 3
    assert state_cache.get("D1").is_online is False

    failed = _records(access_record_repo)[-1]
    assert failed.outcome == AccessOutcome.GRANTED_FAILURE
    assert failed.failure_reason == "device_unreachable"
    assert failed.attempts == 3

    # The inferred offline flag does not gate the next command; the vendor decides.
    calls_before = len(adapter.execute_calls)
    snapshot = dispatcher.dispatch("eve", "D1", "lock")

    assert len(adapter.execute_calls) == calls_before + 1
    assert snapshot.lock_state == LockState.LOCKED
    assert state_cache.get("D1").is_online is True
    assert _records(access_record_repo)[-1].outcome == AccessOutcome.GRANTED_SUCCESS


def test_vendor_reported_offline_still_gates_commands(dispatcher, adapter, state_cache, access_record_repo):
    online = dispatcher.read_status("eve", "D1")
    state_cache.update(replace(online, is_online=False, observed_at=utc_now()), source="refresh")

    with pytest.raises(NotAuthorizedError) as denied:
        dispatcher.dispatch("eve", "D1", "lock")

    assert denied.value.decision.reason == DenialReason.DEVICE_OFFLINE
    assert adapter.execute_calls == []


@pytest.mark.parametrize("kind", [AdapterErrorKind.REJECTED, AdapterErrorKind.MALFORMED])
def test_final_errors_are_not_retried(dispatcher, adapter, sleeps, access_record_repo, kind):
    adapter.fail_next(kind, vendor_reason="door ajar")

    with pytest.raises(AdapterFailedError) as exc_info:
        dispatcher.dispatch("eve", "D1", "unlock")

    assert exc_info.value.attempts == 1
    assert sleeps == []
    [record] = _records(access_record_repo)
    assert record.failure_reason == kind.value
    assert record.details["vendor_reason"] == "door ajar"


def test_expired_credential_is_refreshed_once(dispatcher, adapter, sleeps, access_record_repo):
    adapter.fail_next(AdapterErrorKind.AUTH_EXPIRED)

    dispatcher.dispatch("eve", "D1", "unlock")

    assert adapter.initialize_count == 1
    assert sleeps == []
    assert _records(access_record_repo)[0].attempts == 2


def test_second_auth_failure_is_surfaced(dispatcher, adapter, access_record_repo):
    adapter.fail_next(AdapterErrorKind.AUTH_EXPIRED, times=2)

    with pytest.raises(AdapterFailedError) as exc_info:
        dispatcher.dispatch("eve", "D1", "unlock")

    assert exc_info.value.last_error.kind == AdapterErrorKind.AUTH_EXPIRED
    assert adapter.initialize_count == 1
    assert _records(access_record_repo)[0].failure_reason == "auth_expired"


def test_unexpected_adapter_exception_is_still_recorded(dispatcher, adapter, monkeypatch, access_record_repo):
    def explode(device, command, *, timeout=None):
        raise RuntimeError("driver bug")

    monkeypatch.setattr(adapter, "execute", explode)

    with pytest.raises(RuntimeError):
        dispatcher.dispatch("eve", "D1", "unlock")

    [record] = _records(access_record_repo)
    assert record.failure_reason == "internal_error"


def test_failed_reinitialize_after_auth_expiry_is_still_recorded(
    dispatcher, adapter, monkeypatch, access_record_repo, db_handler
):
    adapter.fail_next(AdapterErrorKind.AUTH_EXPIRED)

    def broken_initialize():
        raise ConfigurationError("no credential configured for simulated")

    monkeypatch.setattr(adapter, "initialize", broken_initialize)

    with pytest.raises(ConfigurationError):
        dispatcher.dispatch("eve", "D1", "unlock")

    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.GRANTED_FAILURE
    assert record.failure_reason == "internal_error"
    assert record.details["stage"] == "initialize"
    assert record.attempts == 1
    assert db_handler.list_dispatch_intents() == []


# ---------------------------------------------------------------------------
# Serialization and busy policy
# ---------------------------------------------------------------------------


def test_fail_fast_rejects_a_busy_device(dispatcher, access_record_repo):
    with dispatcher.locks.hold("D1"):
        with pytest.raises(BusyError):
            dispatcher.dispatch("eve", "D1", "unlock", busy_policy="fail_fast")

    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.GRANTED_FAILURE
    assert record.failure_reason == "busy"


def test_full_queue_rejects_with_busy(dispatcher, access_record_repo):
    dispatcher.locks = DeviceLockRegistry(queue_depth=0)

    with dispatcher.locks.hold("D1"):
        with pytest.raises(BusyError):
            dispatcher.dispatch("eve", "D1", "unlock")

    assert _records(access_record_repo)[0].failure_reason == "busy"


def test_other_devices_are_not_blocked(dispatcher):
    with dispatcher.locks.hold("D1"):
        snapshot = dispatcher.dispatch("tia", "D2", "unlock", busy_policy="fail_fast")

    assert snapshot.lock_state == LockState.UNLOCKED


def test_concurrent_dispatches_to_one_device_never_interleave(dispatcher, adapter, access_record_repo):
    adapter.latency_seconds = 0.05
    futures = [
        dispatcher.submit("eve", "D1", "unlock" if i % 2 else "lock")
        for i in range(4)
    ]

    for future in futures:
        future.result(timeout=10)

    assert adapter.max_concurrent_per_device == 1
    assert len(adapter.execute_calls) == 4
    assert len(_records(access_record_repo, device_id="D1")) == 4


def test_dispatch_many_collects_failures(dispatcher, access_record_repo):
    outcomes = dispatcher.dispatch_many(
        [
            DispatchRequest("eve", "D1", Operation.UNLOCK),
            DispatchRequest("eve", "D2", Operation.UNLOCK),
            DispatchRequest("pat", "L1", Operation.TURN_ON),
        ]
    )

    assert [o.ok for o in outcomes] == [True, False, True]
    assert isinstance(outcomes[1].error, NotAuthorizedError)
    assert outcomes[2].snapshot.payload.is_on is True
    assert len(_records(access_record_repo)) == 3


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancelled_while_queued_is_recorded(dispatcher, adapter, access_record_repo):
    token = CancellationToken()
    token.cancel()

    with dispatcher.locks.hold("D1"):
        with pytest.raises(DispatchCancelledError):
            dispatcher.dispatch("eve", "D1", "unlock", cancel=token)

    assert adapter.execute_calls == []
    [record] = _records(access_record_repo)
    assert record.failure_reason == "cancelled"
    assert record.details["stage"] == "queued"


def test_cancelled_during_backoff_is_recorded(dispatcher, adapter, monkeypatch, access_record_repo, db_handler):
    token = CancellationToken()

    def rate_limited_then_cancel(device, command, *, timeout=None):
        token.cancel()
        raise AdapterError.rate_limited()

    monkeypatch.setattr(adapter, "execute", rate_limited_then_cancel)

    with pytest.raises(DispatchCancelledError):
        dispatcher.dispatch("eve", "D1", "unlock", cancel=token)

    [record] = _records(access_record_repo)
    assert record.outcome == AccessOutcome.GRANTED_FAILURE
    assert record.failure_reason == "cancelled"
    assert record.attempts == 1
    assert record.details["stage"] == "retry"
    assert db_handler.list_dispatch_intents() == []


# ---------------------------------------------------------------------------
# Idempotency and durability
# ---------------------------------------------------------------------------


def test_repeated_lock_executes_twice_by_default(dispatcher, adapter, access_record_repo):
    dispatcher.dispatch("eve", "D1", "lock")
    dispatcher.dispatch("eve", "D1", "lock")

    assert len(adapter.execute_calls) == 2
    assert [r.outcome for r in _records(access_record_repo)] == [AccessOutcome.GRANTED_SUCCESS] * 2
    assert adapter.snapshot_of("D1").lock_state == LockState.LOCKED


def test_short_circuit_still_writes_a_record(dispatcher, adapter, access_record_repo):
    dispatcher.settings = DispatchSettings(idempotency_short_circuit=True, idempotency_ttl_seconds=60)

    dispatcher.dispatch("eve", "D1", "lock")
    snapshot = dispatcher.dispatch("eve", "D1", "lock")

    assert snapshot.lock_state == LockState.LOCKED
    assert len(adapter.execute_calls) == 1
    records = _records(access_record_repo)
    assert len(records) == 2
    assert records[1].details == {"short_circuit": True}


def test_short_circuit_never_applies_to_state_changes(dispatcher, adapter):
    dispatcher.settings = DispatchSettings(idempotency_short_circuit=True, idempotency_ttl_seconds=60)

    dispatcher.dispatch("eve", "D1", "lock")
    dispatcher.dispatch("eve", "D1", "unlock")

    assert len(adapter.execute_calls) == 2


def test_intent_is_durable_before_the_vendor_is_called(dispatcher, adapter, db_handler, monkeypatch):
    seen = []
    original = adapter.execute

    def spy(device, command, *, timeout=None):
        seen.extend(db_handler.list_dispatch_intents())
        return original(device, command, timeout=timeout)

    monkeypatch.setattr(adapter, "execute", spy)

    dispatcher.dispatch("eve", "D1", "unlock")

    assert len(seen) == 1
    assert seen[0]["device_id"] == "D1"
    assert db_handler.list_dispatch_intents() == []


def test_recover_closes_interrupted_dispatches(dispatcher, access_record_repo):
    access_record_repo.begin_intent(
        AccessRecord(
            device_id="D1",
            actor_id="eve",
            operation=Operation.UNLOCK,
            requested_at=utc_now(),
            outcome=AccessOutcome.GRANTED_FAILURE,
        )
    )

    [recovered] = dispatcher.recover()

    assert recovered.failure_reason == "interrupted"
    assert recovered.details["recovered"] is True
    assert _records(access_record_repo) == [recovered]
    assert dispatcher.recover() == []


def test_every_call_produces_exactly_one_record(dispatcher, adapter, access_record_repo):
    calls = 0

    def attempt(*args, **kwargs):
        nonlocal calls
        calls += 1
        try:
            dispatcher.dispatch(*args, **kwargs)
        except Exception:
            pass

    attempt("eve", "D1", "unlock")
    attempt("eve", "D2", "unlock")
    attempt("nobody", "missing", "unlock")
    adapter.fail_next(AdapterErrorKind.REJECTED)
    attempt("eve", "D1", "lock")
    with dispatcher.locks.hold("D1"):
        attempt("eve", "D1", "lock", busy_policy="fail_fast")

    assert len(_records(access_record_repo)) == calls


# ---------------------------------------------------------------------------
# Status reads
# ---------------------------------------------------------------------------


def test_read_status_populates_cache_on_first_read(dispatcher, state_cache, access_record_repo):
    snapshot = dispatcher.read_status("eve", "D1")

    assert snapshot.lock_state == LockState.LOCKED
    assert state_cache.get("D1") == snapshot
    assert _records(access_record_repo) == []


def test_read_status_serves_cache_until_refresh(dispatcher, adapter):
    first = dispatcher.read_status("eve", "D1")

    assert dispatcher.read_status("eve", "D1") is first
    assert dispatcher.read_status("eve", "D1", refresh=True).observed_at >= first.observed_at


def test_read_status_falls_back_to_cache_when_refresh_fails(dispatcher, adapter):
    first = dispatcher.read_status("eve", "D1")
    adapter.fail_next(AdapterErrorKind.RATE_LIMITED, device_id="D1")

    assert dispatcher.read_status("eve", "D1", refresh=True).payload == first.payload


def test_read_status_without_cache_surfaces_vendor_failure(dispatcher, adapter):
    adapter.fail_next(AdapterErrorKind.DEVICE_UNREACHABLE, device_id="D1")

    with pytest.raises(AdapterFailedError):
        dispatcher.read_status("eve", "D1")


def test_read_status_requires_a_matching_role(dispatcher):
    with pytest.raises(NotAuthorizedError):
        dispatcher.read_status("eve", "D2")


def test_offline_device_status_is_still_readable(dispatcher, adapter, state_cache):
    dispatcher.read_status("eve", "D1")
    state_cache.mark_connectivity("D1", False)

    assert dispatcher.read_status("eve", "D1").is_online is False


def test_refresh_waits_for_an_in_flight_command(dispatcher):
    result = []

    def refresh():
        result.append(dispatcher.read_status("eve", "D1", refresh=True))

    with dispatcher.locks.hold("D1"):
        worker = threading.Thread(target=refresh)
        worker.start()
        worker.join(timeout=0.2)
        assert result == []
    worker.join(timeout=5)

    assert len(result) == 1
