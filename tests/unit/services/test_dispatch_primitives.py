from __future__ import annotations

import threading

import pytest

from app.domain.exceptions import BusyError, DispatchCancelledError
from app.enums.access import BusyPolicy
from app.hardware.adapters.base_adapter import AdapterError, AdapterErrorKind
from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.retry import RetryPolicy
from app.utils.concurrency import CancellationToken

# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------


def test_backoff_doubles_and_is_capped():
    policy = RetryPolicy(max_attempts=10, backoff_base_seconds=0.5, backoff_max_seconds=3.0)
    error = AdapterError.unreachable()

    assert [policy.delay_for(error, n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_retry_after_raises_the_delay_within_the_cap():
    policy = RetryPolicy(backoff_base_seconds=0.5, backoff_max_seconds=8.0)

    assert policy.delay_for(AdapterError.rate_limited(retry_after=4.0), 1) == 4.0
    assert policy.delay_for(AdapterError.rate_limited(retry_after=60.0), 1) == 8.0
    assert policy.delay_for(AdapterError.rate_limited(retry_after=0.1), 2) == 1.0


@pytest.mark.parametrize("kind", [AdapterErrorKind.RATE_LIMITED, AdapterErrorKind.DEVICE_UNREACHABLE])
def test_transient_errors_retry_until_max_attempts(kind):
    policy = RetryPolicy(max_attempts=3)
    error = AdapterError(kind)

    assert policy.should_retry(error, 1, auth_retry_used=False)
    assert policy.should_retry(error, 2, auth_retry_used=False)
    assert not policy.should_retry(error, 3, auth_retry_used=False)


@pytest.mark.parametrize("error", [AdapterError.rejected("door ajar"), AdapterError.malformed()])
def test_final_errors_never_retry(error):
    assert not RetryPolicy().should_retry(error, 1, auth_retry_used=False)


def test_auth_expired_retries_once_without_delay():
    policy = RetryPolicy(max_attempts=1)
    error = AdapterError.auth_expired()

    assert policy.should_retry(error, 1, auth_retry_used=False)
    assert not policy.should_retry(error, 2, auth_retry_used=True)
    assert policy.delay_for(error, 1) == 0.0


@pytest.mark.parametrize(
    "kwargs",
    [{"max_attempts": 0}, {"backoff_base_seconds": -1}, {"backoff_max_seconds": -0.5}],
)
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


# ---------------------------------------------------------------------------
# DeviceLockRegistry
# ---------------------------------------------------------------------------


def test_hold_marks_device_busy_and_cleans_up():
    locks = DeviceLockRegistry()

    with locks.hold("D1"):
        assert locks.is_busy("D1")
        assert not locks.is_busy("D2")

    assert not locks.is_busy("D1")
    assert locks.stats() == {"devices": 0, "waiting": 0}


def test_fail_fast_raises_while_held():
    locks = DeviceLockRegistry(policy=BusyPolicy.FAIL_FAST)

    with locks.hold("D1"):
        with pytest.raises(BusyError):
            with locks.hold("D1"):
                pass
        with locks.hold("D2"):
            pass


def test_per_call_policy_overrides_default():
    locks = DeviceLockRegistry(policy=BusyPolicy.QUEUE)

    with locks.hold("D1"):
        with pytest.raises(BusyError):
            with locks.hold("D1", policy="fail_fast"):
                pass


def test_queue_full_raises():
    locks = DeviceLockRegistry(queue_depth=0)

    with locks.hold("D1"):
        with pytest.raises(BusyError) as exc_info:
            with locks.hold("D1"):
                pass

    assert exc_info.value.detail["queue_depth"] == 0


def test_waiter_runs_after_holder_releases():
    locks = DeviceLockRegistry(queue_depth=1)
    order = []
    entered = threading.Event()

    def waiter():
        with locks.hold("D1"):
            order.append("waiter")

    with locks.hold("D1"):
        worker = threading.Thread(target=waiter)
        worker.start()
        while locks.stats()["waiting"] < 1:
            entered.wait(0.01)
        order.append("holder")
    worker.join(timeout=5)

    assert order == ["holder", "waiter"]


def test_cancelled_waiter_leaves_the_queue():
    locks = DeviceLockRegistry()
    token = CancellationToken()
    errors = []

    def waiter():
        try:
            with locks.hold("D1", cancel=token):
                pass
        except DispatchCancelledError as exc:
            errors.append(exc)

    with locks.hold("D1"):
        worker = threading.Thread(target=waiter)
        worker.start()
        token.cancel()
        worker.join(timeout=5)

    assert len(errors) == 1
    assert locks.stats() == {"devices": 0, "waiting": 0}


def test_max_wait_times_out():
    locks = DeviceLockRegistry(max_wait_seconds=0.1)
    errors = []

    def waiter():
        try:
            with locks.hold("D1"):
                pass
        except BusyError as exc:
            errors.append(exc)

    with locks.hold("D1"):
        worker = threading.Thread(target=waiter)
        worker.start()
        worker.join(timeout=5)

    assert len(errors) == 1


def test_cancellation_token():
    token = CancellationToken()

    assert not token.wait(0)
    token.cancel("user pressed stop")
    token.cancel("ignored")

    assert token.cancelled
    assert token.reason == "user pressed stop"
    assert token.wait(10)
