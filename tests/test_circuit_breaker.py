"""Test the per-(provider, operation) circuit breaker state machine."""
import pytest

from hub.errors import CircuitOpenError
from hub.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState


def _open(cb: CircuitBreaker) -> None:
    for _ in range(cb.config.failure_threshold):
        cb.acquire()
        cb.record_failure()


def test_circuit_breaker_initial_state():
    cb = CircuitBreaker("ledger", "accounts.list")
    assert cb.state == CircuitState.CLOSED
    assert cb.consecutive_failures == 0


def test_opens_after_threshold(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    for _ in range(4):
        cb.acquire()
        cb.record_failure()
    assert cb.state == CircuitState.CLOSED

    cb.acquire()
    cb.record_failure()
    assert cb.state == CircuitState.OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        cb.acquire()
    assert exc_info.value.retry_in == pytest.approx(30.0)


def test_success_resets_failure_count(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    for _ in range(4):
        cb.acquire()
        cb.record_failure()
    cb.acquire()
    cb.record_success()
    assert cb.consecutive_failures == 0
    cb.acquire()
    cb.record_failure()
    assert cb.state == CircuitState.CLOSED


def test_half_open_admits_exactly_one_trial(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)

    clock.advance(29)
    with pytest.raises(CircuitOpenError):
        cb.acquire()

    clock.advance(1)
    cb.acquire()
    assert cb.state == CircuitState.HALF_OPEN

    with pytest.raises(CircuitOpenError) as exc_info:
        cb.acquire()
    assert exc_info.value.state == "half_open"


def test_successful_trial_closes(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)
    clock.advance(30)
    cb.acquire()
    cb.record_success()

    assert cb.state == CircuitState.CLOSED
    assert cb.consecutive_failures == 0
    assert cb.cooldown == 30.0


def test_failed_trials_grow_cooldown_up_to_cap(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)

    cooldowns = [cb.cooldown]
    for _ in range(8):
        clock.advance(cb.cooldown)
        cb.acquire()
        cb.record_failure()
        assert cb.state == CircuitState.OPEN
        cooldowns.append(cb.cooldown)

    assert cooldowns == sorted(cooldowns)
    assert cooldowns[:5] == [30.0, 60.0, 120.0, 240.0, 480.0]
    assert max(cooldowns) == 600.0
    assert cb.snapshot().reopen_count == 8


def test_rate_limits_use_separate_threshold(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    for _ in range(9):
        cb.acquire()
        cb.record_failure(rate_limited=True)

    assert cb.state == CircuitState.CLOSED
    assert cb.consecutive_failures == 0
    assert cb.snapshot().consecutive_rate_limits == 9

    cb.acquire()
    cb.record_failure(rate_limited=True)
    assert cb.state == CircuitState.OPEN


def test_late_failure_does_not_extend_cooldown(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    # admitted while closed, settles after the circuit opened
    cb.acquire()
    _open(cb)
    opened_at = cb.snapshot().opened_at

    clock.advance(20)
    cb.record_failure()

    assert cb.snapshot().opened_at == opened_at
    assert cb.cooldown == 30.0
    assert cb.snapshot().total_failures == 6
    clock.advance(10)
    cb.acquire()
    assert cb.state == CircuitState.HALF_OPEN


def test_release_resolves_half_open_trial(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)
    clock.advance(30)
    cb.acquire()
    cb.release()
    assert cb.state == CircuitState.CLOSED


def test_release_in_closed_state_changes_nothing(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    cb.acquire()
    cb.record_failure()
    cb.release()
    assert cb.consecutive_failures == 1


def test_abort_trial_lets_next_caller_try(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)
    clock.advance(30)
    cb.acquire()
    cb.abort_trial()
    cb.acquire()
    assert cb.state == CircuitState.HALF_OPEN


def test_custom_config(clock):
    config = CircuitBreakerConfig(failure_threshold=2, recovery_timeout=5.0, max_recovery_timeout=8.0)
    cb = CircuitBreaker("ledger", "accounts.list", config=config, clock=clock)
    _open(cb)
    assert cb.state == CircuitState.OPEN
    clock.advance(5)
    cb.acquire()
    cb.record_failure()
    assert cb.cooldown == 8.0


def test_snapshot_to_dict(clock):
    cb = CircuitBreaker("ledger", "accounts.list", clock=clock)
    _open(cb)
    data = cb.snapshot().to_dict()
    assert data["state"] == "open"
    assert data["consecutive_failures"] == 5
    assert data["total_failures"] == 5
