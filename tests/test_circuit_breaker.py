import pytest

from kai_matching.core.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError, CircuitState

from .conftest import run


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


async def ok():
    return "ok"


async def boom():
    raise RuntimeError("boom")


def test_opens_after_threshold_and_recovers():
    clock = Clock()
    breaker = CircuitBreaker(name="test", failure_threshold=2, timeout=30, clock=clock)

    for _ in range(2):
        with pytest.raises(RuntimeError):
            run(breaker.call(boom))
    assert breaker.state == CircuitState.OPEN

    # 1. rejected without calling through while open
    with pytest.raises(CircuitBreakerOpenError):
        run(breaker.call(ok))

    # 2. after the timeout one probe is let through and closes the circuit
    clock.now = 31
    assert run(breaker.call(ok)) == "ok"
    assert breaker.state == CircuitState.CLOSED


def test_failed_probe_reopens():
    clock = Clock()
    breaker = CircuitBreaker(name="test", failure_threshold=1, timeout=10, clock=clock)

    with pytest.raises(RuntimeError):
        run(breaker.call(boom))
    clock.now = 11
    with pytest.raises(RuntimeError):
        run(breaker.call(boom))

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitBreakerOpenError):
        run(breaker.call(ok))


def test_success_resets_failure_count():
    breaker = CircuitBreaker(name="test", failure_threshold=2, timeout=10)

    with pytest.raises(RuntimeError):
        run(breaker.call(boom))
    run(breaker.call(ok))
    with pytest.raises(RuntimeError):
        run(breaker.call(boom))

    assert breaker.state == CircuitState.CLOSED


def test_rejects_non_positive_threshold():
    with pytest.raises(ValueError):
        CircuitBreaker(name="test", failure_threshold=0)
