"""Tests for the per-hostname circuit breaker."""

import pytest

from core.circuit_breaker import CircuitBreaker, CircuitState
from core.exceptions import CircuitOpenError


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout=60.0, clock=clock)


def trip(breaker: CircuitBreaker, hostname: str = "api.example.com") -> None:
    for _ in range(breaker.failure_threshold):
        breaker.check(hostname)
        breaker.record_failure(hostname, "HTTP 503")


@pytest.mark.unit
class TestCircuitBreaker:
    def test_unknown_host_is_closed(self, breaker):
        breaker.check("api.example.com")
        assert breaker.get_state("api.example.com") is None

    def test_opens_at_threshold(self, breaker):
        breaker.record_failure("api.example.com")
        breaker.record_failure("api.example.com")
        assert breaker.get_state("api.example.com").state == CircuitState.CLOSED

        breaker.record_failure("api.example.com")
        assert breaker.get_state("api.example.com").state == CircuitState.OPEN

    def test_open_rejects_with_retry_time(self, breaker):
        trip(breaker)

        with pytest.raises(CircuitOpenError) as exc_info:
            breaker.check("api.example.com")

        assert exc_info.value.hostname == "api.example.com"
        assert exc_info.value.failures == 3
        assert exc_info.value.retry_at is not None
        assert exc_info.value.retryable is True

    def test_hosts_are_isolated(self, breaker):
        trip(breaker, "bad.example.com")

        breaker.check("good.example.com")

    def test_success_resets_failure_count(self, breaker):
        breaker.record_failure("api.example.com")
        breaker.record_failure("api.example.com")
        breaker.record_success("api.example.com")
        breaker.record_failure("api.example.com")

        state = breaker.get_state("api.example.com")
        assert state.failures == 1
        assert state.state == CircuitState.CLOSED

    def test_half_open_after_cooldown_allows_one_probe(self, breaker, clock):
        trip(breaker)
        clock.advance(60)

        breaker.check("api.example.com")
        assert breaker.get_state("api.example.com").state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenError):
            breaker.check("api.example.com")

    def test_successful_probe_closes(self, breaker, clock):
        trip(breaker)
        clock.advance(61)
        breaker.check("api.example.com")

        breaker.record_success("api.example.com")

        state = breaker.get_state("api.example.com")
        assert state.state == CircuitState.CLOSED
        assert state.failures == 0

    def test_failed_probe_reopens(self, breaker, clock):
        trip(breaker)
        clock.advance(61)
        breaker.check("api.example.com")

        breaker.record_failure("api.example.com", "HTTP 500")

        assert breaker.get_state("api.example.com").state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            breaker.check("api.example.com")

    def test_released_probe_slot_can_be_reused(self, breaker, clock):
        trip(breaker)
        clock.advance(61)
        breaker.check("api.example.com")

        breaker.release("api.example.com")

        breaker.check("api.example.com")

    def test_status_and_reset(self, breaker):
        trip(breaker, "a.example.com")
        breaker.record_failure("b.example.com")

        status = breaker.get_status()
        assert status["a.example.com"]["state"] == "open"
        assert status["b.example.com"]["failures"] == 1

        breaker.reset("a.example.com")
        assert breaker.get_state("a.example.com") is None
        assert breaker.get_state("b.example.com") is not None

        breaker.reset()
        assert breaker.get_status() == {}
