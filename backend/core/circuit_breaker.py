"""Circuit breaker for outbound webhook destinations.

Stops hammering destinations that keep failing. After N consecutive
failures for a hostname, the breaker opens and rejects calls for a
cooldown period, then lets a probe through in half-open state.

State is owned by a single CircuitBreaker instance (one per HTTP client)
and is only touched from synchronous methods, so no await point ever
interleaves two updates on the event loop.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Optional

from core.exceptions import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Breaker states."""
    CLOSED = "closed"
    HALF_OPEN = "half-open"
    OPEN = "open"


@dataclass
class CircuitBreakerState:
    """Per-hostname breaker record. Created lazily on first failure."""
    failures: int = 0
    last_failure_time: float = 0.0
    state: CircuitState = CircuitState.CLOSED
    half_open_calls: int = 0


class CircuitBreaker:
    """Per-hostname circuit breaker for HTTP requests."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        half_open_max: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max = half_open_max
        self._clock = clock
        self._breakers: dict[str, CircuitBreakerState] = {}

    def check(self, hostname: str) -> None:
        """Admit a call to hostname or raise CircuitOpenError."""
        breaker = self._breakers.get(hostname)
        if breaker is None or breaker.state == CircuitState.CLOSED:
            return

        if breaker.state == CircuitState.OPEN:
            elapsed = self._clock() - breaker.last_failure_time
            if elapsed < self.reset_timeout:
                remaining = self.reset_timeout - elapsed
                logger.warning(f"Circuit OPEN for {hostname}, {remaining:.1f}s remaining")
                raise CircuitOpenError(
                    hostname,
                    breaker.failures,
                    retry_at=datetime.now(timezone.utc) + timedelta(seconds=remaining),
                )
            breaker.state = CircuitState.HALF_OPEN
            breaker.half_open_calls = 0
            logger.info(f"Circuit half-open for {hostname} after {elapsed:.1f}s cooldown")

        # half-open: allow a limited number of probes
        if breaker.half_open_calls >= self.half_open_max:
            raise CircuitOpenError(hostname, breaker.failures)
        breaker.half_open_calls += 1

    def record_success(self, hostname: str) -> None:
        """Record a successful request. Closes a half-open circuit."""
        breaker = self._breakers.get(hostname)
        if breaker is None:
            return
        if breaker.state != CircuitState.CLOSED:
            logger.info(f"Circuit CLOSED for {hostname} after successful request")
        breaker.failures = 0
        breaker.half_open_calls = 0
        breaker.state = CircuitState.CLOSED

    def record_failure(self, hostname: str, error: Optional[str] = None) -> None:
        """Record a failed request. May trip or re-open the breaker."""
        breaker = self._breakers.setdefault(hostname, CircuitBreakerState())
        breaker.failures += 1
        breaker.last_failure_time = self._clock()

        if breaker.state == CircuitState.HALF_OPEN:
            breaker.state = CircuitState.OPEN
            breaker.half_open_calls = 0
            logger.error(
                f"Circuit RE-OPENED for {hostname} after failed probe. "
                f"Cooldown: {self.reset_timeout}s. Last error: {error}"
            )
        elif breaker.failures >= self.failure_threshold and breaker.state != CircuitState.OPEN:
            breaker.state = CircuitState.OPEN
            logger.error(
                f"Circuit OPENED for {hostname} after "
                f"{breaker.failures} consecutive failures. "
                f"Cooldown: {self.reset_timeout}s. Last error: {error}"
            )

    def release(self, hostname: str) -> None:
        """Give back a half-open probe slot whose call never finished (cancelled)."""
        breaker = self._breakers.get(hostname)
        if breaker and breaker.state == CircuitState.HALF_OPEN and breaker.half_open_calls > 0:
            breaker.half_open_calls -= 1

    def get_state(self, hostname: str) -> Optional[CircuitBreakerState]:
        """Breaker record for hostname, or None if it never failed (healthy)."""
        return self._breakers.get(hostname)

    def get_status(self) -> dict:
        """Get status of all tracked hostnames."""
        return {
            hostname: {
                "state": breaker.state.value,
                "failures": breaker.failures,
                "last_failure": breaker.last_failure_time,
            }
            for hostname, breaker in self._breakers.items()
        }

    def reset(self, hostname: Optional[str] = None) -> None:
        """Reset breaker for a hostname or all hostnames."""
        if hostname:
            self._breakers.pop(hostname, None)
        else:
            self._breakers.clear()
