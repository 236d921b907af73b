"""
Call policy for the identity authority: per-attempt timeout, bounded
exponential backoff, and a circuit breaker that fails fast while open.

The policy is composed once and shared by every caller, so breaker state
reflects the health of the authority across all requests.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from enum import Enum

import structlog

from membership_service.core.config import Settings
from membership_service.core.exceptions import AuthorityRejected, AuthorityUnavailable
from membership_service.core.identity import AuthorityError

log = structlog.get_logger()


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED → OPEN after ``failure_threshold`` consecutive failures.
    OPEN → HALF_OPEN once ``reset_timeout`` seconds have passed; a single
    trial call is let through. Success closes the circuit, failure reopens it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._failure_threshold = failure_threshold
        self._reset_timeout = reset_timeout
        self._clock = clock
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._trial_in_flight = False

    @property
    def state(self) -> BreakerState:
        if self._state == BreakerState.OPEN and self._clock() - self._opened_at >= self._reset_timeout:
            return BreakerState.HALF_OPEN
        return self._state

    def before_call(self) -> None:
        """Raise ``AuthorityUnavailable`` if calls are currently refused."""
        state = self.state
        if state == BreakerState.CLOSED:
            return
        if state == BreakerState.HALF_OPEN and not self._trial_in_flight:
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = True
            return
        raise AuthorityUnavailable("Identity authority circuit is open")

    def record_success(self) -> None:
        if self._state != BreakerState.CLOSED:
            log.info("authority.circuit_closed")
        self._state = BreakerState.CLOSED
        self._failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self._failures += 1
        self._trial_in_flight = False
        if self._state == BreakerState.HALF_OPEN or self._failures >= self._failure_threshold:
            if self._state != BreakerState.OPEN:
                log.warning("authority.circuit_opened", failures=self._failures)
            self._state = BreakerState.OPEN
            self._opened_at = self._clock()

    def release_trial(self) -> None:
        """Drop a half-open trial that ended without an outcome; the circuit reopens."""
        if not self._trial_in_flight:
            return
        self._trial_in_flight = False
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        log.warning("authority.trial_abandoned")


class AuthorityPolicy:
    """Retry with exponential backoff behind a circuit breaker."""

    def __init__(
        self,
        breaker: CircuitBreaker | None = None,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 5.0,
        attempt_timeout: float = 5.0,
    ) -> None:
        self.breaker = breaker or CircuitBreaker()
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._attempt_timeout = attempt_timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> AuthorityPolicy:
        return cls(
            breaker=CircuitBreaker(
                failure_threshold=settings.authority_breaker_failure_threshold,
                reset_timeout=settings.authority_breaker_reset_seconds,
            ),
            max_attempts=settings.authority_max_attempts,
            backoff_base=settings.authority_backoff_base_seconds,
            backoff_max=settings.authority_backoff_max_seconds,
            attempt_timeout=settings.authority_timeout_seconds,
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (1-based)."""
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)

    async def call(self, operation: str, fn: Callable[[], Awaitable[None]]) -> None:
        """Run ``fn`` under the policy.

        Raises ``AuthorityUnavailable`` when the circuit is open or transient
        failures exhaust the attempts, ``AuthorityRejected`` on a definitive
        refusal (never retried).
        """
        last_exc: Exception | None = None
        for attempt in range(1, self._max_attempts + 1):
            self.breaker.before_call()
            try:
                await asyncio.wait_for(fn(), timeout=self._attempt_timeout)
            except AuthorityError as exc:
                if not exc.transient:
                    # The authority answered, so it is healthy
                    self.breaker.record_success()
                    log.error("authority.rejected", operation=operation, status=exc.status, error=str(exc))
                    raise AuthorityRejected(str(exc)) from exc
                last_exc = exc
            except asyncio.TimeoutError as exc:
                last_exc = exc
            except BaseException:
                # Cancelled or failed outside the authority protocol
                self.breaker.release_trial()
                raise
            else:
                self.breaker.record_success()
                return

            self.breaker.record_failure()
            if attempt == self._max_attempts:
                break
            delay = self.backoff(attempt)
            log.warning(
                "authority.retry",
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(last_exc) or type(last_exc).__name__,
            )
            await asyncio.sleep(delay)

        log.error("authority.unavailable", operation=operation, attempts=self._max_attempts)
        raise AuthorityUnavailable(
            f"Identity authority unavailable for {operation}"
        ) from last_exc
