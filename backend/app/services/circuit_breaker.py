"""
MindNote Backend — Per-Provider Circuit Breaker
================================================

What:  Stops sending requests to a provider that keeps failing.
Why:   Without it, a dead provider costs every request a full probe + timeout
       before the dispatcher falls back. With it, the provider is skipped
       instantly until its recovery window passes.
Who:   One instance per registered provider, owned by AIDispatcher.

State Machine:
    CLOSED (normal operation)
        → On failure: increment failure_count
        → When failure_count >= threshold: transition to OPEN

    OPEN (provider skipped)
        → can_execute() raises CircuitBreakerOpenError immediately
        → After recovery_timeout seconds: transition to HALF_OPEN

    HALF_OPEN (testing recovery)
        → Allow ONE trial request through; other callers are rejected
          until it records an outcome or is released
        → On success: transition to CLOSED (reset failure_count)
        → On failure: transition back to OPEN (reset timer)

Thread Safety:
    Not thread-safe (plain counters). The dispatcher runs on one event loop,
    and state changes happen between awaits, never across them.
"""

import logging
import time
from typing import Callable, Optional

from app.exceptions import CircuitBreakerOpenError

logger = logging.getLogger(__name__)


class CircuitBreaker:
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(
        self,
        name: str = "provider",
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            name: Provider id, used in logs and in the raised error
            failure_threshold: Consecutive failures before opening circuit
            recovery_timeout: Seconds to wait before testing recovery
            clock: Time source; injectable for tests
        """
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None
        self._clock = clock
        self._trial_in_flight = False

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through the circuit breaker.

        Returns:
            True if the request can proceed (CLOSED or HALF_OPEN after timeout).

        Raises:
            CircuitBreakerOpenError if circuit is OPEN and recovery timeout hasn't elapsed,
            or if HALF_OPEN and its trial request has not finished yet.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = self._clock() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker for %s transitioning to HALF_OPEN after %.1fs",
                    self.name,
                    elapsed,
                )
                self.state = self.HALF_OPEN
            else:
                remaining = int(self.recovery_timeout - elapsed)
                raise CircuitBreakerOpenError(provider=self.name, recovery_time=remaining)

        # HALF_OPEN: a single trial request at a time
        if self._trial_in_flight:
            raise CircuitBreakerOpenError(provider=self.name, recovery_time=0)
        self._trial_in_flight = True
        return True

    def release_trial(self) -> None:
        """
        Give up the HALF_OPEN trial slot without recording an outcome.

        Called when the trial request never reached the provider (probe said
        unavailable, or the caller was cancelled), so the next caller may try.
        """
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker for %s transitioning to CLOSED (provider recovered)", self.name)
        self.failure_count = 0
        self._trial_in_flight = False
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        self._trial_in_flight = False

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker for %s returning to OPEN (test request failed)", self.name)
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold and self.state != self.OPEN:
            logger.warning(
                "Circuit breaker for %s OPENING after %d consecutive failures",
                self.name,
                self.failure_count,
            )
            self.state = self.OPEN

    def reset(self) -> None:
        """Force the breaker back to CLOSED (operator action)."""
        self.failure_count = 0
        self._trial_in_flight = False
        self.state = self.CLOSED
        self.last_failure_time = None
        logger.info("Circuit breaker for %s reset", self.name)
