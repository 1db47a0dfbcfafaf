"""
Circuit Breaker

Guards calls to the external AI service.  The breaker is the only writer of
its CircuitState; callers either ask ``allow_request()`` and report the
outcome with ``record_success()`` / ``record_failure()``, or let ``call()``
do both.

States:
  closed    - calls pass; FAILURE_THRESHOLD consecutive failures open it
  open      - calls are refused without a network attempt until the
              cooldown deadline passes
  half_open - exactly one trial call in flight; success closes the breaker,
              failure re-opens it with a longer (capped) cooldown
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from pashucare.core.errors import CircuitOpenError, UpstreamUnavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Single shared breaker guarding one upstream dependency.

    Args:
        failure_threshold: Consecutive failures that open the breaker.
        cooldown_seconds: Initial open period.
        backoff_multiplier: Factor applied to the cooldown after a failed
            half-open trial.
        max_cooldown_seconds: Upper bound on the cooldown.
        clock: Monotonic clock, injectable for tests.
        name: Label used in log lines.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_seconds: float = 30.0,
        backoff_multiplier: float = 2.0,
        max_cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        name: str = "ai_service",
    ) -> None:
        self.failure_threshold = failure_threshold
        self.base_cooldown = cooldown_seconds
        self.backoff_multiplier = backoff_multiplier
        self.max_cooldown = max_cooldown_seconds
        self.name = name
        self._clock = clock

        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._cooldown = cooldown_seconds
        self._open_until = 0.0
        self._trial_in_flight = False
        self._generation = 0

    # -- read side ----------------------------------------------------------

    @property
    def state(self) -> CircuitState:
        """Current state, with an elapsed cooldown reported as half_open."""
        with self._lock:
            self._advance()
            return self._state

    def describe(self) -> dict[str, Any]:
        """Read-only view for diagnostics."""
        with self._lock:
            self._advance()
            remaining = max(0.0, self._open_until - self._clock()) if self._state == CircuitState.OPEN else 0.0
            return {
                "name": self.name,
                "state": self._state.value,
                "consecutive_failures": self._failures,
                "cooldown_seconds": self._cooldown,
                "cooldown_remaining_seconds": round(remaining, 3),
                "trial_in_flight": self._trial_in_flight,
            }

    # -- permit / outcome ---------------------------------------------------

    def acquire(self) -> Optional[int]:
        """Return a permit token if the caller may attempt the call now.

        The token is the breaker generation at permit time.  Passing it back
        to ``record_success`` / ``record_failure`` discards outcomes of calls
        permitted before the breaker last changed between closed, open and
        half_open.  Returns None when the call is refused.
        """
        with self._lock:
            self._advance()
            if self._state == CircuitState.CLOSED:
                return self._generation
            if self._state == CircuitState.HALF_OPEN and not self._trial_in_flight:
                self._trial_in_flight = True
                logger.info("circuit_breaker: name=%s half_open trial permitted", self.name)
                return self._generation
            return None

    def allow_request(self) -> bool:
        """Return True if the caller may attempt the upstream call now.

        In half_open only the first caller gets a permit; everyone else is
        refused until that trial reports back.
        """
        return self.acquire() is not None

    def record_success(self, token: Optional[int] = None) -> None:
        with self._lock:
            self._advance()
            if self._is_stale(token) or self._state == CircuitState.OPEN:
                return
            if self._state == CircuitState.HALF_OPEN:
                logger.info("circuit_breaker: name=%s closed after successful trial", self.name)
                self._generation += 1
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._cooldown = self.base_cooldown
            self._trial_in_flight = False

    def record_failure(self, token: Optional[int] = None) -> None:
        with self._lock:
            self._advance()
            if self._is_stale(token):
                return
            if self._state == CircuitState.HALF_OPEN:
                self._cooldown = min(self._cooldown * self.backoff_multiplier, self.max_cooldown)
                self._trip()
                return
            if self._state == CircuitState.OPEN:
                # A call that was permitted before the breaker opened
                return
            self._failures += 1
            if self._failures >= self.failure_threshold:
                self._trip()

    def release_trial(self, token: Optional[int] = None) -> None:
        """Give back a half-open permit without recording an outcome."""
        with self._lock:
            if not self._is_stale(token):
                self._trial_in_flight = False

    # -- convenience wrapper ------------------------------------------------

    async def call(
        self,
        fn: Callable[[], Awaitable[T]],
        timeout: Optional[float] = None,
        validate: Optional[Callable[[T], Any]] = None,
    ) -> T:
        """Run ``fn`` under the breaker.

        Network errors, upstream errors, timeouts and validation failures
        all count as failures and surface as UpstreamUnavailable.

        Args:
            fn: Zero-argument coroutine factory performing the upstream call.
            timeout: Per-call timeout in seconds.
            validate: Optional callable run on the response; any exception it
                raises counts as a failure.

        Raises:
            CircuitOpenError: the breaker refused the call.
            UpstreamUnavailable: the call failed.
        """
        token = self.acquire()
        if token is None:
            raise CircuitOpenError()

        try:
            if timeout is not None:
                result = await asyncio.wait_for(fn(), timeout=timeout)
            else:
                result = await fn()
            if validate is not None:
                validate(result)
        except asyncio.CancelledError:
            self.release_trial(token)
            raise
        except asyncio.TimeoutError as exc:
            self.record_failure(token)
            logger.warning("circuit_breaker: name=%s call timed out after %ss", self.name, timeout)
            raise UpstreamUnavailable() from exc
        except UpstreamUnavailable:
            self.record_failure(token)
            raise
        except Exception as exc:
            self.record_failure(token)
            logger.warning("circuit_breaker: name=%s call failed: %s", self.name, exc)
            raise UpstreamUnavailable() from exc

        self.record_success(token)
        return result

    # -- internals (lock held) ------------------------------------------------

    def _advance(self) -> None:
        if self._state == CircuitState.OPEN and self._clock() >= self._open_until:
            self._state = CircuitState.HALF_OPEN
            self._generation += 1
            self._trial_in_flight = False

    def _is_stale(self, token: Optional[int]) -> bool:
        if token is None or token == self._generation:
            return False
        logger.debug(
            "circuit_breaker: name=%s ignoring outcome from generation %d (now %d)",
            self.name, token, self._generation,
        )
        return True

    def _trip(self) -> None:
        self._state = CircuitState.OPEN
        self._generation += 1
        self._open_until = self._clock() + self._cooldown
        self._trial_in_flight = False
        logger.warning(
            "circuit_breaker: name=%s opened failures=%d cooldown=%.1fs",
            self.name, self._failures, self._cooldown,
        )
