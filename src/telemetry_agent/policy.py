"""
Retry and circuit-breaking policies for batch delivery.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from loguru import logger

from .errors import AuthenticationError, BatchRejectedError, TransientTransportError
from .models import CircuitState, CircuitStatus

_TRANSIENT_HINTS = ("temporar", "timeout", "timed out", "unavailable", "retry", "reset", "busy")


def default_retry_classifier(exc: BaseException) -> bool:
    """True if ``exc`` looks transient and the send should be retried."""
    if isinstance(exc, (BatchRejectedError, AuthenticationError)):
        return False
    if isinstance(exc, (TransientTransportError, TimeoutError, ConnectionError)):
        return True
    msg = str(exc).lower()
    return any(h in msg for h in _TRANSIENT_HINTS)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    ``next_backoff_ms(attempt)`` is ``initial * multiplier**attempt`` plus up to
    ``jitter_ratio`` of that as random jitter, capped at ``max_backoff_ms``.
    ``attempt`` is the number of failed sends so far.
    """

    max_attempts: int = 5
    initial_backoff_ms: float = 1000
    max_backoff_ms: float = 300_000
    backoff_multiplier: float = 2.0
    jitter: bool = True
    jitter_ratio: float = 0.2
    classify_retryable: Callable[[BaseException], bool] = field(default=default_retry_classifier)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def next_backoff_ms(self, attempt: int) -> float:
        delay = self.initial_backoff_ms * (self.backoff_multiplier ** max(0, attempt))
        if self.jitter and delay > 0:
            delay += random.uniform(0, delay * self.jitter_ratio)
        return min(delay, self.max_backoff_ms)

    def exhausted(self, attempt: int) -> bool:
        return attempt >= self.max_attempts


class CircuitBreaker:
    """Consecutive-failure circuit breaker with exponential cooldown.

    closed -> open after ``failure_threshold`` consecutive failures.
    open -> half_open once the cooldown elapses; exactly one probe is allowed.
    half_open -> closed on probe success (cooldown resets), or back to open on
    probe failure with the cooldown doubled (capped at ``max_cooldown_sec``).
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        cooldown_sec: float = 30.0,
        max_cooldown_sec: float = 600.0,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[[CircuitStatus, CircuitStatus], None]] = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self._threshold = failure_threshold
        self._base_cooldown = cooldown_sec
        self._max_cooldown = max(max_cooldown_sec, cooldown_sec)
        self._clock = clock
        self._on_change = on_state_change

        self._status = CircuitStatus.CLOSED
        self._failures = 0
        self._cooldown = cooldown_sec
        self._opened_at: Optional[float] = None
        self._next_probe_at: Optional[float] = None
        self._probe_in_flight = False

    @property
    def state(self) -> CircuitStatus:
        return self._status

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def probe_in_flight(self) -> bool:
        """True while the single half-open probe is out."""
        return self._probe_in_flight

    def allow(self) -> bool:
        """Whether a send may be attempted now. Consumes the half-open probe slot."""
        if self._status is CircuitStatus.CLOSED:
            return True
        if self._status is CircuitStatus.OPEN:
            if self._clock() < (self._next_probe_at or 0.0):
                return False
            self._transition(CircuitStatus.HALF_OPEN)
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def release_probe(self) -> None:
        """Give back a half-open probe slot whose outcome says nothing about health."""
        self._probe_in_flight = False

    def record_success(self) -> None:
        self._failures = 0
        self._cooldown = self._base_cooldown
        self._probe_in_flight = False
        if self._status is not CircuitStatus.CLOSED:
            self._opened_at = None
            self._next_probe_at = None
            self._transition(CircuitStatus.CLOSED)

    def record_failure(self) -> None:
        self._failures += 1
        if self._status is CircuitStatus.HALF_OPEN:
            self._probe_in_flight = False
            self._cooldown = min(self._cooldown * 2, self._max_cooldown)
            self._open()
        elif self._status is CircuitStatus.CLOSED and self._failures >= self._threshold:
            self._open()

    def retry_after(self) -> float:
        """Seconds until the next probe is allowed (0 when not open)."""
        if self._status is not CircuitStatus.OPEN or self._next_probe_at is None:
            return 0.0
        return max(0.0, self._next_probe_at - self._clock())

    def reset(self) -> None:
        """Force the circuit closed and clear counters."""
        self._probe_in_flight = False
        self._failures = 0
        self._cooldown = self._base_cooldown
        self._opened_at = None
        self._next_probe_at = None
        if self._status is not CircuitStatus.CLOSED:
            self._transition(CircuitStatus.CLOSED)
        logger.info("Circuit manually reset")

    def snapshot(self) -> CircuitState:
        return CircuitState(
            status=self._status,
            consecutive_failures=self._failures,
            opened_at=self._opened_at,
            next_probe_at=self._next_probe_at,
            cooldown_sec=self._cooldown,
        )

    def _open(self) -> None:
        now = self._clock()
        self._opened_at = now
        self._next_probe_at = now + self._cooldown
        if self._status is not CircuitStatus.OPEN:
            self._transition(CircuitStatus.OPEN)
        logger.warning(
            f"Circuit OPEN after {self._failures} consecutive failures, "
            f"next probe in {self._cooldown:.1f}s"
        )

    def _transition(self, new: CircuitStatus) -> None:
        old, self._status = self._status, new
        logger.debug(f"Circuit {old.value} -> {new.value}")
        if self._on_change:
            self._on_change(old, new)
