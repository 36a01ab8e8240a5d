"""
Retry/backoff manager.

Drives a single batch through the circuit breaker and transport, then commits
the outcome to the queue and dead letter store under the shared state lock.
The network call itself never holds the lock; it works on the snapshot handed
out by :meth:`DurableQueue.claim_batch`.
"""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from time import perf_counter
from typing import Callable, Optional
from uuid import UUID

from loguru import logger

from .dlq import DeadLetterStore
from .errors import AuthenticationError, BatchRejectedError, TransportError
from .models import Batch, DeadLetterEntry
from .policy import CircuitBreaker, RetryPolicy
from .queue import DurableQueue
from .transport import Transport
from .utils import utc_now


class SendOutcome(str, Enum):
    DELIVERED = "delivered"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"
    REJECTED = "rejected"  # server 400: dropped, never retried
    AUTH_REQUIRED = "auth_required"  # server 401/403: held, no attempt consumed
    CIRCUIT_OPEN = "circuit_open"  # not attempted, no attempt consumed
    FAILED = "failed"  # transient failure on a one-shot attempt


@dataclass(frozen=True)
class SendResult:
    outcome: SendOutcome
    batch_id: UUID
    attempt: int
    event_count: int
    error: Optional[str] = None
    retry_at: Optional[datetime] = None
    retryable: bool = True

    @property
    def ok(self) -> bool:
        return self.outcome is SendOutcome.DELIVERED


class RetryManager:
    def __init__(
        self,
        queue: DurableQueue,
        dead_letters: DeadLetterStore,
        transport: Transport,
        circuit: CircuitBreaker,
        policy: RetryPolicy,
        *,
        timeout_sec: float = 10.0,
        lock: Optional[threading.RLock] = None,
        clock: Callable[[], datetime] = utc_now,
        on_result: Optional[Callable[[SendResult, float], None]] = None,
    ):
        self._queue = queue
        self._dlq = dead_letters
        self._transport = transport
        self._circuit = circuit
        self._policy = policy
        self._timeout = timeout_sec
        self._lock = lock or queue.lock
        self._clock = clock
        self._on_result = on_result

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def attempt(self, batch: Batch, *, auth_token: Optional[str]) -> SendResult:
        """One gated delivery attempt. No queue or dead letter side effects."""

        def result(outcome: SendOutcome, error: str | None = None, retryable: bool = True):
            return SendResult(
                outcome, batch.batch_id, batch.attempt, len(batch.events), error, None, retryable
            )

        if not self._circuit.allow():
            return result(SendOutcome.CIRCUIT_OPEN)

        t0 = perf_counter()
        try:
            await asyncio.wait_for(
                self._transport.send(batch, auth_token=auth_token), timeout=self._timeout
            )
        except AuthenticationError as exc:
            self._circuit.release_probe()
            res = result(SendOutcome.AUTH_REQUIRED, str(exc))
        except BatchRejectedError as exc:
            # the server answered, so the backend itself is healthy
            self._circuit.record_success()
            res = result(SendOutcome.REJECTED, str(exc), retryable=False)
        except (TransportError, asyncio.TimeoutError, OSError) as exc:
            self._circuit.record_failure()
            res = result(SendOutcome.FAILED, _describe(exc))
        except Exception as exc:
            self._circuit.record_failure()
            retryable = self._policy.classify_retryable(exc)
            logger.opt(exception=exc).warning(f"Unexpected error sending batch {batch.batch_id}")
            res = result(SendOutcome.FAILED, _describe(exc), retryable=retryable)
        else:
            self._circuit.record_success()
            res = result(SendOutcome.DELIVERED)

        if self._on_result:
            self._on_result(res, (perf_counter() - t0) * 1000.0)
        return res

    async def send(self, batch: Batch, *, auth_token: Optional[str]) -> SendResult:
        """Send a claimed batch and commit the outcome.

        - delivered / rejected: batch removed from the queue
        - circuit open / auth required: batch released, ``attempt`` unchanged
        - failed: ``attempt`` incremented; rescheduled with backoff, or moved to
          the dead letter store once ``max_attempts`` is reached (immediately
          for errors classified as non-retryable)
        """
        res = await self.attempt(batch, auth_token=auth_token)

        if res.outcome in (SendOutcome.DELIVERED, SendOutcome.REJECTED):
            self._queue.take_batch(batch.batch_id)
            if res.outcome is SendOutcome.REJECTED:
                logger.error(
                    f"Batch {batch.batch_id} rejected by server, dropping "
                    f"{len(batch.events)} events: {res.error}"
                )
            return res

        if res.outcome in (SendOutcome.CIRCUIT_OPEN, SendOutcome.AUTH_REQUIRED):
            self._queue.release(batch.batch_id)
            return res

        attempt = batch.attempt + 1
        now = self._clock()
        if self._policy.exhausted(attempt) or not res.retryable:
            return self._dead_letter(batch, attempt, res.error or "unknown error", now)

        delay_ms = self._policy.next_backoff_ms(attempt)
        retry_at = now + timedelta(milliseconds=delay_ms)
        self._queue.reschedule(batch.batch_id, attempt=attempt, next_attempt_at=retry_at, error=res.error)
        logger.info(
            f"Batch {batch.batch_id} failed (attempt {attempt}/{self._policy.max_attempts}), "
            f"retry in {delay_ms:.0f}ms: {res.error}"
        )
        return SendResult(
            SendOutcome.RETRY_SCHEDULED, batch.batch_id, attempt, len(batch.events), res.error, retry_at
        )

    def _dead_letter(self, batch: Batch, attempt: int, reason: str, now: datetime) -> SendResult:
        with self._lock:
            stored = self._queue.take_batch(batch.batch_id)
            if stored is not None and stored.events:
                stored = stored.model_copy(update={"attempt": attempt, "last_error": reason})
                self._dlq.add(
                    DeadLetterEntry(
                        batch=stored,
                        reason=reason,
                        first_failed_at=stored.first_failed_at or now,
                        last_attempt_at=now,
                    )
                )
        count = len(stored.events) if stored is not None else 0
        logger.warning(
            f"Batch {batch.batch_id} dead-lettered after {attempt} attempts "
            f"({count} events): {reason}"
        )
        return SendResult(SendOutcome.DEAD_LETTERED, batch.batch_id, attempt, count, reason)

    async def redeliver(self, entry: DeadLetterEntry, *, auth_token: Optional[str]) -> SendResult:
        """Reprocess a dead-lettered batch with a fresh budget (one attempt).

        Delivered or rejected entries are removed; a failed attempt re-adds the
        entry with an updated ``last_attempt_at``.
        """
        batch = entry.batch.model_copy(update={"attempt": 0, "next_attempt_at": None})
        res = await self.attempt(batch, auth_token=auth_token)
        if res.outcome in (SendOutcome.DELIVERED, SendOutcome.REJECTED):
            self._dlq.remove(entry.batch_id)
        elif res.outcome is SendOutcome.FAILED:
            self._dlq.record_attempt(entry.batch_id, at=self._clock(), reason=res.error)
        return res


def _describe(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "timeout"
    if isinstance(exc, TransportError):
        return str(exc)
    return f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
