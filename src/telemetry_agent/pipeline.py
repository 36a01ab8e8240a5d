"""Pipeline orchestrator.

Wires validator -> durable queue -> batcher -> retry manager (circuit breaker,
transport) -> dead letter store, owns the timers, and exposes the producer
API. One instance per application, constructed at startup and passed around
explicitly.

Example:
    settings = PipelineSettings(endpoint_url="https://telemetry.example.com", storage_dir=path)
    pipeline = Pipeline(settings=settings)  # HttpTransport to endpoint_url
    async with pipeline:
        pipeline.track("note_created", {"source": "quick_capture"}, identity)
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping, Optional, Union
from uuid import UUID

from loguru import logger
from pydantic import ValidationError

from .batcher import Batcher, FlushResult
from .dlq import DeadLetterStore
from .errors import EventValidationError, TransportError
from .health import HealthBus, HealthSignal, HealthSignalKind
from .metrics.registry import CIRCUIT_STATE_VALUES, metrics_registry as m
from .models import CircuitStatus, DeadLetterEntry, Event, Identity
from .policy import CircuitBreaker, RetryPolicy
from .queue import DurableQueue
from .retry import RetryManager, SendOutcome, SendResult
from .settings import PipelineSettings
from .storage import FileStorage, MemoryStorage, PersistenceAdapter
from .transport import Credentials, HttpTransport, Transport
from .utils import utc_now
from .validation import ValidationPolicy, validate_event


@dataclass
class PipelineCounters:
    tracked: int = 0
    duplicates: int = 0
    dropped_invalid: int = 0
    storage_errors: int = 0
    delivered_events: int = 0
    rejected_events: int = 0
    dead_lettered_batches: int = 0


@dataclass(frozen=True)
class PipelineHealth:
    pipeline_id: str
    running: bool
    queue_size: int
    capacity: int
    pending_batches: int
    dead_letters: int
    circuit_state: str
    consecutive_failures: int
    auth_paused: bool
    tracked: int
    dropped_invalid: int
    evicted: int
    dead_letter_evicted: int
    delivered_events: int
    rejected_events: int


@dataclass(frozen=True)
class DeletionResult:
    user_id: str
    queued_removed: int
    dead_letter_removed: int
    remote_deleted: bool
    error: Optional[str] = None

    @property
    def local_removed(self) -> int:
        return self.queued_removed + self.dead_letter_removed


def _coerce_identity(identity: Any) -> Optional[Identity]:
    if identity is None or isinstance(identity, Identity):
        return identity
    if isinstance(identity, Mapping):
        return Identity.model_validate(identity)
    raise EventValidationError(
        f"identity must be an Identity or a mapping, got {type(identity).__name__}"
    )


class Pipeline:
    def __init__(
        self,
        transport: Optional[Transport] = None,
        storage: Optional[PersistenceAdapter] = None,
        settings: Optional[PipelineSettings] = None,
        *,
        pipeline_id: str = "default",
        auth_token: Optional[str] = None,
        health_bus: Optional[HealthBus] = None,
        validation_policy: Optional[ValidationPolicy] = None,
        retry_policy: Optional[RetryPolicy] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        clock: Callable[[], datetime] = utc_now,
        circuit_clock: Callable[[], float] = time.monotonic,
    ):
        cfg = settings or PipelineSettings()
        if transport is None:
            transport = HttpTransport(cfg.endpoint_url, timeout=cfg.transport_timeout)
        if storage is None:
            storage = FileStorage(cfg.storage_dir) if cfg.storage_dir else MemoryStorage()

        self._id = pipeline_id
        self._settings = cfg
        self._transport = transport
        self._clock = clock
        self._bus = health_bus or HealthBus()
        self._counters = PipelineCounters()
        self._policy = validation_policy or ValidationPolicy.from_settings(cfg)
        self._credentials = Credentials(auth_token)

        # single mutual-exclusion point for queue + dead letter state
        self._lock = threading.RLock()
        self._queue = DurableQueue(
            storage, cfg.queue_capacity, lock=self._lock, on_evict=self._on_queue_evict, clock=clock
        )
        self._dlq = DeadLetterStore(
            storage,
            cfg.dead_letter_capacity,
            reprocess_interval=cfg.dead_letter_reprocess_interval,
            lock=self._lock,
            on_evict=self._on_dead_letter_evict,
            clock=clock,
        )
        self._circuit = circuit_breaker or CircuitBreaker(
            failure_threshold=cfg.circuit_failure_threshold,
            cooldown_sec=cfg.circuit_cooldown_ms / 1000.0,
            max_cooldown_sec=cfg.circuit_max_cooldown_ms / 1000.0,
            clock=circuit_clock,
            on_state_change=self._on_circuit_change,
        )
        self._retry = RetryManager(
            self._queue,
            self._dlq,
            transport,
            self._circuit,
            retry_policy
            or RetryPolicy(
                max_attempts=cfg.max_attempts,
                initial_backoff_ms=cfg.backoff_base_ms,
                max_backoff_ms=cfg.backoff_max_ms,
                jitter=cfg.backoff_jitter,
            ),
            timeout_sec=cfg.transport_timeout,
            lock=self._lock,
            clock=clock,
            on_result=self._on_attempt,
        )
        self._batcher = Batcher(
            self._queue,
            self._retry,
            self._credentials,
            max_batch_size=cfg.max_batch_size,
            flush_threshold=cfg.flush_threshold,
            max_batches_per_flush=cfg.max_batches_per_flush,
        )

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._timers: list[asyncio.Task] = []
        self._tasks: set[asyncio.Task] = set()
        self._wakeup: Optional[asyncio.Task] = None
        self._reprocess_lock = asyncio.Lock()
        self._started = False
        self._closed = False

        self._queue.load()
        self._dlq.load()
        self._update_gauges()

    # ---------- accessors ----------

    @property
    def pipeline_id(self) -> str:
        return self._id

    @property
    def settings(self) -> PipelineSettings:
        return self._settings

    @property
    def queue(self) -> DurableQueue:
        return self._queue

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self._dlq

    @property
    def circuit(self) -> CircuitBreaker:
        return self._circuit

    @property
    def health_bus(self) -> HealthBus:
        return self._bus

    @property
    def counters(self) -> PipelineCounters:
        return self._counters

    @property
    def running(self) -> bool:
        return self._started and not self._closed

    # ---------- lifecycle ----------

    async def start(self) -> None:
        if self._started:
            return
        self._loop = asyncio.get_running_loop()
        self._started = True
        self._closed = False
        self._timers = [
            self._loop.create_task(self._tick_loop(), name=f"telemetry-{self._id}-flush"),
            self._loop.create_task(self._dead_letter_loop(), name=f"telemetry-{self._id}-dlq"),
        ]
        logger.info(
            f"Telemetry pipeline {self._id!r} started: queued={self._queue.size()} "
            f"dead_letters={self._dlq.size()} interval={self._settings.flush_interval}s"
        )
        if self._batcher.should_flush(self._queue.size()):
            self._request_flush()

    async def shutdown(self) -> None:
        """Stop timers, try one final flush with a short timeout, persist state."""
        if not self._started or self._closed:
            return
        self._closed = True

        timers = [t for t in (*self._timers, self._wakeup) if t is not None]
        for t in timers:
            t.cancel()
        await asyncio.gather(*timers, return_exceptions=True)
        self._timers, self._wakeup = [], None

        try:
            if not self._credentials.paused and self._settings.shutdown_flush_timeout > 0:
                result = await asyncio.wait_for(
                    self._batcher.flush_now(), timeout=self._settings.shutdown_flush_timeout
                )
                self._account(result.results)
        except asyncio.TimeoutError:
            logger.warning(f"Final flush timed out, {self._queue.size()} events stay queued")
        except Exception as exc:
            logger.opt(exception=exc).warning("Final flush failed")
        finally:
            await self._batcher.cancel()
            pending = list(self._tasks)
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._queue.persist()
            self._dlq.persist()
            self._update_gauges()
            await self._transport.aclose()
            self._started = False
            logger.info(
                f"Telemetry pipeline {self._id!r} stopped: queued={self._queue.size()} "
                f"dead_letters={self._dlq.size()}"
            )

    async def __aenter__(self) -> "Pipeline":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ---------- producer API ----------

    def track(
        self,
        name: str,
        properties: Optional[Mapping[str, Any]] = None,
        identity: Union[Identity, Mapping[str, Any], None] = None,
        *,
        event_id: Optional[UUID] = None,
        occurred_at: Optional[datetime] = None,
    ) -> None:
        """Validate and enqueue an event. Never raises and never waits on the network."""
        try:
            ident = _coerce_identity(identity)
            raw: dict[str, Any] = {"name": name, "properties": properties or {}}
            if event_id is not None:
                raw["id"] = event_id
            if occurred_at is not None:
                raw["occurredAt"] = occurred_at
            event = validate_event(raw, self._policy, identity=ident)
        except (EventValidationError, ValidationError) as exc:
            self._counters.dropped_invalid += 1
            m.events_dropped_total.labels(self._id, "invalid").inc()
            logger.warning(f"Dropped invalid event {name!r}: {exc}")
            self._bus.publish(HealthSignal(self._id, HealthSignalKind.DROPPED_INVALID, 1, str(exc)))
            return
        except Exception as exc:
            self._counters.dropped_invalid += 1
            m.events_dropped_total.labels(self._id, "invalid").inc()
            logger.opt(exception=exc).error(f"Unexpected error validating event {name!r}")
            self._bus.publish(
                HealthSignal(self._id, HealthSignalKind.DROPPED_INVALID, 1, type(exc).__name__)
            )
            return

        self.enqueue(event)

    def enqueue(self, event: Event) -> bool:
        """Enqueue an already-validated event. Never raises."""
        try:
            accepted = self._queue.enqueue(event)
        except Exception as exc:
            self._counters.storage_errors += 1
            logger.opt(exception=exc).error(f"Failed to persist event {event.name!r}")
            return False

        if accepted:
            self._counters.tracked += 1
            m.events_tracked_total.labels(self._id).inc()
        else:
            self._counters.duplicates += 1
        size = self._queue.size()
        m.queue_depth.labels(self._id).set(size)
        if self._batcher.should_flush(size):
            self._request_flush()
        return accepted

    async def flush_now(self) -> FlushResult:
        """Force a flush now (e.g. when the app is backgrounded)."""
        result = await self._batcher.flush_now()
        self._after_flush(result)
        return result

    def set_auth_token(self, token: Optional[str]) -> None:
        """Supply fresh credentials; resumes delivery paused by a 401."""
        was_paused = self._credentials.paused
        self._credentials.refresh(token)
        if was_paused and self.running:
            self._request_flush()

    async def delete_user(self, user_id: str) -> DeletionResult:
        """Purge a user's events locally, then ask the server to delete its copy.

        Safe to call while a flush is running: the purge runs under the state
        lock, and the server request waits until any in-flight send (which
        may still carry the user's events) has completed.
        """
        with self._lock:
            queued = self._queue.purge_user(user_id)
            dead = self._dlq.purge_user(user_id)
        logger.info(
            f"Purged user {user_id!r} locally: queued={queued} dead_lettered={dead}"
        )
        self._update_gauges()

        await self._batcher.wait_idle()
        async with self._reprocess_lock:
            pass

        try:
            await asyncio.wait_for(
                self._transport.delete_user(user_id, auth_token=self._credentials.token),
                timeout=self._settings.transport_timeout,
            )
        except (TransportError, asyncio.TimeoutError, OSError) as exc:
            logger.warning(f"Server deletion for user {user_id!r} failed: {exc}")
            return DeletionResult(user_id, queued, dead, False, str(exc) or type(exc).__name__)
        return DeletionResult(user_id, queued, dead, True)

    async def reprocess_dead_letters(self) -> list[SendResult]:
        """Give each due dead-lettered batch one fresh attempt."""
        results: list[SendResult] = []
        async with self._reprocess_lock:
            for entry in self._dlq.list_due():
                if self._credentials.paused:
                    break
                current: Optional[DeadLetterEntry] = self._dlq.get(entry.batch_id)
                if current is None:
                    continue
                res = await self._retry.redeliver(current, auth_token=self._credentials.token)
                results.append(res)
                if res.outcome is SendOutcome.AUTH_REQUIRED:
                    self._credentials.pause()
                    break
                if res.outcome is SendOutcome.CIRCUIT_OPEN:
                    break
        if results:
            logger.info(
                f"Dead letter reprocessing: {sum(r.ok for r in results)}/{len(results)} delivered"
            )
        self._account(results)
        self._update_gauges()
        return results

    def health(self) -> PipelineHealth:
        circuit = self._circuit.snapshot()
        return PipelineHealth(
            pipeline_id=self._id,
            running=self.running,
            queue_size=self._queue.size(),
            capacity=self._queue.capacity,
            pending_batches=len(self._queue.pending_batches()),
            dead_letters=self._dlq.size(),
            circuit_state=circuit.status.value,
            consecutive_failures=circuit.consecutive_failures,
            auth_paused=self._credentials.paused,
            tracked=self._counters.tracked,
            dropped_invalid=self._counters.dropped_invalid,
            evicted=self._queue.evicted_count,
            dead_letter_evicted=self._dlq.evicted_count,
            delivered_events=self._counters.delivered_events,
            rejected_events=self._counters.rejected_events,
        )

    # ---------- scheduling ----------

    def _request_flush(self) -> None:
        loop = self._loop
        if not self.running or loop is None or loop.is_closed():
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._spawn(self._flush())
        else:
            loop.call_soon_threadsafe(lambda: self._spawn(self._flush()))

    def _spawn(self, coro) -> None:
        if not self.running:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.opt(exception=task.exception()).error("Background flush failed")

    async def _flush(self) -> FlushResult:
        result = await self._batcher.try_flush()
        self._after_flush(result)
        return result

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.flush_interval)
            try:
                await self._flush()
            except Exception as exc:
                logger.opt(exception=exc).error("Scheduled flush failed")

    async def _dead_letter_loop(self) -> None:
        interval = self._settings.dead_letter_reprocess_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            try:
                await self.reprocess_dead_letters()
            except Exception as exc:
                logger.opt(exception=exc).error("Dead letter reprocessing failed")

    def _after_flush(self, result: FlushResult) -> None:
        self._account(result.results)
        self._update_gauges()
        last = result.last
        if last is None or not self.running:
            return
        if last.outcome is SendOutcome.RETRY_SCHEDULED and last.retry_at is not None:
            self._schedule_wakeup((last.retry_at - self._clock()).total_seconds())
        elif last.outcome is SendOutcome.CIRCUIT_OPEN and not self._circuit.probe_in_flight:
            # an in-flight probe resolves the circuit; the next tick picks up from there
            self._schedule_wakeup(self._circuit.retry_after())

    def _schedule_wakeup(self, delay: float) -> None:
        current = asyncio.current_task()
        if self._wakeup is not None and self._wakeup is not current and not self._wakeup.done():
            self._wakeup.cancel()
        self._wakeup = asyncio.get_running_loop().create_task(self._wake_after(max(0.0, delay)))

    async def _wake_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        await self._flush()

    # ---------- accounting ----------

    def _account(self, results) -> None:
        for res in results:
            if res.outcome is SendOutcome.DELIVERED:
                self._counters.delivered_events += res.event_count
            elif res.outcome is SendOutcome.REJECTED:
                self._counters.rejected_events += res.event_count
                m.events_dropped_total.labels(self._id, "rejected").inc(res.event_count)
                self._bus.publish(
                    HealthSignal(self._id, HealthSignalKind.BATCH_REJECTED, res.event_count, res.error)
                )
            elif res.outcome is SendOutcome.DEAD_LETTERED:
                self._counters.dead_lettered_batches += 1
                self._bus.publish(
                    HealthSignal(self._id, HealthSignalKind.DEAD_LETTERED, res.event_count, res.error)
                )
            elif res.outcome is SendOutcome.AUTH_REQUIRED:
                self._bus.publish(HealthSignal(self._id, HealthSignalKind.AUTH_REQUIRED, 0, res.error))

    def _on_attempt(self, res: SendResult, latency_ms: float) -> None:
        m.batches_total.labels(self._id, res.outcome.value).inc()
        m.send_latency_ms.labels(self._id).observe(latency_ms)

    def _on_queue_evict(self, event: Event) -> None:
        m.events_dropped_total.labels(self._id, "queue_eviction").inc()
        logger.warning(
            f"Queue full, evicted oldest event {event.name!r} (evicted={self._queue.evicted_count})"
        )
        self._bus.publish(HealthSignal(self._id, HealthSignalKind.QUEUE_EVICTION, 1, str(event.id)))

    def _on_dead_letter_evict(self, entry: DeadLetterEntry) -> None:
        n = len(entry.batch.events)
        m.events_dropped_total.labels(self._id, "dead_letter_eviction").inc(n)
        self._bus.publish(
            HealthSignal(self._id, HealthSignalKind.DEAD_LETTER_EVICTION, n, str(entry.batch_id))
        )

    def _on_circuit_change(self, old: CircuitStatus, new: CircuitStatus) -> None:
        m.circuit_state.labels(self._id).set(CIRCUIT_STATE_VALUES[new.value])
        if new is CircuitStatus.OPEN and old is not CircuitStatus.OPEN:
            self._bus.publish(HealthSignal(self._id, HealthSignalKind.CIRCUIT_OPENED))
        elif new is CircuitStatus.CLOSED:
            self._bus.publish(HealthSignal(self._id, HealthSignalKind.CIRCUIT_CLOSED))

    def _update_gauges(self) -> None:
        m.queue_depth.labels(self._id).set(self._queue.size())
        m.dead_letter_depth.labels(self._id).set(self._dlq.size())
        m.circuit_state.labels(self._id).set(CIRCUIT_STATE_VALUES[self._circuit.state.value])
