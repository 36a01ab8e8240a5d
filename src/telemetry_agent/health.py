"""
Health signals for the telemetry pipeline.

In-process pub/sub so the host application's observability surface can react
to lossy or degraded pipeline states (evictions, dead-lettering, circuit
opening, credential problems). Signals are never shown to end users.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from loguru import logger


class HealthSignalKind(str, Enum):
    QUEUE_EVICTION = "queue_eviction"
    DEAD_LETTER_EVICTION = "dead_letter_eviction"
    DEAD_LETTERED = "dead_lettered"
    CIRCUIT_OPENED = "circuit_opened"
    CIRCUIT_CLOSED = "circuit_closed"
    AUTH_REQUIRED = "auth_required"
    BATCH_REJECTED = "batch_rejected"
    DROPPED_INVALID = "dropped_invalid"


@dataclass(frozen=True)
class HealthSignal:
    """Immutable pipeline health signal.

    Attributes:
        pipeline_id: Identifies the emitting pipeline
        kind: What happened
        count: Number of events affected (0 when not applicable)
        detail: Optional context (error message, batch id...)
    """

    pipeline_id: str
    kind: HealthSignalKind
    count: int = 0
    detail: str | None = None


class HealthSubscriber(Protocol):
    def __call__(self, signal: HealthSignal) -> None: ...


class HealthBus:
    """Best-effort fan-out of health signals.

    Subscribers are called synchronously in registration order; one
    subscriber's exception is logged and does not affect the others.
    """

    def __init__(self) -> None:
        self._subs: list[HealthSubscriber] = []

    def subscribe(self, callback: HealthSubscriber) -> None:
        if callback not in self._subs:
            self._subs.append(callback)
            logger.debug(f"Health subscriber added (total: {len(self._subs)})")

    def unsubscribe(self, callback: HealthSubscriber) -> None:
        try:
            self._subs.remove(callback)
        except ValueError:
            pass

    def publish(self, signal: HealthSignal) -> None:
        if not self._subs:
            return

        for callback in list(self._subs):
            try:
                callback(signal)
            except Exception as exc:
                logger.debug(f"Health subscriber error (ignored): {type(exc).__name__}: {exc}")

    @property
    def subscriber_count(self) -> int:
        return len(self._subs)
