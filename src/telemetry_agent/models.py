"""
Pydantic data models for the telemetry pipeline.

Events are immutable once created. Wire serialization uses camelCase field
names (``occurredAt``, ``sessionId``...); Python code uses snake_case.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils import utc_now

Scalar = Union[str, int, float, bool, None]

SCHEMA_VERSION = 1


def _as_utc(v: datetime) -> datetime:
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class Identity(BaseModel):
    """Who an event belongs to. ``user_id`` is absent for anonymous sessions."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    session_id: str
    device_id: str
    user_id: Optional[str] = None


class Event(BaseModel):
    """A single telemetry event.

    ``id`` is assigned by the producer before enqueue and is the idempotency key
    used by the ingestion endpoint.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

    id: UUID
    name: str
    properties: Dict[str, Scalar] = Field(default_factory=dict)
    occurred_at: datetime
    session_id: str
    device_id: str
    user_id: Optional[str] = None
    schema_version: int = SCHEMA_VERSION

    @field_validator("occurred_at")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return _as_utc(v)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class Batch(BaseModel):
    """An ordered group of events sent in one request.

    ``attempt`` counts failed sends; circuit-open and auth deferrals do not
    consume it.
    """

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    batch_id: UUID = Field(default_factory=uuid4)
    events: List[Event]
    attempt: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    next_attempt_at: Optional[datetime] = None
    first_failed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def event_ids(self) -> list[UUID]:
        return [e.id for e in self.events]

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or self.next_attempt_at <= now


class DeadLetterEntry(BaseModel):
    """A batch that exhausted its retry budget."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    batch: Batch
    reason: str
    first_failed_at: datetime
    last_attempt_at: datetime

    @property
    def batch_id(self) -> UUID:
        return self.batch.batch_id


class CircuitStatus(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # sends allowed
    OPEN = "open"  # sends rejected until cooldown elapses
    HALF_OPEN = "half_open"  # a single probe send is allowed


class CircuitState(BaseModel):
    """Point-in-time view of the circuit breaker.

    ``opened_at`` and ``next_probe_at`` are readings of the breaker's clock
    (monotonic seconds by default), not wall-clock timestamps.
    """

    model_config = ConfigDict(frozen=True)

    status: CircuitStatus
    consecutive_failures: int
    opened_at: Optional[float] = None
    next_probe_at: Optional[float] = None
    cooldown_sec: float
