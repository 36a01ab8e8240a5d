"""
Durable, bounded event queue.

Holds unbatched events and the batches awaiting send or retry, written
through to a persistence adapter on every change.
"""

from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional
from uuid import UUID

from loguru import logger
from pydantic import ValidationError

from .models import Batch, Event
from .storage import PersistenceAdapter
from .utils import utc_now

QUEUE_KEY = "telemetry:queue"

EvictionCallback = Callable[[Event], None]


@dataclass(frozen=True)
class QueueStats:
    size: int
    capacity: int
    unbatched: int
    pending_batches: int
    evicted: int
    oldest_occurred_at: Optional[datetime] = None
    newest_occurred_at: Optional[datetime] = None
    retry_distribution: dict[int, int] = field(default_factory=dict)


class DurableQueue:
    """Bounded, persisted FIFO of events plus the batches awaiting send/retry.

    Every mutation is written through to the persistence adapter before it
    returns, so a restart recovers the last durable state. When full, the
    oldest stored event is evicted (``evicted_count`` is incremented and the
    eviction callback fires).

    All methods are guarded by ``lock`` (reentrant, shareable with the dead
    letter store so cross-store moves are atomic). Nothing here performs
    network I/O.
    """

    def __init__(
        self,
        storage: PersistenceAdapter,
        capacity: int = 1000,
        *,
        key: str = QUEUE_KEY,
        lock: Optional[threading.RLock] = None,
        on_evict: Optional[EvictionCallback] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")

        self._storage = storage
        self._capacity = capacity
        self._key = key
        self._lock = lock or threading.RLock()
        self._on_evict = on_evict
        self._clock = clock

        self._events: list[Event] = []  # not yet batched, enqueue order
        self._batches: dict[UUID, Batch] = {}  # creation order
        self._inflight: set[UUID] = set()
        self._ids: set[UUID] = set()
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted_count(self) -> int:
        return self._evicted

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    # ---------- persistence ----------

    def load(self) -> int:
        """Restore state from storage. Returns number of events recovered."""
        with self._lock:
            raw = self._storage.get(self._key)
            self._events, self._batches, self._inflight, self._ids = [], {}, set(), set()
            if not raw:
                return 0
            try:
                doc = json.loads(raw)
                events = [Event.model_validate(e) for e in doc.get("events", [])]
                batches = [Batch.model_validate(b) for b in doc.get("batches", [])]
            except (ValueError, ValidationError) as exc:
                logger.error(f"Queue state at {self._key!r} is unreadable, starting empty: {exc}")
                return 0
            self._evicted = int(doc.get("evicted", 0))
            self._events = events
            self._batches = {b.batch_id: b for b in batches}
            self._ids = {e.id for e in events} | {e.id for b in batches for e in b.events}
            n = self._size()
            if n:
                logger.info(f"Recovered {n} queued events ({len(batches)} pending batches)")
            return n

    def persist(self) -> None:
        with self._lock:
            doc = {
                "events": [e.model_dump(mode="json", by_alias=True) for e in self._events],
                "batches": [b.model_dump(mode="json", by_alias=True) for b in self._batches.values()],
                "evicted": self._evicted,
            }
            self._storage.set(self._key, json.dumps(doc, separators=(",", ":")).encode())

    # ---------- producer side ----------

    def enqueue(self, event: Event) -> bool:
        """Append ``event``; evicts from the head when full.

        Returns False if an event with the same id is already stored.
        """
        with self._lock:
            if event.id in self._ids:
                logger.debug(f"Duplicate event {event.id} ignored")
                return False
            while self._size() >= self._capacity:
                self._evict_oldest()
            self._events.append(event)
            self._ids.add(event.id)
            self.persist()
            return True

    def _evict_oldest(self) -> None:
        if self._batches:
            batch_id = next(iter(self._batches))
            batch = self._batches[batch_id]
            dropped = batch.events[0]
            if len(batch.events) == 1:
                del self._batches[batch_id]
            else:
                self._batches[batch_id] = batch.model_copy(update={"events": batch.events[1:]})
        else:
            dropped = self._events.pop(0)
        self._ids.discard(dropped.id)
        self._evicted += 1
        if self._on_evict:
            self._on_evict(dropped)

    # ---------- consumer side ----------

    def peek_batch(self, max_size: int) -> list[Event]:
        """Return up to ``max_size`` unbatched events from the head, without removing them."""
        with self._lock:
            return list(self._events[:max_size])

    def claim_batch(self, max_size: int, now: Optional[datetime] = None) -> Optional[Batch]:
        """Hand out the next batch to send and mark it in flight.

        The oldest pending batch goes first; while it is waiting for its retry
        time nothing newer is handed out, which keeps per-device order. With no
        pending batches a new one is cut from the head of the queue.
        """
        now = now or self._clock()
        with self._lock:
            for batch in self._batches.values():
                if batch.batch_id in self._inflight:
                    continue
                if not batch.is_due(now):
                    return None
                self._inflight.add(batch.batch_id)
                return batch.model_copy(deep=True)

            if not self._events:
                return None
            events = self._events[:max_size]
            del self._events[: len(events)]
            batch = Batch(events=events, created_at=now)
            self._batches[batch.batch_id] = batch
            self._inflight.add(batch.batch_id)
            self.persist()
            return batch.model_copy(deep=True)

    def release(self, batch_id: UUID) -> None:
        """Return a claimed batch unchanged (deferred send)."""
        with self._lock:
            self._inflight.discard(batch_id)

    def reschedule(
        self, batch_id: UUID, *, attempt: int, next_attempt_at: datetime, error: str | None = None
    ) -> Optional[Batch]:
        """Record a failed send. Returns the stored batch, or None if it no longer exists."""
        with self._lock:
            self._inflight.discard(batch_id)
            batch = self._batches.get(batch_id)
            if batch is None:
                return None
            batch = batch.model_copy(
                update={
                    "attempt": attempt,
                    "next_attempt_at": next_attempt_at,
                    "first_failed_at": batch.first_failed_at or self._clock(),
                    "last_error": error,
                }
            )
            self._batches[batch_id] = batch
            self.persist()
            return batch

    def take_batch(self, batch_id: UUID) -> Optional[Batch]:
        """Remove a pending batch and its events. Returns what was stored."""
        with self._lock:
            self._inflight.discard(batch_id)
            batch = self._batches.pop(batch_id, None)
            if batch is None:
                return None
            self._ids.difference_update(batch.event_ids)
            self.persist()
            return batch

    def remove_events(self, ids: Iterable[UUID]) -> int:
        """Remove events by id wherever they are stored."""
        wanted = set(ids)
        return self._remove_where(lambda e: e.id in wanted)

    def purge_user(self, user_id: str) -> int:
        """Remove every stored event belonging to ``user_id``."""
        return self._remove_where(lambda e: e.user_id == user_id)

    def _remove_where(self, predicate: Callable[[Event], bool]) -> int:
        with self._lock:
            removed = 0
            kept = [e for e in self._events if not predicate(e)]
            removed += len(self._events) - len(kept)
            self._events = kept

            for batch_id, batch in list(self._batches.items()):
                remaining = [e for e in batch.events if not predicate(e)]
                if len(remaining) == len(batch.events):
                    continue
                removed += len(batch.events) - len(remaining)
                if remaining:
                    self._batches[batch_id] = batch.model_copy(update={"events": remaining})
                else:
                    del self._batches[batch_id]

            if removed:
                self._ids = {e.id for e in self._events} | {
                    e.id for b in self._batches.values() for e in b.events
                }
                self.persist()
            return removed

    # ---------- introspection ----------

    def _size(self) -> int:
        return len(self._events) + sum(len(b.events) for b in self._batches.values())

    def size(self) -> int:
        with self._lock:
            return self._size()

    def __len__(self) -> int:
        return self.size()

    def events(self) -> list[Event]:
        """All stored events, oldest first."""
        with self._lock:
            return [e for b in self._batches.values() for e in b.events] + list(self._events)

    def pending_batches(self) -> list[Batch]:
        with self._lock:
            return [b.model_copy(deep=True) for b in self._batches.values()]

    def stats(self) -> QueueStats:
        with self._lock:
            stored = [e for b in self._batches.values() for e in b.events] + self._events
            stamps = [e.occurred_at for e in stored]
            return QueueStats(
                size=len(stored),
                capacity=self._capacity,
                unbatched=len(self._events),
                pending_batches=len(self._batches),
                evicted=self._evicted,
                oldest_occurred_at=min(stamps) if stamps else None,
                newest_occurred_at=max(stamps) if stamps else None,
                retry_distribution=dict(Counter(b.attempt for b in self._batches.values())),
            )
