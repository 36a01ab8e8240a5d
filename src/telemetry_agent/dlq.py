"""
Dead Letter Store.

Holds batches that exhausted their retry budget. Capacity-bounded: past
capacity the oldest entry is evicted and counted (loss of last resort).
Entries become due for reprocessing ``reprocess_interval`` after their last
attempt.
"""

from __future__ import annotations

import json
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional
from uuid import UUID

from loguru import logger
from pydantic import ValidationError

from .models import DeadLetterEntry
from .storage import PersistenceAdapter
from .utils import utc_now

DLQ_KEY = "telemetry:dead_letters"


@dataclass(frozen=True)
class DeadLetterStats:
    size: int
    capacity: int
    events: int
    evicted: int
    oldest_failure: Optional[datetime] = None
    newest_failure: Optional[datetime] = None
    reasons: dict[str, int] = field(default_factory=dict)


class DeadLetterStore:
    def __init__(
        self,
        storage: PersistenceAdapter,
        capacity: int = 500,
        *,
        key: str = DLQ_KEY,
        reprocess_interval: timedelta = timedelta(hours=1),
        lock: Optional[threading.RLock] = None,
        on_evict: Optional[Callable[[DeadLetterEntry], None]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        if capacity <= 0:
            raise ValueError("capacity must be > 0")
        self._storage = storage
        self._capacity = capacity
        self._key = key
        self._interval = reprocess_interval
        self._lock = lock or threading.RLock()
        self._on_evict = on_evict
        self._clock = clock

        self._entries: dict[UUID, DeadLetterEntry] = {}
        self._evicted = 0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def evicted_count(self) -> int:
        return self._evicted

    def load(self) -> int:
        with self._lock:
            self._entries = {}
            raw = self._storage.get(self._key)
            if not raw:
                return 0
            try:
                doc = json.loads(raw)
                entries = [DeadLetterEntry.model_validate(e) for e in doc.get("entries", [])]
            except (ValueError, ValidationError) as exc:
                logger.error(f"Dead letter state at {self._key!r} is unreadable, starting empty: {exc}")
                return 0
            self._evicted = int(doc.get("evicted", 0))
            self._entries = {e.batch_id: e for e in entries}
            return len(self._entries)

    def persist(self) -> None:
        with self._lock:
            doc = {
                "entries": [
                    e.model_dump(mode="json", by_alias=True) for e in self._entries.values()
                ],
                "evicted": self._evicted,
            }
            self._storage.set(self._key, json.dumps(doc, separators=(",", ":")).encode())

    def add(self, entry: DeadLetterEntry) -> None:
        """Store ``entry`` (replacing any entry for the same batch)."""
        with self._lock:
            self._entries.pop(entry.batch_id, None)
            self._entries[entry.batch_id] = entry
            while len(self._entries) > self._capacity:
                oldest_id = next(iter(self._entries))
                dropped = self._entries.pop(oldest_id)
                self._evicted += 1
                logger.warning(
                    f"Dead letter store full, dropped batch {oldest_id} "
                    f"({len(dropped.batch.events)} events, evicted={self._evicted})"
                )
                if self._on_evict:
                    self._on_evict(dropped)
            self.persist()

    def get(self, batch_id: UUID) -> Optional[DeadLetterEntry]:
        with self._lock:
            return self._entries.get(batch_id)

    def list_due(self, now: Optional[datetime] = None) -> list[DeadLetterEntry]:
        """Entries whose last attempt is at least one reprocess interval old."""
        now = now or self._clock()
        with self._lock:
            return [
                e.model_copy(deep=True)
                for e in self._entries.values()
                if e.last_attempt_at + self._interval <= now
            ]

    def remove(self, batch_id: UUID) -> bool:
        with self._lock:
            if self._entries.pop(batch_id, None) is None:
                return False
            self.persist()
            return True

    def record_attempt(
        self, batch_id: UUID, *, at: Optional[datetime] = None, reason: Optional[str] = None
    ) -> Optional[DeadLetterEntry]:
        """Re-add an entry after a failed reprocessing attempt."""
        with self._lock:
            entry = self._entries.pop(batch_id, None)
            if entry is None:
                return None
            update = {"last_attempt_at": at or self._clock()}
            if reason:
                update["reason"] = reason
            entry = entry.model_copy(update=update)
            self._entries[batch_id] = entry
            self.persist()
            return entry

    def purge_user(self, user_id: str) -> int:
        """Drop every dead-lettered event belonging to ``user_id``."""
        with self._lock:
            removed = 0
            for batch_id, entry in list(self._entries.items()):
                events = entry.batch.events
                remaining = [e for e in events if e.user_id != user_id]
                if len(remaining) == len(events):
                    continue
                removed += len(events) - len(remaining)
                if remaining:
                    batch = entry.batch.model_copy(update={"events": remaining})
                    self._entries[batch_id] = entry.model_copy(update={"batch": batch})
                else:
                    del self._entries[batch_id]
            if removed:
                self.persist()
            return removed

    def entries(self) -> list[DeadLetterEntry]:
        with self._lock:
            return [e.model_copy(deep=True) for e in self._entries.values()]

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    def stats(self) -> DeadLetterStats:
        with self._lock:
            entries = list(self._entries.values())
            failures = [e.first_failed_at for e in entries]
            return DeadLetterStats(
                size=len(entries),
                capacity=self._capacity,
                events=sum(len(e.batch.events) for e in entries),
                evicted=self._evicted,
                oldest_failure=min(failures) if failures else None,
                newest_failure=max(failures) if failures else None,
                reasons=dict(Counter(e.reason for e in entries)),
            )
