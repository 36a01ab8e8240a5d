"""
Unit tests for the dead letter store.
"""

from datetime import timedelta

from telemetry_agent.dlq import DLQ_KEY, DeadLetterStore
from telemetry_agent.models import Batch, DeadLetterEntry
from telemetry_agent.storage import FileStorage, MemoryStorage


def _entry(events, at, reason="HTTP 500"):
    return DeadLetterEntry(batch=Batch(events=events), reason=reason, first_failed_at=at, last_attempt_at=at)


def test_capacity_evicts_oldest(event_factory, clock):
    evicted = []
    dlq = DeadLetterStore(MemoryStorage(), capacity=3, on_evict=evicted.append, clock=clock)
    entries = [_entry([event_factory()], clock()) for _ in range(5)]
    for e in entries:
        dlq.add(e)

    assert dlq.size() == 3
    assert dlq.evicted_count == 2
    assert [e.batch_id for e in evicted] == [e.batch_id for e in entries[:2]]
    assert [e.batch_id for e in dlq.entries()] == [e.batch_id for e in entries[2:]]


def test_list_due_respects_interval(event_factory, clock):
    dlq = DeadLetterStore(MemoryStorage(), reprocess_interval=timedelta(hours=1), clock=clock)
    old = _entry([event_factory()], clock())
    dlq.add(old)
    clock.advance(1800)
    dlq.add(_entry([event_factory()], clock()))

    assert dlq.list_due() == []
    clock.advance(1800)
    assert [e.batch_id for e in dlq.list_due()] == [old.batch_id]


def test_record_attempt_moves_entry_to_back(event_factory, clock):
    dlq = DeadLetterStore(MemoryStorage(), clock=clock)
    a, b = _entry([event_factory()], clock()), _entry([event_factory()], clock())
    dlq.add(a)
    dlq.add(b)

    clock.advance(60)
    updated = dlq.record_attempt(a.batch_id, reason="HTTP 502")

    assert updated.last_attempt_at == clock()
    assert updated.reason == "HTTP 502"
    assert [e.batch_id for e in dlq.entries()] == [b.batch_id, a.batch_id]


def test_purge_user(event_factory, clock):
    dlq = DeadLetterStore(MemoryStorage(), clock=clock)
    mixed = _entry([event_factory(user_id="alice"), event_factory(user_id="bob")], clock())
    only_alice = _entry([event_factory(user_id="alice")], clock())
    dlq.add(mixed)
    dlq.add(only_alice)

    assert dlq.purge_user("alice") == 2
    [left] = dlq.entries()
    assert left.batch_id == mixed.batch_id
    assert [e.user_id for e in left.batch.events] == ["bob"]


def test_persisted_and_restored(tmp_path, event_factory, clock):
    dlq = DeadLetterStore(FileStorage(tmp_path), clock=clock)
    entry = _entry([event_factory()], clock(), reason="timeout")
    dlq.add(entry)

    restored = DeadLetterStore(FileStorage(tmp_path), clock=clock)
    assert restored.load() == 1
    [back] = restored.entries()
    assert back.batch_id == entry.batch_id
    assert back.reason == "timeout"
    assert back.batch.events[0].id == entry.batch.events[0].id


def test_unreadable_state_starts_empty():
    storage = MemoryStorage()
    storage.set(DLQ_KEY, b"[1, 2")
    dlq = DeadLetterStore(storage)

    assert dlq.load() == 0


def test_stats(event_factory, clock):
    dlq = DeadLetterStore(MemoryStorage(), clock=clock)
    dlq.add(_entry([event_factory(), event_factory()], clock(), reason="timeout"))
    dlq.add(_entry([event_factory()], clock(), reason="timeout"))

    stats = dlq.stats()
    assert stats.size == 2
    assert stats.events == 3
    assert stats.reasons == {"timeout": 2}
