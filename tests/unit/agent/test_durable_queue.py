"""
Unit tests for DurableQueue: ordering, eviction, batching and recovery.
"""

import json
from datetime import timedelta
from uuid import uuid4

from telemetry_agent.queue import QUEUE_KEY, DurableQueue
from telemetry_agent.storage import FileStorage, MemoryStorage


def test_enqueue_preserves_order(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    events = [event_factory(i=i) for i in range(5)]
    for e in events:
        assert q.enqueue(e)

    assert q.size() == 5
    assert [e.id for e in q.events()] == [e.id for e in events]


def test_eviction_drops_oldest_and_counts(event_factory):
    dropped = []
    q = DurableQueue(MemoryStorage(), capacity=10, on_evict=dropped.append)
    events = [event_factory(i=i) for i in range(15)]
    for e in events:
        q.enqueue(e)

    assert q.size() == 10
    assert q.evicted_count == 5
    assert [e.id for e in dropped] == [e.id for e in events[:5]]
    assert [e.id for e in q.events()] == [e.id for e in events[5:]]


def test_eviction_takes_from_pending_batch_first(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=3)
    first = [event_factory() for _ in range(2)]
    for e in first:
        q.enqueue(e)
    batch = q.claim_batch(10)
    assert batch is not None and len(batch.events) == 2

    q.enqueue(event_factory())
    q.enqueue(event_factory())

    assert q.size() == 3
    assert q.evicted_count == 1
    assert first[0].id not in {e.id for e in q.events()}


def test_duplicate_id_is_ignored(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    e = event_factory()

    assert q.enqueue(e)
    assert not q.enqueue(e)
    assert q.size() == 1


def test_claim_cuts_batches_from_head(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=100)
    events = [event_factory(i=i) for i in range(7)]
    for e in events:
        q.enqueue(e)

    batch = q.claim_batch(5)
    assert batch.event_ids == [e.id for e in events[:5]]
    assert q.size() == 7  # still stored until acknowledged

    q.take_batch(batch.batch_id)
    assert q.size() == 2

    nxt = q.claim_batch(5)
    assert nxt.event_ids == [e.id for e in events[5:]]


def test_pending_batch_blocks_newer_until_due(event_factory, clock):
    q = DurableQueue(MemoryStorage(), capacity=100, clock=clock)
    q.enqueue(event_factory())
    batch = q.claim_batch(10)
    q.reschedule(batch.batch_id, attempt=1, next_attempt_at=clock() + timedelta(seconds=30))
    q.enqueue(event_factory())

    assert q.claim_batch(10) is None

    clock.advance(31)
    again = q.claim_batch(10)
    assert again.batch_id == batch.batch_id
    assert again.attempt == 1


def test_release_keeps_attempt(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    q.enqueue(event_factory())
    batch = q.claim_batch(10)

    assert q.claim_batch(10) is None  # in flight
    q.release(batch.batch_id)

    again = q.claim_batch(10)
    assert again.batch_id == batch.batch_id
    assert again.attempt == 0


def test_state_survives_restart(tmp_path, event_factory, clock):
    storage = FileStorage(tmp_path)
    q = DurableQueue(storage, capacity=5, clock=clock)
    events = [event_factory(i=i) for i in range(7)]
    for e in events:
        q.enqueue(e)
    batch = q.claim_batch(2)
    q.reschedule(batch.batch_id, attempt=2, next_attempt_at=clock(), error="HTTP 503")

    restored = DurableQueue(FileStorage(tmp_path), capacity=5, clock=clock)
    assert restored.load() == 5

    assert [e.id for e in restored.events()] == [e.id for e in events[2:]]
    assert restored.evicted_count == 2
    pending = restored.pending_batches()
    assert len(pending) == 1
    assert pending[0].attempt == 2
    assert pending[0].last_error == "HTTP 503"


def test_unreadable_state_starts_empty():
    storage = MemoryStorage()
    storage.set(QUEUE_KEY, b"{not json")
    q = DurableQueue(storage)

    assert q.load() == 0
    assert q.size() == 0


def test_peek_batch_does_not_remove(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    events = [event_factory(i=i) for i in range(5)]
    for e in events:
        q.enqueue(e)

    peeked = q.peek_batch(3)
    assert [e.id for e in peeked] == [e.id for e in events[:3]]
    assert q.size() == 5
    assert q.pending_batches() == []
    assert [e.id for e in q.peek_batch(3)] == [e.id for e in peeked]
    assert len(q.peek_batch(100)) == 5


def test_peek_batch_skips_claimed_events(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    events = [event_factory(i=i) for i in range(5)]
    for e in events:
        q.enqueue(e)
    q.claim_batch(2)

    assert [e.id for e in q.peek_batch(10)] == [e.id for e in events[2:]]


def test_remove_events_from_tail_and_pending_batches(tmp_path, event_factory):
    q = DurableQueue(FileStorage(tmp_path), capacity=10)
    events = [event_factory(i=i) for i in range(6)]
    for e in events:
        q.enqueue(e)
    batch = q.claim_batch(3)

    gone = [events[0].id, events[4].id]
    assert q.remove_events(gone + [uuid4()]) == 2
    assert q.size() == 4
    assert [e.id for e in q.pending_batches()[0].events] == [events[1].id, events[2].id]
    assert q.pending_batches()[0].batch_id == batch.batch_id

    restored = DurableQueue(FileStorage(tmp_path), capacity=10)
    assert restored.load() == 4
    assert [e.id for e in restored.events()] == [events[i].id for i in (1, 2, 3, 5)]


def test_remove_events_drops_emptied_batch(event_factory):
    q = DurableQueue(MemoryStorage(), capacity=10)
    events = [event_factory() for _ in range(2)]
    for e in events:
        q.enqueue(e)
    q.claim_batch(10)

    assert q.remove_events(e.id for e in events) == 2
    assert q.pending_batches() == []
    assert q.remove_events([events[0].id]) == 0
    assert q.enqueue(events[0])


def test_purge_user_touches_every_item(event_factory):
    storage = MemoryStorage()
    q = DurableQueue(storage, capacity=100)
    for i in range(6):
        q.enqueue(event_factory(user_id="alice" if i % 2 else "bob"))
    q.claim_batch(3)

    assert q.purge_user("alice") == 3
    assert all(e.user_id == "bob" for e in q.events())

    doc = json.loads(storage.get(QUEUE_KEY))
    persisted = doc["events"] + [e for b in doc["batches"] for e in b["events"]]
    assert len(persisted) == 3
    assert all(e["userId"] == "bob" for e in persisted)


def test_stats(event_factory, clock):
    q = DurableQueue(MemoryStorage(), capacity=10, clock=clock)
    for _ in range(4):
        q.enqueue(event_factory())
    b = q.claim_batch(2)
    q.reschedule(b.batch_id, attempt=1, next_attempt_at=clock())

    stats = q.stats()
    assert stats.size == 4
    assert stats.unbatched == 2
    assert stats.pending_batches == 1
    assert stats.retry_distribution == {1: 1}
    assert stats.oldest_occurred_at <= stats.newest_occurred_at
