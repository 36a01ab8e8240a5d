"""
Unit tests for EventStore on SQLite.
"""

from datetime import datetime, timedelta, timezone

import pytest
import sqlalchemy as sa

from telemetry_agent.models import Event
from telemetry_agent.utils import generate_id
from telemetry_ingest.errors import StoreUnavailable, map_db_error
from telemetry_ingest.store import EventStore

T0 = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _event(user_id="alice", name="opened", minutes=0, **props):
    return Event(
        id=generate_id(),
        name=name,
        properties=props,
        occurred_at=T0 + timedelta(minutes=minutes),
        session_id="s",
        device_id="d",
        user_id=user_id,
    )


def test_insert_ignores_known_ids(store):
    events = [_event(minutes=i) for i in range(3)]

    assert store.insert_events(events).inserted == 3
    again = store.insert_events(events + [_event()])

    assert again.received == 4
    assert again.inserted == 1
    assert again.duplicates == 3
    assert store.count() == 4


def test_roundtrip_preserves_fields(store):
    e = _event(count=3, ok=True, label="x", ratio=0.5, missing=None)
    store.insert_events([e])

    [back] = store.query_user_events("alice")
    assert back == e
    assert back.occurred_at.tzinfo is not None


def test_non_utc_timestamps_are_normalized(store):
    plus_two = timezone(timedelta(hours=2))
    e = _event().model_copy(update={"occurred_at": datetime(2026, 3, 1, 12, 0, tzinfo=plus_two)})
    store.insert_events([e])

    [back] = store.query_user_events("alice", start=T0, end=T0 + timedelta(seconds=1))
    assert back.occurred_at == T0


def test_anonymous_events_are_stored(store):
    store.insert_events([_event(user_id=None)])
    assert store.count() == 1
    assert store.count("alice") == 0


def test_delete_user(store):
    store.insert_events([_event("alice"), _event("alice"), _event("bob")])

    assert store.delete_user("alice") == 2
    assert store.delete_user("alice") == 0
    assert store.count() == 1


def test_empty_insert(store):
    result = store.insert_events([])
    assert (result.received, result.inserted) == (0, 0)


def test_ping_and_unavailable_database(tmp_path):
    store = EventStore.from_url(f"sqlite:///{tmp_path / 'missing' / 'nope.db'}")

    assert not store.ping()
    with pytest.raises(StoreUnavailable):
        store.count()


def test_map_db_error():
    err = sa.exc.OperationalError("SELECT 1", {}, Exception("connection refused"))
    assert isinstance(map_db_error(err), StoreUnavailable)
