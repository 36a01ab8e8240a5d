"""
The Alembic migration must produce the same table the store writes to.
"""

import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from telemetry_agent.models import Event
from telemetry_agent.utils import generate_id, utc_now
from telemetry_ingest.store import EventStore, events_table

MIGRATION = Path(__file__).parents[3] / "migrations" / "versions" / "0001_telemetry_events.py"


def _load_migration():
    spec = importlib.util.spec_from_file_location("migration_0001", MIGRATION)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_upgrade_creates_store_table(tmp_path):
    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrated.db'}")
    migration = _load_migration()

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.upgrade()

    inspector = sa.inspect(engine)
    columns = {c["name"] for c in inspector.get_columns("telemetry_events")}
    assert columns == {c.name for c in events_table.columns}
    assert "ix_telemetry_events_user_occurred" in {i["name"] for i in inspector.get_indexes("telemetry_events")}

    store = EventStore(engine)
    e = Event(id=generate_id(), name="opened", occurred_at=utc_now(), session_id="s", device_id="d", user_id="u")
    assert store.insert_events([e, e]).inserted == 1

    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.downgrade()
    assert "telemetry_events" not in sa.inspect(engine).get_table_names()
