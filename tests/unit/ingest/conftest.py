import pytest
from fastapi.testclient import TestClient

from telemetry_ingest.config import Settings
from telemetry_ingest.service.app import create_app
from telemetry_ingest.store import EventStore

TOKEN = "test-token"


@pytest.fixture
def store(tmp_path):
    s = EventStore.from_url(f"sqlite:///{tmp_path / 'events.db'}")
    s.create_schema()
    yield s
    s.dispose()


@pytest.fixture
def client(store):
    settings = Settings(_env_file=None, API_TOKENS=f"{TOKEN},other-token", MAX_BATCH_SIZE=100)
    return TestClient(create_app(settings, store=store))


@pytest.fixture
def auth():
    return {"Authorization": f"Bearer {TOKEN}"}
