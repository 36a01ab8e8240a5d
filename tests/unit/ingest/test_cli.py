"""
Unit tests for the telemetry-ingest CLI.
"""

import pytest
from typer.testing import CliRunner

from telemetry_agent.models import Event
from telemetry_agent.utils import generate_id, utc_now
from telemetry_ingest.cli import app
from telemetry_ingest.config import get_settings
from telemetry_ingest.store import EventStore

runner = CliRunner()


@pytest.fixture
def db_url(tmp_path, monkeypatch):
    url = f"sqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DATABASE_URL", url)
    get_settings.cache_clear()
    yield url
    get_settings.cache_clear()


def _last_line(output: str) -> str:
    return output.strip().splitlines()[-1]


def test_init_db_then_count(db_url):
    assert runner.invoke(app, ["init-db"]).exit_code == 0

    result = runner.invoke(app, ["count"])
    assert result.exit_code == 0
    assert _last_line(result.output) == "0"


def test_delete_user(db_url):
    runner.invoke(app, ["init-db"])
    store = EventStore.from_url(db_url)
    store.insert_events(
        [
            Event(
                id=generate_id(),
                name="opened",
                occurred_at=utc_now(),
                session_id="s",
                device_id="d",
                user_id=user,
            )
            for user in ("alice", "alice", "bob")
        ]
    )
    store.dispose()

    result = runner.invoke(app, ["delete-user", "alice"])
    assert result.exit_code == 0
    assert _last_line(result.output) == "2"

    result = runner.invoke(app, ["count", "--user", "bob"])
    assert _last_line(result.output) == "1"


def test_count_without_schema_fails(db_url):
    result = runner.invoke(app, ["count"])
    assert result.exit_code == 1
