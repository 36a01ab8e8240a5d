"""
Unit tests for PipelineSettings and the persistence adapters.
"""

import pytest
from pydantic import ValidationError

from telemetry_agent.settings import PipelineSettings
from telemetry_agent.storage import FileStorage, MemoryStorage, PersistenceAdapter


def test_settings_defaults():
    s = PipelineSettings(_env_file=None)

    assert s.max_batch_size == 100
    assert s.queue_capacity == 1000
    assert s.max_attempts == 5
    assert s.flush_interval == 10.0
    assert s.dead_letter_reprocess_interval.total_seconds() == 3600


def test_settings_from_env(monkeypatch):
    monkeypatch.setenv("TELEMETRY_QUEUE_CAPACITY", "2000")
    monkeypatch.setenv("TELEMETRY_FLUSH_INTERVAL_MS", "5000")
    monkeypatch.setenv("TELEMETRY_REDACT_PII", "false")

    s = PipelineSettings(_env_file=None)

    assert s.queue_capacity == 2000
    assert s.flush_interval == 5.0
    assert s.redact_pii is False


def test_settings_reject_inconsistent_ranges():
    with pytest.raises(ValidationError):
        PipelineSettings(_env_file=None, backoff_base_ms=5000, backoff_max_ms=1000)
    with pytest.raises(ValidationError):
        PipelineSettings(_env_file=None, max_batch_size=500)


@pytest.mark.parametrize("factory", [MemoryStorage, "file"])
def test_storage_roundtrip(tmp_path, factory):
    storage = FileStorage(tmp_path / "state") if factory == "file" else factory()
    assert isinstance(storage, PersistenceAdapter)

    assert storage.get("telemetry:queue") is None
    storage.set("telemetry:queue", b"one")
    storage.set("telemetry:queue", b"two")
    assert storage.get("telemetry:queue") == b"two"

    storage.delete("telemetry:queue")
    storage.delete("telemetry:queue")
    assert storage.get("telemetry:queue") is None


def test_file_storage_leaves_no_temp_files(tmp_path):
    storage = FileStorage(tmp_path)
    storage.set("a:b", b"x")

    assert [p.name for p in tmp_path.iterdir()] == ["a%3Ab.bin"]
