"""
Telemetry ingestion service: accepts event batches over HTTP, stores them
idempotently and serves per-user deletion and read-back.
"""

from .config import Settings, get_settings
from .store import EventStore, IngestResult

__all__ = ["EventStore", "IngestResult", "Settings", "get_settings"]
