"""
Demo: client pipeline delivering to an in-process ingestion service.

Tracks a burst of events, flushes, simulates a user deletion request and
prints pipeline health along the way. Uses a temporary SQLite database, no
network needed.
"""

import asyncio
import tempfile
from pathlib import Path

import httpx
from loguru import logger

from telemetry_agent import FileStorage, HttpTransport, Identity, Pipeline, PipelineSettings
from telemetry_ingest.config import Settings
from telemetry_ingest.service.app import create_app
from telemetry_ingest.store import EventStore

TOKEN = "demo-token"


async def main():
    workdir = Path(tempfile.mkdtemp(prefix="telemetry-demo-"))
    store = EventStore.from_url(f"sqlite:///{workdir / 'events.db'}")
    store.create_schema()
    app = create_app(Settings(API_TOKENS=TOKEN), store=store)

    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://ingest")
    transport = HttpTransport("http://ingest", client=client)
    settings = PipelineSettings(flush_threshold=25, flush_interval_ms=500)

    alice = Identity(session_id="s-1", device_id="d-1", user_id="alice")
    bob = Identity(session_id="s-2", device_id="d-2", user_id="bob")

    async with Pipeline(
        transport, FileStorage(workdir / "state"), settings, auth_token=TOKEN
    ) as pipeline:
        logger.info("🚀 Tracking 120 events for two users")
        for i in range(120):
            pipeline.track("note_created", {"index": i, "source": "demo"}, alice if i % 2 else bob)
        pipeline.track("", {})  # dropped as invalid
        pipeline.track("signup", {"contact": "alice@example.com"}, alice)  # redacted

        result = await pipeline.flush_now()
        logger.info(f"Flushed {result.delivered} events, outcomes={[o.value for o in result.outcomes]}")

        health = pipeline.health()
        logger.info(
            f"Health: queue={health.queue_size}/{health.capacity} circuit={health.circuit_state} "
            f"delivered={health.delivered_events} invalid={health.dropped_invalid}"
        )

        deletion = await pipeline.delete_user("alice")
        logger.info(
            f"Deleted alice: local={deletion.local_removed} remote={deletion.remote_deleted}"
        )

    await client.aclose()
    logger.info(f"Server now holds {store.count()} events ({store.count('alice')} for alice)")
    logger.info("✅ Pipeline demo complete")


if __name__ == "__main__":
    asyncio.run(main())
