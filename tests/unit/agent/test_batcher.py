"""
Unit tests for the single-flight batcher.
"""

import asyncio
import threading

import pytest

from telemetry_agent.batcher import Batcher
from telemetry_agent.dlq import DeadLetterStore
from telemetry_agent.errors import AuthenticationError, TransientTransportError
from telemetry_agent.policy import CircuitBreaker, RetryPolicy
from telemetry_agent.queue import DurableQueue
from telemetry_agent.retry import RetryManager, SendOutcome
from telemetry_agent.storage import MemoryStorage
from telemetry_agent.transport import Credentials


@pytest.fixture
def build(clock, transport):
    def _build(max_batch_size=10, max_batches_per_flush=10):
        storage = MemoryStorage()
        lock = threading.RLock()
        queue = DurableQueue(storage, capacity=1000, lock=lock, clock=clock)
        dlq = DeadLetterStore(storage, lock=lock, clock=clock)
        circuit = CircuitBreaker(failure_threshold=10, clock=clock.monotonic)
        policy = RetryPolicy(max_attempts=5, jitter=False)
        retry = RetryManager(queue, dlq, transport, circuit, policy, lock=lock, clock=clock)
        creds = Credentials("token")
        batcher = Batcher(
            queue,
            retry,
            creds,
            max_batch_size=max_batch_size,
            flush_threshold=5,
            max_batches_per_flush=max_batches_per_flush,
        )
        return queue, creds, batcher

    return _build


@pytest.mark.asyncio
async def test_flush_drains_in_batches(build, transport, event_factory):
    queue, creds, batcher = build(max_batch_size=10)
    for _ in range(25):
        queue.enqueue(event_factory())

    result = await batcher.flush_now()

    assert [len(b.events) for b in transport.sent] == [10, 10, 5]
    assert result.delivered == 25
    assert queue.size() == 0


@pytest.mark.asyncio
async def test_flush_respects_max_batches(build, transport, event_factory):
    queue, creds, batcher = build(max_batch_size=10, max_batches_per_flush=2)
    for _ in range(25):
        queue.enqueue(event_factory())

    await batcher.flush_now()

    assert len(transport.sent) == 2
    assert queue.size() == 5


@pytest.mark.asyncio
async def test_flush_stops_at_first_failure(build, transport, event_factory):
    queue, creds, batcher = build(max_batch_size=10)
    transport.default = TransientTransportError("HTTP 503", 503)
    for _ in range(25):
        queue.enqueue(event_factory())

    result = await batcher.flush_now()

    assert result.outcomes == [SendOutcome.RETRY_SCHEDULED]
    assert transport.calls == 1


@pytest.mark.asyncio
async def test_concurrent_triggers_coalesce(build, transport, event_factory):
    queue, creds, batcher = build()
    gate = asyncio.Event()
    original = transport.send

    async def slow_send(batch, *, auth_token):
        await gate.wait()
        await original(batch, auth_token=auth_token)

    transport.send = slow_send
    queue.enqueue(event_factory())

    first = asyncio.create_task(batcher.on_tick())
    await asyncio.sleep(0)
    assert batcher.flushing

    second = await batcher.on_size_threshold()
    assert second.coalesced

    gate.set()
    result = await first
    assert result.delivered == 1
    assert not batcher.flushing
    assert len(transport.sent) == 1


@pytest.mark.asyncio
async def test_auth_failure_pauses_delivery(build, transport, event_factory):
    queue, creds, batcher = build()
    transport.script = [AuthenticationError("HTTP 401", 401)]
    queue.enqueue(event_factory())

    result = await batcher.flush_now()
    assert result.paused
    assert creds.paused

    again = await batcher.flush_now()
    assert again.paused
    assert transport.calls == 1

    creds.refresh("fresh")
    resumed = await batcher.flush_now()
    assert resumed.delivered == 1
    assert transport.tokens == ["token", "fresh"]


@pytest.mark.asyncio
async def test_cancel_returns_claimed_batch(build, transport, event_factory):
    queue, creds, batcher = build()

    async def hang(batch, *, auth_token):
        await asyncio.sleep(30)

    transport.send = hang
    queue.enqueue(event_factory())

    task = asyncio.create_task(batcher.flush_now())
    await asyncio.sleep(0.01)
    await batcher.cancel()
    await asyncio.gather(task, return_exceptions=True)

    pending = queue.pending_batches()
    assert len(pending) == 1
    assert pending[0].attempt == 0
    assert queue.claim_batch(10) is not None


def test_should_flush_threshold(build):
    queue, creds, batcher = build()
    assert not batcher.should_flush(4)
    assert batcher.should_flush(5)
