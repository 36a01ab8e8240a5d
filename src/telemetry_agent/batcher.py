"""
Single-flight batch flushing.

Timer ticks and queue-size crossings converge on one ``try_flush`` at a time.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Optional

from loguru import logger

from .queue import DurableQueue
from .retry import RetryManager, SendOutcome, SendResult
from .transport import Credentials


@dataclass(frozen=True)
class FlushResult:
    """Summary of one flush.

    ``coalesced`` means another flush was already in flight and this request
    was dropped; ``paused`` means delivery is waiting for fresh credentials.
    """

    results: tuple[SendResult, ...] = ()
    coalesced: bool = False
    paused: bool = False

    @property
    def delivered(self) -> int:
        return sum(r.event_count for r in self.results if r.outcome is SendOutcome.DELIVERED)

    @property
    def outcomes(self) -> list[SendOutcome]:
        return [r.outcome for r in self.results]

    @property
    def last(self) -> Optional[SendResult]:
        return self.results[-1] if self.results else None


class Batcher:
    """Turns timer ticks and queue-size crossings into single-flight flushes.

    Only one flush runs at a time; triggers that arrive meanwhile are
    coalesced (the next trigger picks up anything newly queued). A flush keeps
    sending batches while they are delivered, up to ``max_batches_per_flush``,
    and stops at the first deferred or failed send.
    """

    def __init__(
        self,
        queue: DurableQueue,
        retry: RetryManager,
        credentials: Credentials,
        *,
        max_batch_size: int = 100,
        flush_threshold: int = 50,
        max_batches_per_flush: int = 10,
    ):
        if max_batch_size <= 0:
            raise ValueError("max_batch_size must be > 0")
        self._queue = queue
        self._retry = retry
        self._credentials = credentials
        self._max_batch_size = max_batch_size
        self._threshold = flush_threshold
        self._max_batches = max(1, max_batches_per_flush)
        self._inflight: Optional[asyncio.Task[FlushResult]] = None

    @property
    def flushing(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    def should_flush(self, queue_size: int) -> bool:
        return queue_size >= self._threshold

    async def on_tick(self) -> FlushResult:
        return await self.try_flush()

    async def on_size_threshold(self) -> FlushResult:
        return await self.try_flush()

    async def try_flush(self) -> FlushResult:
        if self.flushing:
            logger.debug("Flush already in flight, coalescing trigger")
            return FlushResult(coalesced=True)
        task = asyncio.get_running_loop().create_task(self._drain())
        self._inflight = task
        task.add_done_callback(self._clear_inflight)
        return await asyncio.shield(task)

    async def flush_now(self) -> FlushResult:
        """Wait for any in-flight flush, then run a fresh one."""
        task = self._inflight
        if task is not None and not task.done():
            await asyncio.shield(task)
        return await self.try_flush()

    async def wait_idle(self) -> None:
        task = self._inflight
        if task is not None and not task.done():
            await asyncio.shield(task)

    async def cancel(self) -> None:
        """Abort the in-flight flush; its claimed batch goes back to the queue."""
        task = self._inflight
        if task is None or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    def _clear_inflight(self, task: asyncio.Task) -> None:
        if self._inflight is task:
            self._inflight = None

    async def _drain(self) -> FlushResult:
        results: list[SendResult] = []
        for _ in range(self._max_batches):
            if self._credentials.paused:
                return FlushResult(tuple(results), paused=True)
            batch = self._queue.claim_batch(self._max_batch_size)
            if batch is None:
                break
            try:
                res = await self._retry.send(batch, auth_token=self._credentials.token)
            except BaseException:
                self._queue.release(batch.batch_id)
                raise
            results.append(res)
            if res.outcome is SendOutcome.AUTH_REQUIRED:
                self._credentials.pause()
                return FlushResult(tuple(results), paused=True)
            if res.outcome not in (SendOutcome.DELIVERED, SendOutcome.REJECTED):
                break

        if results:
            logger.debug(
                f"Flush done: {len(results)} batches, {sum(r.event_count for r in results)} events, "
                f"outcomes={[o.value for o in (r.outcome for r in results)]}"
            )
        return FlushResult(tuple(results))
