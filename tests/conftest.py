"""
Pytest configuration and shared fixtures for the telemetry pipeline.

Provides cross-platform event loop configuration, a controllable clock and a
scriptable in-memory transport.
"""

import asyncio
import sys
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from telemetry_agent.models import Batch, Event, Identity
from telemetry_agent.utils import generate_id

# Set policy *before* pytest-asyncio creates any loops
if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class FakeClock:
    """Manually advanced clock serving both wall time and monotonic seconds."""

    def __init__(self, start: Optional[datetime] = None):
        self._start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        self._offset = 0.0

    def __call__(self) -> datetime:
        return self._start + timedelta(seconds=self._offset)

    def monotonic(self) -> float:
        return 1000.0 + self._offset

    def advance(self, seconds: float) -> None:
        self._offset += seconds


class FakeTransport:
    """Records sends; raises the next scripted exception, if any.

    ``script`` entries are consumed one per send (``None`` means success);
    once empty, ``default`` is used.
    When ``gate`` is set, sends block until it is released.
    """

    def __init__(self, script=None, default: Optional[Exception] = None):
        self.script = list(script or [])
        self.default = default
        self.sent: list[Batch] = []
        self.tokens: list[Optional[str]] = []
        self.deleted: list[str] = []
        self.delete_error: Optional[Exception] = None
        self.calls = 0
        self.closed = False
        self.gate: Optional[asyncio.Event] = None

    async def send(self, batch: Batch, *, auth_token: Optional[str]) -> None:
        self.calls += 1
        self.tokens.append(auth_token)
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        exc = self.script.pop(0) if self.script else self.default
        if exc is not None:
            raise exc
        self.sent.append(batch)

    async def delete_user(self, user_id: str, *, auth_token: Optional[str]) -> None:
        await asyncio.sleep(0)
        if self.delete_error is not None:
            raise self.delete_error
        self.deleted.append(user_id)

    async def aclose(self) -> None:
        self.closed = True

    @property
    def delivered_ids(self) -> list:
        return [e.id for b in self.sent for e in b.events]


def make_event(name: str = "note_created", user_id: Optional[str] = "user-1", **props) -> Event:
    return Event(
        id=generate_id(),
        name=name,
        properties=props,
        occurred_at=datetime.now(timezone.utc),
        session_id="session-1",
        device_id="device-1",
        user_id=user_id,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def identity():
    return Identity(session_id="session-1", device_id="device-1", user_id="user-1")


@pytest.fixture
def event_factory():
    return make_event
