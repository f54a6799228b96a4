"""Shared fixtures: a controllable clock, seeded store and wired services."""

from datetime import datetime, timedelta, timezone

import pytest

from treasury_ops.connections.coordinator import SyncCoordinator
from treasury_ops.connections.probe import StaticBankProbe
from treasury_ops.notifications.service import NotificationService
from treasury_ops.notifications.stream import ChannelClosed, StreamRegistry
from treasury_ops.pipeline import TaskEventPipeline
from treasury_ops.repositories import Client, InMemoryStore
from treasury_ops.tasks.engine import TaskEngine

CLIENT_ID = "client-acme"
RM_USER_ID = "rm-alice"


class FakeClock:
    """Deterministic clock; advances only when told to."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingChannel:
    """Output channel that keeps every frame written to it."""

    def __init__(self, fail_after: int | None = None):
        self.frames: list[str] = []
        self.closed = False
        self._fail_after = fail_after

    async def send(self, frame: str) -> None:
        if self.closed:
            raise ChannelClosed("closed")
        if self._fail_after is not None and len(self.frames) >= self._fail_after:
            raise ConnectionResetError("peer went away")
        self.frames.append(frame)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    """In-memory store seeded with one client and one orphan client."""
    return InMemoryStore(
        clock=clock,
        clients=[
            Client(client_id=CLIENT_ID, name="Acme Corp", relationship_manager_id=RM_USER_ID),
            Client(client_id="client-orphan", name="Orphan Ltd"),
        ],
    )


@pytest.fixture
def repositories(store):
    return store.as_repositories()


@pytest.fixture
def registry(clock):
    return StreamRegistry(heartbeat_interval=3600, clock=clock)


@pytest.fixture
def engine(repositories, clock):
    return TaskEngine(repositories, clock=clock, max_concurrent_tasks=4)


@pytest.fixture
def probe():
    return StaticBankProbe()


@pytest.fixture
def coordinator(repositories, engine, probe, clock):
    return SyncCoordinator(repositories, engine, probe=probe, clock=clock)


@pytest.fixture
def notifications(store, registry, clock):
    return NotificationService(store, registry, clock=clock, sweep_batch_size=2)


@pytest.fixture
def pipeline(repositories, engine, coordinator, notifications):
    """Engine wired to the coordinator and notification service."""
    listener = TaskEventPipeline(repositories.clients, coordinator, notifications)
    engine.add_listener(listener)
    return listener
