"""
Tests for the bank connection sync coordinator.

Includes the single-sync invariant under concurrent requests.
"""

import asyncio

import pytest

from treasury_ops.connections.coordinator import SyncCoordinator
from treasury_ops.connections.models import ConnectionStatus, ConnectionType
from treasury_ops.errors import Conflict, InvalidRequest, InvalidState, NotFound, StoreError
from treasury_ops.repositories import Client, InMemoryStore
from treasury_ops.tasks.engine import TaskEngine
from treasury_ops.tasks.models import TaskStatus, TaskType

from .conftest import CLIENT_ID


async def _connect(coordinator, account_id="acct-001"):
    return await coordinator.create(CLIENT_ID, account_id, "First Bank", ConnectionType.OPEN_BANKING)


class TestConnectionLifecycle:
    """Create, disconnect and reconnect."""

    @pytest.mark.asyncio
    async def test_create_is_connected(self, coordinator):
        connection = await _connect(coordinator)

        assert connection.status == ConnectionStatus.CONNECTED
        assert connection.last_sync is None
        assert connection.active_task_id is None
        assert await coordinator.get(connection.connection_id) == connection

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_client(self, coordinator):
        with pytest.raises(InvalidRequest):
            await coordinator.create("nobody", "acct-1", "First Bank", ConnectionType.API)

    @pytest.mark.asyncio
    async def test_one_connected_connection_per_account(self, coordinator):
        await _connect(coordinator)

        with pytest.raises(Conflict):
            await _connect(coordinator)

    @pytest.mark.asyncio
    async def test_disconnect_and_reconnect(self, coordinator):
        connection = await _connect(coordinator)

        disconnected = await coordinator.disconnect(connection.connection_id)
        assert disconnected.status == ConnectionStatus.DISCONNECTED

        # a new connection may take the account over while this one is down
        replacement = await _connect(coordinator)
        with pytest.raises(Conflict):
            await coordinator.reconnect(connection.connection_id)

        await coordinator.disconnect(replacement.connection_id)
        reconnected = await coordinator.reconnect(connection.connection_id)
        assert reconnected.status == ConnectionStatus.CONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_requires_disconnected_or_error(self, coordinator):
        connection = await _connect(coordinator)

        with pytest.raises(InvalidState):
            await coordinator.reconnect(connection.connection_id)

    @pytest.mark.asyncio
    async def test_list_for_client(self, coordinator, clock):
        first = await _connect(coordinator, "acct-1")
        clock.advance(seconds=1)
        second = await _connect(coordinator, "acct-2")

        connections = await coordinator.list_for_client(CLIENT_ID)

        assert [c.connection_id for c in connections] == [
            second.connection_id,
            first.connection_id,
        ]
        with pytest.raises(InvalidRequest):
            await coordinator.list_for_client("nobody")


class TestSync:
    """Sync admission and settlement."""

    @pytest.mark.asyncio
    async def test_sync_creates_queued_data_sync_task(self, coordinator, engine):
        connection = await _connect(coordinator)

        task_id = await coordinator.sync(connection.connection_id)

        task = await engine.get(task_id)
        assert task.task_type == TaskType.DATA_SYNC
        assert task.status == TaskStatus.QUEUED
        assert task.client_id == CLIENT_ID
        assert task.connection_id == connection.connection_id
        assert [s.name for s in task.steps] == [
            "Authenticate Connection",
            "Fetch Data",
            "Process Data",
            "Update Records",
        ]

        stored = await coordinator.get(connection.connection_id)
        assert stored.status == ConnectionStatus.SYNCING
        assert stored.active_task_id == task_id

    @pytest.mark.asyncio
    async def test_sync_unknown_connection(self, coordinator):
        with pytest.raises(NotFound):
            await coordinator.sync("missing")

    @pytest.mark.asyncio
    async def test_sync_disconnected_connection(self, coordinator):
        connection = await _connect(coordinator)
        await coordinator.disconnect(connection.connection_id)

        with pytest.raises(InvalidState, match="Cannot sync disconnected connection"):
            await coordinator.sync(connection.connection_id)

    @pytest.mark.asyncio
    async def test_second_sync_conflicts(self, coordinator):
        connection = await _connect(coordinator)
        await coordinator.sync(connection.connection_id)

        with pytest.raises(Conflict):
            await coordinator.sync(connection.connection_id)

    @pytest.mark.asyncio
    async def test_concurrent_syncs_yield_one_task(self, coordinator, store):
        connection = await _connect(coordinator)

        results = await asyncio.gather(
            coordinator.sync(connection.connection_id),
            coordinator.sync(connection.connection_id),
            return_exceptions=True,
        )

        task_ids = [r for r in results if isinstance(r, str)]
        conflicts = [r for r in results if isinstance(r, Conflict)]
        assert len(task_ids) == 1
        assert len(conflicts) == 1
        assert await store.count_tasks(client_id=CLIENT_ID) == 1

    @pytest.mark.asyncio
    async def test_sync_allowed_from_error(self, coordinator, probe):
        connection = await _connect(coordinator)
        probe.healthy = False
        await coordinator.check_health(connection.connection_id)

        task_id = await coordinator.sync(connection.connection_id)

        assert task_id

    @pytest.mark.asyncio
    async def test_completed_sync_refreshes_last_sync(self, coordinator, clock):
        connection = await _connect(coordinator)
        task_id = await coordinator.sync(connection.connection_id)
        clock.advance(minutes=2)

        settled = await coordinator.on_task_terminal(
            connection.connection_id, task_id, TaskStatus.COMPLETED
        )

        assert settled.status == ConnectionStatus.CONNECTED
        assert settled.last_sync == clock.now
        assert settled.active_task_id is None

    @pytest.mark.asyncio
    async def test_failed_sync_moves_to_error(self, coordinator):
        connection = await _connect(coordinator)
        task_id = await coordinator.sync(connection.connection_id)

        settled = await coordinator.on_task_terminal(
            connection.connection_id, task_id, TaskStatus.FAILED
        )

        assert settled.status == ConnectionStatus.ERROR
        assert settled.last_sync is None
        assert settled.active_task_id is None

    @pytest.mark.asyncio
    async def test_cancelled_sync_keeps_last_sync(self, coordinator, clock):
        connection = await _connect(coordinator)
        first = await coordinator.sync(connection.connection_id)
        await coordinator.on_task_terminal(connection.connection_id, first, TaskStatus.COMPLETED)
        last_sync = clock.now
        clock.advance(hours=1)

        second = await coordinator.sync(connection.connection_id)
        settled = await coordinator.on_task_terminal(
            connection.connection_id, second, TaskStatus.CANCELLED
        )

        assert settled.status == ConnectionStatus.CONNECTED
        assert settled.last_sync == last_sync

    @pytest.mark.asyncio
    async def test_stale_outcome_ignored(self, coordinator):
        connection = await _connect(coordinator)
        task_id = await coordinator.sync(connection.connection_id)

        settled = await coordinator.on_task_terminal(
            connection.connection_id, "some-other-task", TaskStatus.FAILED
        )

        assert settled.status == ConnectionStatus.SYNCING
        assert settled.active_task_id == task_id

    @pytest.mark.asyncio
    async def test_disconnect_while_syncing_conflicts(self, coordinator):
        connection = await _connect(coordinator)
        await coordinator.sync(connection.connection_id)

        with pytest.raises(Conflict):
            await coordinator.disconnect(connection.connection_id)


class TestHealthCheck:
    """Bank probe outcomes."""

    @pytest.mark.asyncio
    async def test_healthy_probe(self, coordinator, probe):
        connection = await _connect(coordinator)

        result = await coordinator.check_health(connection.connection_id)

        assert result.healthy is True
        assert result.status == ConnectionStatus.CONNECTED
        assert probe.calls == [connection.connection_id]

    @pytest.mark.asyncio
    async def test_failed_probe_moves_to_error(self, coordinator, probe):
        connection = await _connect(coordinator)
        probe.healthy = False
        probe.reason = "gateway timeout"

        result = await coordinator.check_health(connection.connection_id)

        assert result.healthy is False
        assert result.status == ConnectionStatus.ERROR
        assert result.reason == "gateway timeout"
        stored = await coordinator.get(connection.connection_id)
        assert stored.status == ConnectionStatus.ERROR

    @pytest.mark.asyncio
    async def test_recovery_after_error(self, coordinator, probe):
        connection = await _connect(coordinator)
        probe.healthy = False
        await coordinator.check_health(connection.connection_id)

        probe.healthy = True
        result = await coordinator.check_health(connection.connection_id)

        assert result.healthy is True
        assert result.status == ConnectionStatus.CONNECTED


class FailingConnectionStore(InMemoryStore):
    """In-memory store whose connection writes can be switched off."""

    fail_connection_updates = False

    async def update_connection(self, connection):
        if self.fail_connection_updates:
            raise StoreError("connection write failed")
        return await super().update_connection(connection)


class TestSyncOwnership:
    """Only the active sync task settles a connection."""

    @pytest.mark.asyncio
    async def test_unrelated_task_does_not_settle_disconnected_connection(
        self, pipeline, coordinator, engine
    ):
        connection = await _connect(coordinator)
        await coordinator.disconnect(connection.connection_id)
        task = await engine.create(
            CLIENT_ID, TaskType.DATA_SYNC, connection_id=connection.connection_id
        )

        await engine.complete(task.task_id)

        stored = await coordinator.get(connection.connection_id)
        assert stored.status == ConnectionStatus.DISCONNECTED
        assert stored.last_sync is None

    @pytest.mark.asyncio
    async def test_outcome_without_active_sync_is_ignored(self, coordinator):
        connection = await _connect(coordinator)

        settled = await coordinator.on_task_terminal(
            connection.connection_id, "unsanctioned-task", TaskStatus.COMPLETED
        )

        assert settled.status == ConnectionStatus.CONNECTED
        assert settled.last_sync is None

    @pytest.mark.asyncio
    async def test_failed_setup_reraises_original_error(self, clock):
        store = FailingConnectionStore(
            clock=clock, clients=[Client(CLIENT_ID, "Acme Corp", "rm-alice")]
        )
        engine = TaskEngine(store.as_repositories(), clock=clock)
        coordinator = SyncCoordinator(store.as_repositories(), engine, clock=clock)

        async def broken_listener(transition):
            if transition.task.is_terminal:
                raise StoreError("listener store down")

        engine.add_listener(broken_listener)
        connection = await _connect(coordinator)
        store.fail_connection_updates = True

        with pytest.raises(StoreError, match="connection write failed"):
            await coordinator.sync(connection.connection_id)

        tasks, total = await engine.list_for_client(CLIENT_ID)
        assert total == 1
        assert tasks[0].status == TaskStatus.CANCELLED
        stored = await coordinator.get(connection.connection_id)
        assert stored.status == ConnectionStatus.CONNECTED
        assert stored.active_task_id is None


class TestUpdateAndDelete:
    """Editing and removing connections."""

    @pytest.mark.asyncio
    async def test_update_descriptive_fields(self, coordinator):
        connection = await _connect(coordinator)

        updated = await coordinator.update(
            connection.connection_id,
            bank_name="First Bank Europe",
            settings={"syncFrequency": "daily"},
        )

        assert updated.bank_name == "First Bank Europe"
        assert updated.connection_type == ConnectionType.OPEN_BANKING
        assert updated.settings == {"syncFrequency": "daily"}
        assert updated.status == ConnectionStatus.CONNECTED
        stored = await coordinator.get(connection.connection_id)
        assert stored.bank_name == "First Bank Europe"

    @pytest.mark.asyncio
    async def test_update_rejects_blank_name_and_unknown_id(self, coordinator):
        connection = await _connect(coordinator)

        with pytest.raises(InvalidRequest):
            await coordinator.update(connection.connection_id, bank_name="  ")
        with pytest.raises(NotFound):
            await coordinator.update("missing", bank_name="Other Bank")

    @pytest.mark.asyncio
    async def test_update_allowed_while_syncing(self, coordinator):
        connection = await _connect(coordinator)
        task_id = await coordinator.sync(connection.connection_id)

        updated = await coordinator.update(connection.connection_id, settings={"scope": "all"})

        assert updated.status == ConnectionStatus.SYNCING
        assert updated.active_task_id == task_id

    @pytest.mark.asyncio
    async def test_delete(self, coordinator):
        connection = await _connect(coordinator)

        deleted = await coordinator.delete(connection.connection_id)

        assert deleted.connection_id == connection.connection_id
        with pytest.raises(NotFound):
            await coordinator.get(connection.connection_id)
        with pytest.raises(NotFound):
            await coordinator.delete(connection.connection_id)

    @pytest.mark.asyncio
    async def test_delete_while_syncing_conflicts(self, coordinator):
        connection = await _connect(coordinator)
        await coordinator.sync(connection.connection_id)

        with pytest.raises(Conflict):
            await coordinator.delete(connection.connection_id)

        stored = await coordinator.get(connection.connection_id)
        assert stored.status == ConnectionStatus.SYNCING
