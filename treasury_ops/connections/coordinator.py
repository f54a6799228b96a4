"""
Bank connection sync coordinator.

Connection states::

    DISCONNECTED -> CONNECTED <-> SYNCING
    any -> ERROR (failed health check or failed sync)

A connection runs at most one sync at a time. The status check and the
SYNCING write happen under a per-connection lock, so two concurrent sync
requests for the same connection yield exactly one task and one ``Conflict``.
"""

from typing import Any
import uuid

import structlog

from treasury_ops.connections.models import (
    BankConnection,
    ConnectionStatus,
    ConnectionType,
    HealthCheckResult,
)
from treasury_ops.connections.probe import BankProbe, StaticBankProbe
from treasury_ops.errors import Conflict, InvalidRequest, InvalidState, NotFound, ProbeError
from treasury_ops.repositories.base import Repositories
from treasury_ops.tasks.engine import TaskEngine
from treasury_ops.tasks.models import TaskStatus, TaskType
from treasury_ops.utils.clock import Clock, utc_now
from treasury_ops.utils.locks import KeyedLock

logger = structlog.get_logger(__name__)


class SyncCoordinator:
    """
    Owns bank connection state and the single-sync invariant.

    Args:
        repositories: Entity store
        engine: Task engine that runs the DATA_SYNC tasks
        probe: External bank health probe
    """

    def __init__(
        self,
        repositories: Repositories,
        engine: TaskEngine,
        probe: BankProbe | None = None,
        clock: Clock = utc_now,
    ):
        self._connections = repositories.connections
        self._clients = repositories.clients
        self._engine = engine
        self._probe = probe or StaticBankProbe()
        self._clock = clock
        self._locks = KeyedLock()

    async def create(
        self,
        client_id: str,
        account_id: str,
        bank_name: str,
        connection_type: ConnectionType,
        settings: dict[str, Any] | None = None,
    ) -> BankConnection:
        """Register a new CONNECTED connection for a client's account."""
        if await self._clients.get_client(client_id) is None:
            raise InvalidRequest(f"Client {client_id} not found", field="client_id")

        async with self._locks.hold(f"account:{account_id}"):
            existing = await self._connections.find_connection(
                account_id, ConnectionStatus.CONNECTED
            )
            if existing is not None:
                raise Conflict(
                    "Active bank connection already exists for this account",
                    connection_id=existing.connection_id,
                )

            now = self._clock()
            connection = BankConnection(
                connection_id=str(uuid.uuid4()),
                client_id=client_id,
                account_id=account_id,
                bank_name=bank_name,
                connection_type=connection_type,
                status=ConnectionStatus.CONNECTED,
                created_at=now,
                updated_at=now,
                settings=settings or {},
            )
            await self._connections.create_connection(connection)

        logger.info(
            "Bank connection created",
            connection_id=connection.connection_id,
            client_id=client_id,
            account_id=account_id,
            bank_name=bank_name,
        )
        return connection

    async def get(self, connection_id: str) -> BankConnection:
        connection = await self._connections.get_connection(connection_id)
        if connection is None:
            raise NotFound("Bank connection not found")
        return connection

    async def list_for_client(self, client_id: str) -> list[BankConnection]:
        if await self._clients.get_client(client_id) is None:
            raise InvalidRequest(f"Client {client_id} not found", field="client_id")
        return await self._connections.list_connections(client_id)

    async def sync(self, connection_id: str) -> str:
        """
        Start a DATA_SYNC task for the connection and return its task id.

        Raises:
            NotFound: Unknown connection
            InvalidState: Connection is disconnected
            Conflict: A sync is already running for the connection
        """
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            if connection.status == ConnectionStatus.DISCONNECTED:
                raise InvalidState("Cannot sync disconnected connection")
            if connection.status == ConnectionStatus.SYNCING or connection.active_task_id:
                raise Conflict(
                    "Bank connection is already syncing",
                    connection_id=connection_id,
                    task_id=connection.active_task_id,
                )

            task = await self._engine.create(
                connection.client_id,
                TaskType.DATA_SYNC,
                connection_id=connection_id,
                queued=True,
            )
            connection.status = ConnectionStatus.SYNCING
            connection.active_task_id = task.task_id
            try:
                await self._connections.update_connection(connection)
            except Exception as e:
                failure = e
            else:
                failure = None

        if failure is not None:
            # cancel outside the lock: the terminal event re-enters on_task_terminal
            try:
                await self._engine.cancel(task.task_id)
            except Exception as cancel_error:
                logger.error(
                    "Could not cancel orphaned sync task",
                    connection_id=connection_id,
                    task_id=task.task_id,
                    error=str(cancel_error),
                    exc_info=True,
                )
            raise failure

        logger.info("Bank sync started", connection_id=connection_id, task_id=task.task_id)
        return task.task_id

    async def on_task_terminal(
        self, connection_id: str, task_id: str, outcome: TaskStatus
    ) -> BankConnection | None:
        """
        Settle the connection after its sync task reached a terminal status.

        COMPLETED refreshes ``last_sync`` and returns to CONNECTED, FAILED moves
        to ERROR, CANCELLED returns to CONNECTED without touching ``last_sync``.
        Events for any task other than the connection's active sync are ignored,
        including tasks that merely carry the connection id.
        """
        async with self._locks.hold(connection_id):
            connection = await self._connections.get_connection(connection_id)
            if connection is None:
                logger.warning(
                    "Sync finished for unknown connection",
                    connection_id=connection_id,
                    task_id=task_id,
                )
                return None
            if connection.active_task_id != task_id:
                logger.warning(
                    "Ignoring outcome of task that is not the active sync",
                    connection_id=connection_id,
                    task_id=task_id,
                    active_task_id=connection.active_task_id,
                )
                return connection

            if outcome == TaskStatus.COMPLETED:
                connection.status = ConnectionStatus.CONNECTED
                connection.last_sync = self._clock()
            elif outcome == TaskStatus.FAILED:
                connection.status = ConnectionStatus.ERROR
            elif outcome == TaskStatus.CANCELLED:
                connection.status = ConnectionStatus.CONNECTED
            else:
                raise InvalidRequest(f"{outcome.value} is not a terminal status")

            connection.active_task_id = None
            await self._connections.update_connection(connection)

        logger.info(
            "Bank sync finished",
            connection_id=connection_id,
            task_id=task_id,
            outcome=outcome.value,
            status=connection.status.value,
        )
        return connection

    async def disconnect(self, connection_id: str) -> BankConnection:
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            if connection.status == ConnectionStatus.SYNCING or connection.active_task_id:
                raise Conflict("Cannot disconnect while a sync is running")
            if connection.status == ConnectionStatus.DISCONNECTED:
                return connection
            connection.status = ConnectionStatus.DISCONNECTED
            await self._connections.update_connection(connection)

        logger.info("Bank connection disconnected", connection_id=connection_id)
        return connection

    async def reconnect(self, connection_id: str) -> BankConnection:
        """DISCONNECTED or ERROR back to CONNECTED."""
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            if connection.status not in (ConnectionStatus.DISCONNECTED, ConnectionStatus.ERROR):
                raise InvalidState(
                    f"Cannot reconnect connection in status {connection.status.value}"
                )
            if connection.active_task_id:
                raise Conflict("Cannot reconnect while a sync is running")

            existing = await self._connections.find_connection(
                connection.account_id, ConnectionStatus.CONNECTED
            )
            if existing is not None and existing.connection_id != connection_id:
                raise Conflict(
                    "Active bank connection already exists for this account",
                    connection_id=existing.connection_id,
                )

            connection.status = ConnectionStatus.CONNECTED
            await self._connections.update_connection(connection)

        logger.info("Bank connection reconnected", connection_id=connection_id)
        return connection

    async def update(
        self,
        connection_id: str,
        bank_name: str | None = None,
        connection_type: ConnectionType | None = None,
        settings: dict[str, Any] | None = None,
    ) -> BankConnection:
        """
        Edit the descriptive fields of a connection.

        Status, ``last_sync`` and the active task only change through the
        connection lifecycle operations. ``settings`` replaces the stored map.
        """
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            if bank_name is not None:
                if not bank_name.strip():
                    raise InvalidRequest("Bank name must not be empty", field="bank_name")
                connection.bank_name = bank_name
            if connection_type is not None:
                connection.connection_type = connection_type
            if settings is not None:
                connection.settings = dict(settings)
            await self._connections.update_connection(connection)

        logger.info("Bank connection updated", connection_id=connection_id)
        return connection

    async def delete(self, connection_id: str) -> BankConnection:
        """Remove a connection; refused while its sync is in flight."""
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            if connection.status == ConnectionStatus.SYNCING or connection.active_task_id:
                raise Conflict(
                    "Cannot delete a bank connection while a sync is running",
                    connection_id=connection_id,
                    task_id=connection.active_task_id,
                )
            await self._connections.delete_connection(connection_id)

        logger.info("Bank connection deleted", connection_id=connection_id)
        return connection

    async def check_health(self, connection_id: str) -> HealthCheckResult:
        """
        Probe the external bank once.

        A failed probe moves the connection to ERROR. A successful probe heals
        an ERROR connection back to CONNECTED (or SYNCING while its task runs).
        """
        async with self._locks.hold(connection_id):
            connection = await self.get(connection_id)
            try:
                await self._probe.probe(connection)
            except ProbeError as e:
                logger.warning(
                    "Bank health check failed",
                    connection_id=connection_id,
                    reason=e.reason,
                    status_code=e.status_code,
                )
                if connection.status != ConnectionStatus.ERROR:
                    connection.status = ConnectionStatus.ERROR
                    await self._connections.update_connection(connection)
                return HealthCheckResult(
                    connection_id=connection_id,
                    healthy=False,
                    status=connection.status,
                    reason=e.reason,
                )

            if connection.status == ConnectionStatus.ERROR:
                connection.status = (
                    ConnectionStatus.SYNCING
                    if connection.active_task_id
                    else ConnectionStatus.CONNECTED
                )
                await self._connections.update_connection(connection)
                logger.info(
                    "Bank connection recovered",
                    connection_id=connection_id,
                    status=connection.status.value,
                )

        return HealthCheckResult(
            connection_id=connection_id, healthy=True, status=connection.status
        )
