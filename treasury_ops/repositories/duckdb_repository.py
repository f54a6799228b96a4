"""
DuckDB implementation of the repository pattern.

A pragmatic file-backed store:
- One shared database handle with a single lock for all repositories
- Blocking DuckDB calls run in the default executor
- Timestamps stored as naive UTC, JSON payloads stored as text
"""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
import json
from pathlib import Path
from typing import Any, TypeVar, cast

import duckdb
import structlog

from treasury_ops.connections.models import (
    BankConnection,
    ConnectionStatus,
    ConnectionType,
)
from treasury_ops.errors import NotFound, StoreError
from treasury_ops.notifications.models import Notification, NotificationType
from treasury_ops.repositories.base import (
    Client,
    ClientRepository,
    ConnectionRepository,
    NotificationRepository,
    Repositories,
    TaskRepository,
)
from treasury_ops.tasks.models import (
    ProcessingTask,
    TaskError,
    TaskStatus,
    TaskStep,
    TaskType,
)
from treasury_ops.utils.clock import Clock, ensure_utc, utc_now

logger = structlog.get_logger(__name__)

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS clients (
        client_id VARCHAR PRIMARY KEY,
        name VARCHAR NOT NULL,
        relationship_manager_id VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_tasks (
        task_id VARCHAR PRIMARY KEY,
        client_id VARCHAR NOT NULL,
        task_type VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        progress INTEGER NOT NULL DEFAULT 0,
        steps VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        start_time TIMESTAMP,
        end_time TIMESTAMP,
        estimated_duration BIGINT,
        results VARCHAR,
        error VARCHAR,
        statement_id VARCHAR,
        connection_id VARCHAR
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tasks_client_id ON processing_tasks(client_id)",
    """
    CREATE TABLE IF NOT EXISTS bank_connections (
        connection_id VARCHAR PRIMARY KEY,
        client_id VARCHAR NOT NULL,
        account_id VARCHAR NOT NULL,
        bank_name VARCHAR NOT NULL,
        connection_type VARCHAR NOT NULL,
        status VARCHAR NOT NULL,
        created_at TIMESTAMP NOT NULL,
        updated_at TIMESTAMP NOT NULL,
        last_sync TIMESTAMP,
        active_task_id VARCHAR,
        settings VARCHAR
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notifications (
        notification_id VARCHAR PRIMARY KEY,
        user_id VARCHAR NOT NULL,
        notification_type VARCHAR NOT NULL,
        title VARCHAR NOT NULL,
        message VARCHAR NOT NULL,
        data VARCHAR,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        expires_at TIMESTAMP,
        created_at TIMESTAMP NOT NULL
    )
    """,
    # Indexes only on columns that are never updated.
    "CREATE INDEX IF NOT EXISTS idx_notifications_user_id ON notifications(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_expires_at ON notifications(expires_at)",
)

TASK_COLUMNS = (
    "task_id, client_id, task_type, status, progress, steps, created_at, updated_at, "
    "start_time, end_time, estimated_duration, results, error, statement_id, connection_id"
)
CONNECTION_COLUMNS = (
    "connection_id, client_id, account_id, bank_name, connection_type, status, "
    "created_at, updated_at, last_sync, active_task_id, settings"
)
NOTIFICATION_COLUMNS = (
    "notification_id, user_id, notification_type, title, message, data, is_read, "
    "expires_at, created_at"
)
NOTIFICATION_SORT_COLUMNS = {
    "created_at": "created_at",
    "expires_at": "expires_at",
    "type": "notification_type",
    "title": "title",
}


def _to_db(value: datetime | None) -> datetime | None:
    utc = ensure_utc(value)
    return utc.replace(tzinfo=None) if utc else None


def _from_db(value: datetime | None) -> datetime | None:
    return value.replace(tzinfo=timezone.utc) if value else None


def _dumps(value: Any) -> str | None:
    return json.dumps(value, default=str) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


class DuckDBDatabase:
    """Shared database file, lock and lazily created schema."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Single lock for all database operations to prevent concurrency issues
        self._lock = asyncio.Lock()
        self._initialized = False

    async def run(self, operation: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Run ``operation`` against a fresh connection under the shared lock."""
        async with self._lock:

            def _run() -> T:
                with duckdb.connect(str(self.db_path)) as conn:
                    if not self._initialized:
                        for statement in SCHEMA:
                            conn.execute(statement)
                        self._initialized = True
                    return operation(conn)

            loop = asyncio.get_running_loop()
            try:
                return await loop.run_in_executor(None, _run)
            except duckdb.Error as e:
                logger.error("DuckDB operation failed", path=str(self.db_path), error=str(e))
                raise StoreError(f"DuckDB operation failed: {e}") from e

    async def execute(self, query: str, params: tuple = ()) -> None:
        await self.run(lambda conn: conn.execute(query, params))

    async def fetch_one(self, query: str, params: tuple = ()) -> tuple | None:
        return await self.run(lambda conn: conn.execute(query, params).fetchone())

    async def fetch_all(self, query: str, params: tuple = ()) -> list[tuple]:
        return await self.run(lambda conn: conn.execute(query, params).fetchall())


class DuckDBRepository:
    """Base class for DuckDB repositories sharing one database."""

    def __init__(self, database: DuckDBDatabase, clock: Clock = utc_now):
        self.db = database
        self._clock = clock


class DuckDBClientRepository(DuckDBRepository, ClientRepository):
    async def create_client(self, client: Client) -> Client:
        await self.db.execute(
            "INSERT INTO clients (client_id, name, relationship_manager_id) VALUES (?, ?, ?)",
            (client.client_id, client.name, client.relationship_manager_id),
        )
        return client

    async def get_client(self, client_id: str) -> Client | None:
        row = await self.db.fetch_one(
            "SELECT client_id, name, relationship_manager_id FROM clients WHERE client_id = ?",
            (client_id,),
        )
        return Client(client_id=row[0], name=row[1], relationship_manager_id=row[2]) if row else None


class DuckDBTaskRepository(DuckDBRepository, TaskRepository):
    """DuckDB implementation of TaskRepository."""

    async def create_task(self, task: ProcessingTask) -> ProcessingTask:
        await self.db.execute(
            f"INSERT INTO processing_tasks ({TASK_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                task.task_id,
                task.client_id,
                task.task_type.value,
                task.status.value,
                task.progress,
                json.dumps([step.to_dict() for step in task.steps]),
                _to_db(task.created_at),
                _to_db(task.updated_at),
                _to_db(task.start_time),
                _to_db(task.end_time),
                task.estimated_duration,
                _dumps(task.results),
                _dumps(task.error.to_dict() if task.error else None),
                task.statement_id,
                task.connection_id,
            ),
        )
        logger.debug("Task created", task_id=task.task_id, task_type=task.task_type.value)
        return task

    async def get_task(self, task_id: str) -> ProcessingTask | None:
        row = await self.db.fetch_one(
            f"SELECT {TASK_COLUMNS} FROM processing_tasks WHERE task_id = ?", (task_id,)
        )
        return self._row_to_task(row) if row else None

    async def update_task(self, task: ProcessingTask) -> ProcessingTask:
        task.updated_at = self._clock()

        def _update(conn: duckdb.DuckDBPyConnection) -> bool:
            exists = conn.execute(
                "SELECT COUNT(*) FROM processing_tasks WHERE task_id = ?", (task.task_id,)
            ).fetchone()
            if not exists or exists[0] == 0:
                return False
            conn.execute(
                """
                UPDATE processing_tasks SET
                    status = ?, progress = ?, steps = ?, updated_at = ?,
                    start_time = ?, end_time = ?, results = ?, error = ?
                WHERE task_id = ?
                """,
                (
                    task.status.value,
                    task.progress,
                    json.dumps([step.to_dict() for step in task.steps]),
                    _to_db(task.updated_at),
                    _to_db(task.start_time),
                    _to_db(task.end_time),
                    _dumps(task.results),
                    _dumps(task.error.to_dict() if task.error else None),
                    task.task_id,
                ),
            )
            return True

        if not await self.db.run(_update):
            raise NotFound(f"Task {task.task_id} not found")
        logger.debug("Task updated", task_id=task.task_id, status=task.status.value)
        return task

    @staticmethod
    def _where(client_id: str | None, status: TaskStatus | None, task_type: TaskType | None = None):
        clauses = ["1=1"]
        params: list[Any] = []
        if client_id:
            clauses.append("client_id = ?")
            params.append(client_id)
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if task_type:
            clauses.append("task_type = ?")
            params.append(task_type.value)
        return " AND ".join(clauses), params

    async def list_tasks(
        self,
        client_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[ProcessingTask]:
        where, params = self._where(client_id, status, task_type)
        query = f"SELECT {TASK_COLUMNS} FROM processing_tasks WHERE {where} ORDER BY created_at DESC"
        if limit is not None:
            query += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])
        elif offset:
            query += " OFFSET ?"
            params.append(offset)

        rows = await self.db.fetch_all(query, tuple(params))
        return [self._row_to_task(row) for row in rows]

    async def count_tasks(
        self, client_id: str | None = None, status: TaskStatus | None = None
    ) -> int:
        where, params = self._where(client_id, status)
        row = await self.db.fetch_one(
            f"SELECT COUNT(*) FROM processing_tasks WHERE {where}", tuple(params)
        )
        return cast(int, row[0]) if row else 0

    def _row_to_task(self, row: tuple) -> ProcessingTask:
        error = _loads(row[12])
        return ProcessingTask(
            task_id=row[0],
            client_id=row[1],
            task_type=TaskType(row[2]),
            status=TaskStatus(row[3]),
            progress=row[4],
            steps=[TaskStep.from_dict(step) for step in json.loads(row[5])],
            created_at=_from_db(row[6]),
            updated_at=_from_db(row[7]),
            start_time=_from_db(row[8]),
            end_time=_from_db(row[9]),
            estimated_duration=row[10],
            results=_loads(row[11]),
            error=TaskError(**error) if error else None,
            statement_id=row[13],
            connection_id=row[14],
        )


class DuckDBConnectionRepository(DuckDBRepository, ConnectionRepository):
    """DuckDB implementation of ConnectionRepository."""

    async def create_connection(self, connection: BankConnection) -> BankConnection:
        await self.db.execute(
            f"INSERT INTO bank_connections ({CONNECTION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                connection.connection_id,
                connection.client_id,
                connection.account_id,
                connection.bank_name,
                connection.connection_type.value,
                connection.status.value,
                _to_db(connection.created_at),
                _to_db(connection.updated_at),
                _to_db(connection.last_sync),
                connection.active_task_id,
                json.dumps(connection.settings),
            ),
        )
        return connection

    async def get_connection(self, connection_id: str) -> BankConnection | None:
        row = await self.db.fetch_one(
            f"SELECT {CONNECTION_COLUMNS} FROM bank_connections WHERE connection_id = ?",
            (connection_id,),
        )
        return self._row_to_connection(row) if row else None

    async def update_connection(self, connection: BankConnection) -> BankConnection:
        connection.updated_at = self._clock()

        def _update(conn: duckdb.DuckDBPyConnection) -> bool:
            exists = conn.execute(
                "SELECT COUNT(*) FROM bank_connections WHERE connection_id = ?",
                (connection.connection_id,),
            ).fetchone()
            if not exists or exists[0] == 0:
                return False
            conn.execute(
                """
                UPDATE bank_connections SET
                    bank_name = ?, connection_type = ?, status = ?, updated_at = ?,
                    last_sync = ?, active_task_id = ?, settings = ?
                WHERE connection_id = ?
                """,
                (
                    connection.bank_name,
                    connection.connection_type.value,
                    connection.status.value,
                    _to_db(connection.updated_at),
                    _to_db(connection.last_sync),
                    connection.active_task_id,
                    json.dumps(connection.settings),
                    connection.connection_id,
                ),
            )
            return True

        if not await self.db.run(_update):
            raise NotFound(f"Bank connection {connection.connection_id} not found")
        return connection

    async def delete_connection(self, connection_id: str) -> bool:
        def _delete(conn: duckdb.DuckDBPyConnection) -> bool:
            row = conn.execute(
                "SELECT COUNT(*) FROM bank_connections WHERE connection_id = ?",
                (connection_id,),
            ).fetchone()
            if not row or row[0] == 0:
                return False
            conn.execute("DELETE FROM bank_connections WHERE connection_id = ?", (connection_id,))
            return True

        return await self.db.run(_delete)

    async def list_connections(self, client_id: str) -> list[BankConnection]:
        rows = await self.db.fetch_all(
            f"SELECT {CONNECTION_COLUMNS} FROM bank_connections "
            "WHERE client_id = ? ORDER BY created_at DESC",
            (client_id,),
        )
        return [self._row_to_connection(row) for row in rows]

    async def find_connection(
        self, account_id: str, status: ConnectionStatus
    ) -> BankConnection | None:
        row = await self.db.fetch_one(
            f"SELECT {CONNECTION_COLUMNS} FROM bank_connections "
            "WHERE account_id = ? AND status = ? LIMIT 1",
            (account_id, status.value),
        )
        return self._row_to_connection(row) if row else None

    def _row_to_connection(self, row: tuple) -> BankConnection:
        return BankConnection(
            connection_id=row[0],
            client_id=row[1],
            account_id=row[2],
            bank_name=row[3],
            connection_type=ConnectionType(row[4]),
            status=ConnectionStatus(row[5]),
            created_at=_from_db(row[6]),
            updated_at=_from_db(row[7]),
            last_sync=_from_db(row[8]),
            active_task_id=row[9],
            settings=_loads(row[10]) or {},
        )


class DuckDBNotificationRepository(DuckDBRepository, NotificationRepository):
    """DuckDB implementation of NotificationRepository."""

    async def create_notification(self, notification: Notification) -> Notification:
        await self.db.execute(
            f"INSERT INTO notifications ({NOTIFICATION_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                notification.notification_id,
                notification.user_id,
                notification.type.value,
                notification.title,
                notification.message,
                _dumps(notification.data),
                notification.read,
                _to_db(notification.expires_at),
                _to_db(notification.created_at),
            ),
        )
        return notification

    async def get_notification(self, notification_id: str) -> Notification | None:
        row = await self.db.fetch_one(
            f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE notification_id = ?",
            (notification_id,),
        )
        return self._row_to_notification(row) if row else None

    async def update_notification(self, notification: Notification) -> Notification:
        def _update(conn: duckdb.DuckDBPyConnection) -> bool:
            exists = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE notification_id = ?",
                (notification.notification_id,),
            ).fetchone()
            if not exists or exists[0] == 0:
                return False
            conn.execute(
                "UPDATE notifications SET is_read = ? WHERE notification_id = ?",
                (notification.read, notification.notification_id),
            )
            return True

        if not await self.db.run(_update):
            raise NotFound(f"Notification {notification.notification_id} not found")
        return notification

    async def delete_notification(self, notification_id: str) -> bool:
        return await self.delete_notifications([notification_id]) > 0

    @staticmethod
    def _where(
        user_id: str, read: bool | None, notification_type: NotificationType | None
    ):
        clauses = ["user_id = ?"]
        params: list[Any] = [user_id]
        if read is not None:
            clauses.append("is_read = ?")
            params.append(read)
        if notification_type is not None:
            clauses.append("notification_type = ?")
            params.append(notification_type.value)
        return " AND ".join(clauses), params

    async def query_notifications(
        self,
        user_id: str,
        read: bool | None = None,
        notification_type: NotificationType | None = None,
        limit: int = 10,
        offset: int = 0,
        sort_by: str = "created_at",
        descending: bool = True,
    ) -> list[Notification]:
        column = NOTIFICATION_SORT_COLUMNS.get(sort_by)
        if column is None:
            raise ValueError(f"Unsupported sort field: {sort_by}")
        direction = "DESC" if descending else "ASC"
        where, params = self._where(user_id, read, notification_type)
        params.extend([limit, offset])

        rows = await self.db.fetch_all(
            f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE {where} "
            f"ORDER BY {column} {direction} NULLS LAST LIMIT ? OFFSET ?",
            tuple(params),
        )
        return [self._row_to_notification(row) for row in rows]

    async def count_notifications(
        self,
        user_id: str,
        read: bool | None = None,
        notification_type: NotificationType | None = None,
    ) -> int:
        where, params = self._where(user_id, read, notification_type)
        row = await self.db.fetch_one(
            f"SELECT COUNT(*) FROM notifications WHERE {where}", tuple(params)
        )
        return cast(int, row[0]) if row else 0

    async def mark_all_read(self, user_id: str) -> int:
        def _mark(conn: duckdb.DuckDBPyConnection) -> int:
            row = conn.execute(
                "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND NOT is_read",
                (user_id,),
            ).fetchone()
            count = row[0] if row else 0
            if count:
                conn.execute(
                    "UPDATE notifications SET is_read = TRUE WHERE user_id = ? AND NOT is_read",
                    (user_id,),
                )
            return count

        return await self.db.run(_mark)

    async def find_expired_ids(self, now: datetime) -> list[str]:
        rows = await self.db.fetch_all(
            "SELECT notification_id FROM notifications "
            "WHERE expires_at IS NOT NULL AND expires_at <= ?",
            (_to_db(now),),
        )
        return [row[0] for row in rows]

    async def delete_notifications(self, notification_ids: list[str]) -> int:
        if not notification_ids:
            return 0
        placeholders = ", ".join("?" for _ in notification_ids)
        params = tuple(notification_ids)

        def _delete(conn: duckdb.DuckDBPyConnection) -> int:
            row = conn.execute(
                f"SELECT COUNT(*) FROM notifications WHERE notification_id IN ({placeholders})",
                params,
            ).fetchone()
            count = row[0] if row else 0
            if count:
                conn.execute(
                    f"DELETE FROM notifications WHERE notification_id IN ({placeholders})",
                    params,
                )
            return count

        return await self.db.run(_delete)

    def _row_to_notification(self, row: tuple) -> Notification:
        return Notification(
            notification_id=row[0],
            user_id=row[1],
            type=NotificationType(row[2]),
            title=row[3],
            message=row[4],
            data=_loads(row[5]),
            read=bool(row[6]),
            expires_at=_from_db(row[7]),
            created_at=_from_db(row[8]),
        )


def create_duckdb_repositories(db_path: str, clock: Clock = utc_now) -> Repositories:
    """Build all DuckDB repositories over one database file."""
    database = DuckDBDatabase(db_path)
    logger.info("DuckDB repositories initialized", db_path=str(database.db_path))
    return Repositories(
        clients=DuckDBClientRepository(database, clock),
        tasks=DuckDBTaskRepository(database, clock),
        connections=DuckDBConnectionRepository(database, clock),
        notifications=DuckDBNotificationRepository(database, clock),
        backend="duckdb",
    )
