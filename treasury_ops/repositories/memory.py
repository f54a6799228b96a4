"""
In-memory entity store.

A single lock-guarded store implementing every repository contract. Records
are deep-copied on the way in and out so callers can never mutate stored
state without going through an update call, which mirrors the behaviour of a
real database.
"""

import asyncio
from collections.abc import Iterable
import copy
from datetime import datetime

import structlog

from treasury_ops.connections.models import BankConnection, ConnectionStatus
from treasury_ops.errors import NotFound
from treasury_ops.notifications.models import Notification, NotificationType
from treasury_ops.repositories.base import (
    Client,
    ClientRepository,
    ConnectionRepository,
    NotificationRepository,
    Repositories,
    TaskRepository,
)
from treasury_ops.tasks.models import ProcessingTask, TaskStatus, TaskType
from treasury_ops.utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


def _sort_key(notification: Notification, sort_by: str):
    value = getattr(notification, sort_by)
    if isinstance(value, NotificationType):
        return value.value
    return value


class InMemoryStore(
    ClientRepository, TaskRepository, ConnectionRepository, NotificationRepository
):
    """
    Lock-guarded in-memory implementation of all repositories.

    Example:
        >>> store = InMemoryStore()
        >>> await store.create_client(Client(client_id="c-1", name="Acme"))
        >>> repositories = store.as_repositories()
    """

    def __init__(self, clock: Clock = utc_now, clients: Iterable[Client] = ()):
        self._clients: dict[str, Client] = {c.client_id: copy.deepcopy(c) for c in clients}
        self._tasks: dict[str, ProcessingTask] = {}
        self._connections: dict[str, BankConnection] = {}
        self._notifications: dict[str, Notification] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

        logger.info("In-memory entity store initialized")

    def as_repositories(self) -> Repositories:
        return Repositories(
            clients=self,
            tasks=self,
            connections=self,
            notifications=self,
            backend="memory",
        )

    # ------------------------------------------------------------------
    # clients
    # ------------------------------------------------------------------
    async def create_client(self, client: Client) -> Client:
        async with self._lock:
            if client.client_id in self._clients:
                raise ValueError(f"Client {client.client_id} already exists")
            self._clients[client.client_id] = copy.deepcopy(client)
            return client

    async def get_client(self, client_id: str) -> Client | None:
        async with self._lock:
            return copy.deepcopy(self._clients.get(client_id))

    # ------------------------------------------------------------------
    # tasks
    # ------------------------------------------------------------------
    async def create_task(self, task: ProcessingTask) -> ProcessingTask:
        async with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already exists")
            self._tasks[task.task_id] = copy.deepcopy(task)
            logger.debug("Task stored", task_id=task.task_id, task_type=task.task_type.value)
            return task

    async def get_task(self, task_id: str) -> ProcessingTask | None:
        async with self._lock:
            return copy.deepcopy(self._tasks.get(task_id))

    async def update_task(self, task: ProcessingTask) -> ProcessingTask:
        async with self._lock:
            if task.task_id not in self._tasks:
                raise NotFound(f"Task {task.task_id} not found")
            task.updated_at = self._clock()
            self._tasks[task.task_id] = copy.deepcopy(task)
            logger.debug(
                "Task updated",
                task_id=task.task_id,
                status=task.status.value,
                progress=task.progress,
            )
            return task

    def _filter_tasks(
        self,
        client_id: str | None,
        status: TaskStatus | None,
        task_type: TaskType | None = None,
    ) -> list[ProcessingTask]:
        tasks = list(self._tasks.values())
        if client_id:
            tasks = [t for t in tasks if t.client_id == client_id]
        if status:
            tasks = [t for t in tasks if t.status == status]
        if task_type:
            tasks = [t for t in tasks if t.task_type == task_type]
        return tasks

    async def list_tasks(
        self,
        client_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[ProcessingTask]:
        async with self._lock:
            tasks = self._filter_tasks(client_id, status, task_type)
            tasks.sort(key=lambda t: t.created_at, reverse=True)
            end = None if limit is None else offset + limit
            return copy.deepcopy(tasks[offset:end])

    async def count_tasks(
        self, client_id: str | None = None, status: TaskStatus | None = None
    ) -> int:
        async with self._lock:
            return len(self._filter_tasks(client_id, status))

    # ------------------------------------------------------------------
    # bank connections
    # ------------------------------------------------------------------
    async def create_connection(self, connection: BankConnection) -> BankConnection:
        async with self._lock:
            if connection.connection_id in self._connections:
                raise ValueError(f"Connection {connection.connection_id} already exists")
            self._connections[connection.connection_id] = copy.deepcopy(connection)
            return connection

    async def get_connection(self, connection_id: str) -> BankConnection | None:
        async with self._lock:
            return copy.deepcopy(self._connections.get(connection_id))

    async def update_connection(self, connection: BankConnection) -> BankConnection:
        async with self._lock:
            if connection.connection_id not in self._connections:
                raise NotFound(f"Bank connection {connection.connection_id} not found")
            connection.updated_at = self._clock()
            self._connections[connection.connection_id] = copy.deepcopy(connection)
            return connection

    async def delete_connection(self, connection_id: str) -> bool:
        async with self._lock:
            return self._connections.pop(connection_id, None) is not None

    async def list_connections(self, client_id: str) -> list[BankConnection]:
        async with self._lock:
            connections = [
                c for c in self._connections.values() if c.client_id == client_id
            ]
            connections.sort(key=lambda c: c.created_at, reverse=True)
            return copy.deepcopy(connections)

    async def find_connection(
        self, account_id: str, status: ConnectionStatus
    ) -> BankConnection | None:
        async with self._lock:
            for connection in self._connections.values():
                if connection.account_id == account_id and connection.status == status:
                    return copy.deepcopy(connection)
            return None

    # ------------------------------------------------------------------
    # notifications
    # ------------------------------------------------------------------
    async def create_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            if notification.notification_id in self._notifications:
                raise ValueError(
                    f"Notification {notification.notification_id} already exists"
                )
            self._notifications[notification.notification_id] = copy.deepcopy(notification)
            return notification

    async def get_notification(self, notification_id: str) -> Notification | None:
        async with self._lock:
            return copy.deepcopy(self._notifications.get(notification_id))

    async def update_notification(self, notification: Notification) -> Notification:
        async with self._lock:
            if notification.notification_id not in self._notifications:
                raise NotFound(f"Notification {notification.notification_id} not found")
            self._notifications[notification.notification_id] = copy.deepcopy(notification)
            return notification

    async def delete_notification(self, notification_id: str) -> bool:
        async with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    def _filter_notifications(
        self,
        user_id: str,
        read: bool | None,
        notification_type: NotificationType | None,
    ) -> list[Notification]:
        notifications = [
            n for n in self._notifications.values() if n.user_id == user_id
        ]
        if read is not None:
            notifications = [n for n in notifications if n.read == read]
        if notification_type is not None:
            notifications = [n for n in notifications if n.type == notification_type]
        return notifications

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
        async with self._lock:
            notifications = self._filter_notifications(user_id, read, notification_type)
            present = [n for n in notifications if getattr(n, sort_by) is not None]
            missing = [n for n in notifications if getattr(n, sort_by) is None]
            present.sort(key=lambda n: _sort_key(n, sort_by), reverse=descending)
            # nulls sort last in either direction
            ordered = present + missing
            return copy.deepcopy(ordered[offset:offset + limit])

    async def count_notifications(
        self,
        user_id: str,
        read: bool | None = None,
        notification_type: NotificationType | None = None,
    ) -> int:
        async with self._lock:
            return len(self._filter_notifications(user_id, read, notification_type))

    async def mark_all_read(self, user_id: str) -> int:
        async with self._lock:
            count = 0
            for notification in self._notifications.values():
                if notification.user_id == user_id and not notification.read:
                    notification.read = True
                    count += 1
            return count

    async def find_expired_ids(self, now: datetime) -> list[str]:
        async with self._lock:
            return [
                n.notification_id
                for n in self._notifications.values()
                if n.expires_at is not None and n.expires_at <= now
            ]

    async def delete_notifications(self, notification_ids: list[str]) -> int:
        async with self._lock:
            deleted = 0
            for notification_id in notification_ids:
                if self._notifications.pop(notification_id, None) is not None:
                    deleted += 1
            return deleted
