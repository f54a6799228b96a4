"""
Abstract repository interfaces for the entity store.

The task engine, connection coordinator and notification service only ever
talk to these contracts. Adapters (in-memory, DuckDB) implement them and are
chosen at startup by the repository factory.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from treasury_ops.connections.models import BankConnection, ConnectionStatus
from treasury_ops.notifications.models import Notification, NotificationType
from treasury_ops.tasks.models import ProcessingTask, TaskStatus, TaskType


@dataclass
class Client:
    """Client record as far as this backend needs it."""

    client_id: str
    name: str
    relationship_manager_id: str | None = None


class ClientRepository(ABC):
    """Read access to clients (client CRUD lives elsewhere)."""

    @abstractmethod
    async def create_client(self, client: Client) -> Client:
        """Register a client."""

    @abstractmethod
    async def get_client(self, client_id: str) -> Client | None:
        """Get a client by ID."""


class TaskRepository(ABC):
    """Persistence for processing tasks."""

    @abstractmethod
    async def create_task(self, task: ProcessingTask) -> ProcessingTask:
        """Create a new task."""

    @abstractmethod
    async def get_task(self, task_id: str) -> ProcessingTask | None:
        """Get a task by ID."""

    @abstractmethod
    async def update_task(self, task: ProcessingTask) -> ProcessingTask:
        """Update an existing task."""

    @abstractmethod
    async def list_tasks(
        self,
        client_id: str | None = None,
        status: TaskStatus | None = None,
        task_type: TaskType | None = None,
        limit: int | None = 100,
        offset: int = 0,
    ) -> list[ProcessingTask]:
        """List tasks newest first with optional filtering."""

    @abstractmethod
    async def count_tasks(
        self, client_id: str | None = None, status: TaskStatus | None = None
    ) -> int:
        """Count tasks with optional filtering."""


class ConnectionRepository(ABC):
    """Persistence for bank connections."""

    @abstractmethod
    async def create_connection(self, connection: BankConnection) -> BankConnection:
        """Create a new connection."""

    @abstractmethod
    async def get_connection(self, connection_id: str) -> BankConnection | None:
        """Get a connection by ID."""

    @abstractmethod
    async def update_connection(self, connection: BankConnection) -> BankConnection:
        """Update an existing connection."""

    @abstractmethod
    async def delete_connection(self, connection_id: str) -> bool:
        """Delete a connection, returning whether it existed."""

    @abstractmethod
    async def list_connections(self, client_id: str) -> list[BankConnection]:
        """List a client's connections newest first."""

    @abstractmethod
    async def find_connection(
        self, account_id: str, status: ConnectionStatus
    ) -> BankConnection | None:
        """Find a connection for an account in the given status."""


class NotificationRepository(ABC):
    """Persistence for notifications."""

    @abstractmethod
    async def create_notification(self, notification: Notification) -> Notification:
        """Create a new notification."""

    @abstractmethod
    async def get_notification(self, notification_id: str) -> Notification | None:
        """Get a notification by ID."""

    @abstractmethod
    async def update_notification(self, notification: Notification) -> Notification:
        """Update an existing notification."""

    @abstractmethod
    async def delete_notification(self, notification_id: str) -> bool:
        """Delete a notification, returning whether it existed."""

    @abstractmethod
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
        """Page through a user's notifications."""

    @abstractmethod
    async def count_notifications(
        self,
        user_id: str,
        read: bool | None = None,
        notification_type: NotificationType | None = None,
    ) -> int:
        """Count a user's notifications matching the filter."""

    @abstractmethod
    async def mark_all_read(self, user_id: str) -> int:
        """Flip every unread notification of a user, returning the count."""

    @abstractmethod
    async def find_expired_ids(self, now: datetime) -> list[str]:
        """IDs of notifications whose ``expires_at`` is at or before ``now``."""

    @abstractmethod
    async def delete_notifications(self, notification_ids: list[str]) -> int:
        """Delete a batch of notifications, returning the count removed."""


@dataclass
class Repositories:
    """The entity store as seen by the services."""

    clients: ClientRepository
    tasks: TaskRepository
    connections: ConnectionRepository
    notifications: NotificationRepository
    backend: str = "memory"

    async def health_check(self) -> dict[str, Any]:
        """Cheap round trip through the task store."""
        task_count = await self.tasks.count_tasks()
        return {"database": "healthy", "type": self.backend, "task_count": task_count}
