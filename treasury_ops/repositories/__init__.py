"""Entity store: repository contracts and adapters."""

from .base import (
    Client,
    ClientRepository,
    ConnectionRepository,
    NotificationRepository,
    Repositories,
    TaskRepository,
)
from .factory import RepositoryFactory
from .memory import InMemoryStore

__all__ = [
    "Client",
    "ClientRepository",
    "ConnectionRepository",
    "InMemoryStore",
    "NotificationRepository",
    "Repositories",
    "RepositoryFactory",
    "TaskRepository",
]
