"""Bank connection domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    SYNCING = "SYNCING"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"


class ConnectionType(str, Enum):
    API = "API"
    OPEN_BANKING = "OPEN_BANKING"
    FILE_IMPORT = "FILE_IMPORT"
    SCREEN_SCRAPING = "SCREEN_SCRAPING"


@dataclass
class BankConnection:
    """
    A client's live link to one bank account.

    ``active_task_id`` names the in-flight DATA_SYNC task while the
    connection is syncing; a connection never holds more than one.
    """

    connection_id: str
    client_id: str
    account_id: str
    bank_name: str
    connection_type: ConnectionType
    status: ConnectionStatus
    created_at: datetime
    updated_at: datetime
    last_sync: datetime | None = None
    active_task_id: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "client_id": self.client_id,
            "account_id": self.account_id,
            "bank_name": self.bank_name,
            "connection_type": self.connection_type.value,
            "status": self.status.value,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "active_task_id": self.active_task_id,
            "settings": self.settings,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class HealthCheckResult:
    connection_id: str
    healthy: bool
    status: ConnectionStatus
    reason: str | None = None
