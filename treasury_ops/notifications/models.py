"""Notification domain models."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NotificationType(str, Enum):
    PROCESSING_COMPLETE = "PROCESSING_COMPLETE"
    PROCESSING_FAILED = "PROCESSING_FAILED"
    RECOMMENDATION_READY = "RECOMMENDATION_READY"
    STATEMENT_UPLOADED = "STATEMENT_UPLOADED"
    WORKFLOW_TASK_ASSIGNED = "WORKFLOW_TASK_ASSIGNED"
    WORKFLOW_TASK_COMPLETED = "WORKFLOW_TASK_COMPLETED"
    SYSTEM_ALERT = "SYSTEM_ALERT"
    CLIENT_UPDATED = "CLIENT_UPDATED"


class SortDirection(str, Enum):
    ASC = "asc"
    DESC = "desc"


SORTABLE_FIELDS = frozenset({"created_at", "expires_at", "type", "title"})


@dataclass
class Notification:
    """A durable event addressed to one user."""

    notification_id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    created_at: datetime
    data: dict[str, Any] | None = None
    read: bool = False
    expires_at: datetime | None = None

    def to_frame(self) -> dict[str, Any]:
        """Wire shape pushed to live streams."""
        return {
            "id": self.notification_id,
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "data": self.data,
            "read": self.read,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class NotificationFilter:
    read: bool | None = None
    type: NotificationType | None = None


@dataclass
class NotificationPage:
    notifications: list[Notification] = field(default_factory=list)
    total: int = 0
    unread_count: int = 0
    page: int = 1
    limit: int = 10

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return (self.total + self.limit - 1) // self.limit
