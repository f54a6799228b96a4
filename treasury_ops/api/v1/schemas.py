"""Pydantic schemas for API v1 - Simple DTOs only."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from treasury_ops.connections.models import (
    BankConnection,
    ConnectionStatus,
    ConnectionType,
    HealthCheckResult,
)
from treasury_ops.notifications.models import Notification, NotificationPage, NotificationType
from treasury_ops.tasks.models import (
    ProcessingTask,
    StepStatus,
    TaskLogEntry,
    TaskLogLevel,
    TaskMetrics,
    TaskStatus,
    TaskType,
)


class ErrorDetail(BaseModel):
    """Error information."""

    code: str
    message: str
    field: str | None = None


class ErrorResponse(BaseModel):
    """Error envelope returned for every failed request."""

    error: ErrorDetail
    request_id: str | None = None


class HealthStatus(BaseModel):
    """Health check response."""

    status: str
    service: str
    version: str
    timestamp: datetime = Field(default_factory=datetime.now)
    uptime_seconds: float
    dependencies: dict[str, str] = {}
    tasks_total: int = 0
    running_tasks: int = 0
    open_streams: int = 0


# ---------------------------------------------------------------------------
# processing tasks
# ---------------------------------------------------------------------------


class StepDefinitionRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""


class CreateTaskRequest(BaseModel):
    """Create a processing task."""

    client_id: str
    task_type: TaskType
    steps: list[StepDefinitionRequest] | None = None
    estimated_duration: int | None = Field(default=None, ge=0, description="Milliseconds")
    statement_id: str | None = None
    run: bool = Field(
        default=False, description="Hand the task to the in-process worker right away"
    )


class AdvanceTaskRequest(BaseModel):
    step_index: int = Field(ge=0)
    progress_delta: int = Field(ge=0, le=100)
    detail: str | None = None


class CompleteTaskRequest(BaseModel):
    results: dict[str, Any] = {}


class FailTaskRequest(BaseModel):
    code: str = "processing_error"
    message: str = Field(min_length=1)


class TaskStepResponse(BaseModel):
    name: str
    description: str
    status: StepStatus
    progress: int
    detail: str | None = None


class TaskStatusResponse(BaseModel):
    """Task status response."""

    task_id: str
    client_id: str
    type: TaskType
    status: TaskStatus
    progress: int = Field(ge=0, le=100)
    steps: list[TaskStepResponse]
    created_at: datetime
    updated_at: datetime
    start_time: datetime | None = None
    end_time: datetime | None = None
    estimated_duration: int | None = None
    duration: int | None = None
    statement_id: str | None = None
    connection_id: str | None = None
    results: dict[str, Any] | None = None
    error: ErrorDetail | None = None

    @classmethod
    def from_task(cls, task: ProcessingTask) -> "TaskStatusResponse":
        return cls(
            task_id=task.task_id,
            client_id=task.client_id,
            type=task.task_type,
            status=task.status,
            progress=task.progress,
            steps=[
                TaskStepResponse(
                    name=step.name,
                    description=step.description,
                    status=step.status,
                    progress=step.progress,
                    detail=step.detail,
                )
                for step in task.steps
            ],
            created_at=task.created_at,
            updated_at=task.updated_at,
            start_time=task.start_time,
            end_time=task.end_time,
            estimated_duration=task.estimated_duration,
            duration=task.duration_ms,
            statement_id=task.statement_id,
            connection_id=task.connection_id,
            results=task.results,
            error=(
                ErrorDetail(code=task.error.code, message=task.error.message)
                if task.error
                else None
            ),
        )


class TaskResponse(BaseModel):
    """Task creation response."""

    task_id: str
    status: TaskStatus
    message: str


class TaskListResponse(BaseModel):
    tasks: list[TaskStatusResponse]
    total: int
    limit: int
    offset: int


class MetricsResponse(BaseModel):
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    in_progress_tasks: int
    average_processing_time: int
    current_load: float

    @classmethod
    def from_metrics(cls, metrics: TaskMetrics) -> "MetricsResponse":
        return cls(**metrics.to_dict())


class TaskLogEntryResponse(BaseModel):
    timestamp: datetime
    level: TaskLogLevel
    message: str

    @classmethod
    def from_entry(cls, entry: TaskLogEntry) -> "TaskLogEntryResponse":
        return cls(timestamp=entry.timestamp, level=entry.level, message=entry.message)


# ---------------------------------------------------------------------------
# bank connections
# ---------------------------------------------------------------------------


class CreateConnectionRequest(BaseModel):
    client_id: str
    account_id: str
    bank_name: str = Field(min_length=1)
    connection_type: ConnectionType
    settings: dict[str, Any] = {}


class UpdateConnectionRequest(BaseModel):
    """Descriptive fields only; omitted fields stay unchanged."""

    bank_name: str | None = Field(default=None, min_length=1)
    connection_type: ConnectionType | None = None
    settings: dict[str, Any] | None = None


class ConnectionResponse(BaseModel):
    connection_id: str
    client_id: str
    account_id: str
    bank_name: str
    connection_type: ConnectionType
    status: ConnectionStatus
    last_sync: datetime | None = None
    active_task_id: str | None = None
    settings: dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_connection(cls, connection: BankConnection) -> "ConnectionResponse":
        return cls(
            connection_id=connection.connection_id,
            client_id=connection.client_id,
            account_id=connection.account_id,
            bank_name=connection.bank_name,
            connection_type=connection.connection_type,
            status=connection.status,
            last_sync=connection.last_sync,
            active_task_id=connection.active_task_id,
            settings=connection.settings,
            created_at=connection.created_at,
            updated_at=connection.updated_at,
        )


class SyncResponse(BaseModel):
    task_id: str
    message: str


class HealthCheckResponse(BaseModel):
    connection_id: str
    healthy: bool
    status: ConnectionStatus
    reason: str | None = None

    @classmethod
    def from_result(cls, result: HealthCheckResult) -> "HealthCheckResponse":
        return cls(
            connection_id=result.connection_id,
            healthy=result.healthy,
            status=result.status,
            reason=result.reason,
        )


# ---------------------------------------------------------------------------
# notifications
# ---------------------------------------------------------------------------


class CreateNotificationRequest(BaseModel):
    user_id: str
    type: NotificationType
    title: str = Field(min_length=1)
    message: str = Field(min_length=1)
    data: dict[str, Any] | None = None
    expires_at: datetime | None = None


class NotificationResponse(BaseModel):
    id: str
    user_id: str
    type: NotificationType
    title: str
    message: str
    data: dict[str, Any] | None = None
    read: bool
    expires_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationResponse":
        return cls(
            id=notification.notification_id,
            user_id=notification.user_id,
            type=notification.type,
            title=notification.title,
            message=notification.message,
            data=notification.data,
            read=notification.read,
            expires_at=notification.expires_at,
            created_at=notification.created_at,
        )


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    total: int
    unread_count: int
    page: int
    limit: int
    total_pages: int

    @classmethod
    def from_page(cls, page: NotificationPage) -> "NotificationListResponse":
        return cls(
            notifications=[
                NotificationResponse.from_notification(n) for n in page.notifications
            ],
            total=page.total,
            unread_count=page.unread_count,
            page=page.page,
            limit=page.limit,
            total_pages=page.total_pages,
        )


class MarkAllReadResponse(BaseModel):
    updated: int


class CleanupResponse(BaseModel):
    deleted: int
