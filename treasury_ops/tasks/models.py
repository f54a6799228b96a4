"""Processing task domain models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)


class TaskType(str, Enum):
    DATA_SYNC = "DATA_SYNC"
    STATEMENT_PARSE = "STATEMENT_PARSE"
    ANALYSIS = "ANALYSIS"
    RECOMMENDATION_GENERATION = "RECOMMENDATION_GENERATION"


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass
class StepDefinition:
    """Name and description of a sub-step, fixed when a task is created."""

    name: str
    description: str = ""


@dataclass
class TaskStep:
    """A named sub-step with its own status and progress."""

    name: str
    description: str = ""
    status: StepStatus = StepStatus.PENDING
    progress: int = 0
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "progress": self.progress,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskStep":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            progress=int(data.get("progress", 0)),
            detail=data.get("detail"),
        )


@dataclass
class TaskError:
    """Failure reason recorded on a FAILED task."""

    code: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


@dataclass
class ProcessingTask:
    """
    A unit of asynchronous, multi-step work tied to a client.

    Attributes:
        task_id: Unique identifier
        client_id: Owning client
        task_type: Kind of work
        status: Position in the task state machine
        steps: Ordered sub-steps; the count never changes after creation
        progress: Overall completion percentage (0-100)
        created_at: When the task was accepted
        updated_at: When the task was last written
        start_time: When a worker claimed the task
        end_time: When the task reached a terminal state
        estimated_duration: Advisory duration in milliseconds
        results: Payload of a COMPLETED task
        error: Failure of a FAILED task
        statement_id: Statement being parsed, if any
        connection_id: Bank connection being synced, if any
    """

    task_id: str
    client_id: str
    task_type: TaskType
    status: TaskStatus
    created_at: datetime
    updated_at: datetime
    steps: list[TaskStep] = field(default_factory=list)
    progress: int = 0
    start_time: datetime | None = None
    end_time: datetime | None = None
    estimated_duration: int | None = None
    results: dict[str, Any] | None = None
    error: TaskError | None = None
    statement_id: str | None = None
    connection_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def duration_ms(self) -> int | None:
        """Elapsed processing time, once the task has both started and ended."""
        if self.start_time is None or self.end_time is None:
            return None
        return int((self.end_time - self.start_time).total_seconds() * 1000)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "task_id": self.task_id,
            "client_id": self.client_id,
            "type": self.task_type.value,
            "status": self.status.value,
            "progress": self.progress,
            "steps": [step.to_dict() for step in self.steps],
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "estimated_duration": self.estimated_duration,
            "duration": self.duration_ms,
            "results": self.results,
            "error": self.error.to_dict() if self.error else None,
            "statement_id": self.statement_id,
            "connection_id": self.connection_id,
        }


@dataclass
class TaskTransition:
    """Emitted by the task engine after every status change."""

    task: ProcessingTask
    previous_status: TaskStatus | None

    @property
    def status(self) -> TaskStatus:
        return self.task.status


@dataclass
class TaskMetrics:
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    in_progress_tasks: int
    average_processing_time: int
    current_load: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class TaskLogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class TaskLogEntry:
    """One line of a task's processing log."""

    timestamp: datetime
    level: TaskLogLevel
    message: str

    @property
    def line(self) -> str:
        return f"[{self.level.value}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level.value,
            "message": self.message,
        }
