"""Processing task state machine."""

from .models import (
    ProcessingTask,
    StepDefinition,
    StepStatus,
    TaskError,
    TaskStatus,
    TaskStep,
    TaskTransition,
    TaskType,
)

__all__ = [
    "ProcessingTask",
    "StepDefinition",
    "StepStatus",
    "TaskError",
    "TaskStatus",
    "TaskStep",
    "TaskTransition",
    "TaskType",
]
