"""
Processing task engine.

Owns the task state machine::

    PENDING -> QUEUED -> IN_PROGRESS -> COMPLETED | FAILED | CANCELLED

Terminal states are final: any transition requested on a terminal task is
rejected with ``InvalidState`` so double completion surfaces as an error
instead of being silently absorbed. Every status change is published to the
registered listeners as a ``TaskTransition``.
"""

from collections.abc import Awaitable, Callable, Sequence
from typing import Any
import uuid

import structlog

from treasury_ops.errors import InvalidRequest, InvalidState, NotFound
from treasury_ops.repositories.base import Repositories
from treasury_ops.tasks.models import (
    ProcessingTask,
    StepDefinition,
    StepStatus,
    TaskError,
    TaskLogEntry,
    TaskLogLevel,
    TaskMetrics,
    TaskStatus,
    TaskStep,
    TaskTransition,
    TaskType,
)
from treasury_ops.tasks.steps import default_steps, estimated_duration
from treasury_ops.utils.clock import Clock, utc_now
from treasury_ops.utils.locks import KeyedLock

logger = structlog.get_logger(__name__)

TaskListener = Callable[[TaskTransition], Awaitable[None]]

CLAIMABLE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED})


def compute_progress(steps: Sequence[TaskStep]) -> int:
    """Simple arithmetic mean of step progress, floored."""
    if not steps:
        return 0
    return sum(step.progress for step in steps) // len(steps)


class TaskEngine:
    """
    Creates and advances processing tasks.

    Example:
        >>> engine = TaskEngine(repositories)
        >>> task = await engine.create("client-1", TaskType.STATEMENT_PARSE, queued=True)
        >>> await engine.advance(task.task_id, 0, 100)
        >>> await engine.complete(task.task_id, {"transactionCount": 120})
    """

    def __init__(
        self,
        repositories: Repositories,
        clock: Clock = utc_now,
        max_concurrent_tasks: int = 10,
    ):
        self._tasks = repositories.tasks
        self._clients = repositories.clients
        self._clock = clock
        self._max_concurrent_tasks = max_concurrent_tasks
        self._listeners: list[TaskListener] = []
        self._locks = KeyedLock()
        # processing logs live with the process, like the task cache did
        self._logs: dict[str, list[TaskLogEntry]] = {}

    def add_listener(self, listener: TaskListener) -> None:
        """Register a coroutine called after every status change."""
        self._listeners.append(listener)

    def _log(self, task_id: str, level: TaskLogLevel, message: str) -> None:
        self._logs.setdefault(task_id, []).append(
            TaskLogEntry(timestamp=self._clock(), level=level, message=message)
        )

    async def _emit(self, task: ProcessingTask, previous: TaskStatus | None) -> None:
        transition = TaskTransition(task=task, previous_status=previous)
        for listener in self._listeners:
            await listener(transition)

    # ------------------------------------------------------------------
    # creation and lookup
    # ------------------------------------------------------------------
    async def create(
        self,
        client_id: str,
        task_type: TaskType,
        step_definitions: Sequence[StepDefinition] | None = None,
        estimated_duration_ms: int | None = None,
        statement_id: str | None = None,
        connection_id: str | None = None,
        queued: bool = False,
    ) -> ProcessingTask:
        """
        Accept a new task for a client.

        Args:
            client_id: Owning client; must exist
            task_type: Kind of work
            step_definitions: Sub-steps, defaulting to the plan for ``task_type``
            estimated_duration_ms: Advisory duration, defaulting per type
            statement_id: Statement the task works on
            connection_id: Bank connection the task syncs
            queued: Admit the task straight into QUEUED

        Raises:
            InvalidRequest: Unknown client or empty step plan
        """
        client = await self._clients.get_client(client_id)
        if client is None:
            raise InvalidRequest(f"Client {client_id} not found", field="client_id")

        definitions = (
            list(step_definitions)
            if step_definitions is not None
            else default_steps(task_type)
        )
        if not definitions:
            raise InvalidRequest("A task needs at least one step", field="steps")

        now = self._clock()
        task = ProcessingTask(
            task_id=str(uuid.uuid4()),
            client_id=client_id,
            task_type=task_type,
            status=TaskStatus.QUEUED if queued else TaskStatus.PENDING,
            created_at=now,
            updated_at=now,
            steps=[
                TaskStep(name=definition.name, description=definition.description)
                for definition in definitions
            ],
            estimated_duration=(
                estimated_duration_ms
                if estimated_duration_ms is not None
                else estimated_duration(task_type)
            ),
            statement_id=statement_id,
            connection_id=connection_id,
        )
        await self._tasks.create_task(task)
        self._log(
            task.task_id,
            TaskLogLevel.INFO,
            f"Task {task.task_id} created at {now.isoformat()}",
        )

        logger.info(
            "Task created",
            task_id=task.task_id,
            client_id=client_id,
            task_type=task_type.value,
            status=task.status.value,
            steps=len(task.steps),
        )
        await self._emit(task, None)
        return task

    async def get(self, task_id: str) -> ProcessingTask:
        task = await self._tasks.get_task(task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found")
        return task

    async def list_for_client(
        self, client_id: str, limit: int = 10, offset: int = 0
    ) -> tuple[list[ProcessingTask], int]:
        """Processing history of a client, newest first, with the total count."""
        if await self._clients.get_client(client_id) is None:
            raise InvalidRequest(f"Client {client_id} not found", field="client_id")
        tasks = await self._tasks.list_tasks(client_id=client_id, limit=limit, offset=offset)
        total = await self._tasks.count_tasks(client_id=client_id)
        return tasks, total

    async def logs(
        self, task_id: str, level: TaskLogLevel | None = None
    ) -> list[TaskLogEntry]:
        """Processing log of a task in write order, optionally one level only."""
        await self.get(task_id)
        entries = self._logs.get(task_id, [])
        if level is not None:
            entries = [entry for entry in entries if entry.level == level]
        return list(entries)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    def _claim(self, task: ProcessingTask) -> None:
        task.status = TaskStatus.IN_PROGRESS
        task.start_time = self._clock()

    @staticmethod
    def _ensure_not_terminal(task: ProcessingTask, action: str) -> None:
        if task.is_terminal:
            raise InvalidState(
                f"Cannot {action} task {task.task_id}: already {task.status.value}",
                task_id=task.task_id,
                status=task.status.value,
            )

    async def enqueue(self, task_id: str) -> ProcessingTask:
        """PENDING -> QUEUED."""
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            if task.status != TaskStatus.PENDING:
                raise InvalidState(
                    f"Cannot queue task {task_id} in status {task.status.value}"
                )
            task.status = TaskStatus.QUEUED
            await self._tasks.update_task(task)
            self._log(task_id, TaskLogLevel.INFO, "Task queued")
            logger.info("Task queued", task_id=task_id)
            await self._emit(task, TaskStatus.PENDING)
            return task

    async def start(self, task_id: str) -> ProcessingTask:
        """A worker claims the task: PENDING/QUEUED -> IN_PROGRESS."""
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            if task.status not in CLAIMABLE_STATUSES:
                raise InvalidState(
                    f"Cannot start task {task_id} in status {task.status.value}"
                )
            previous = task.status
            self._claim(task)
            await self._tasks.update_task(task)
            self._log(task_id, TaskLogLevel.INFO, "Task started")
            logger.info("Task started", task_id=task_id)
            await self._emit(task, previous)
            return task

    async def advance(
        self,
        task_id: str,
        step_index: int,
        progress_delta: int,
        detail: str | None = None,
    ) -> ProcessingTask:
        """
        Record progress on one step and recompute overall progress.

        A task that has not been claimed yet is claimed implicitly. Overall
        progress never decreases while the task is in progress.

        Raises:
            NotFound: Unknown task
            InvalidState: Task already terminal
            InvalidRequest: Step index out of range or negative delta
        """
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            self._ensure_not_terminal(task, "advance")

            if not 0 <= step_index < len(task.steps):
                raise InvalidRequest(
                    f"Step index {step_index} out of range for {len(task.steps)} steps",
                    field="step_index",
                )
            if progress_delta < 0:
                raise InvalidRequest("Progress delta must not be negative", field="progress_delta")

            previous = task.status
            if previous in CLAIMABLE_STATUSES:
                self._claim(task)

            step = task.steps[step_index]
            was_completed = step.status == StepStatus.COMPLETED
            step.progress = min(100, step.progress + progress_delta)
            step.status = StepStatus.COMPLETED if step.progress >= 100 else StepStatus.RUNNING
            if detail is not None:
                step.detail = detail
            task.progress = max(task.progress, compute_progress(task.steps))

            await self._tasks.update_task(task)
            if previous != task.status:
                self._log(task_id, TaskLogLevel.INFO, "Task started")
            if step.status == StepStatus.COMPLETED and not was_completed:
                self._log(task_id, TaskLogLevel.INFO, f"Step {step.name} completed")
            else:
                self._log(
                    task_id,
                    TaskLogLevel.DEBUG,
                    f"Step {step.name} at {step.progress}%"
                    + (f": {detail}" if detail else ""),
                )
            logger.debug(
                "Task advanced",
                task_id=task_id,
                step=step.name,
                step_progress=step.progress,
                progress=task.progress,
            )
            if previous != task.status:
                await self._emit(task, previous)
            return task

    async def complete(
        self, task_id: str, results: dict[str, Any] | None = None
    ) -> ProcessingTask:
        """Terminal transition to COMPLETED with the worker's results."""
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            self._ensure_not_terminal(task, "complete")
            previous = task.status
            task.status = TaskStatus.COMPLETED
            task.progress = 100
            task.end_time = self._clock()
            task.results = results or {}
            task.error = None
            await self._tasks.update_task(task)
            self._log(task_id, TaskLogLevel.INFO, "Task completed successfully")
            logger.info("Task completed", task_id=task_id, duration_ms=task.duration_ms)
            await self._emit(task, previous)
            return task

    async def fail(self, task_id: str, error: TaskError) -> ProcessingTask:
        """Terminal transition to FAILED with the failure reason."""
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            self._ensure_not_terminal(task, "fail")
            previous = task.status
            task.status = TaskStatus.FAILED
            task.end_time = self._clock()
            task.error = error
            task.results = None
            await self._tasks.update_task(task)
            self._log(task_id, TaskLogLevel.ERROR, f"Task failed: {error.message}")
            logger.warning(
                "Task failed", task_id=task_id, error_code=error.code, error=error.message
            )
            await self._emit(task, previous)
            return task

    async def cancel(self, task_id: str) -> ProcessingTask:
        """Terminal transition to CANCELLED."""
        async with self._locks.hold(task_id):
            task = await self.get(task_id)
            self._ensure_not_terminal(task, "cancel")
            previous = task.status
            task.status = TaskStatus.CANCELLED
            task.end_time = self._clock()
            await self._tasks.update_task(task)
            self._log(task_id, TaskLogLevel.WARNING, "Task cancelled")
            logger.info("Task cancelled", task_id=task_id)
            await self._emit(task, previous)
            return task

    async def retry(self, task_id: str) -> ProcessingTask:
        """
        Queue a fresh copy of a FAILED task.

        Sync tasks are not copied: a bank connection only gets a new sync
        through its coordinator, which keeps one in-flight task per connection.
        """
        original = await self.get(task_id)
        if original.status != TaskStatus.FAILED:
            raise InvalidState(
                f"Task {task_id} cannot be retried in status {original.status.value}"
            )
        if original.connection_id:
            raise InvalidState(
                f"Task {task_id} syncs bank connection {original.connection_id}; "
                "start a new sync for the connection instead",
                connection_id=original.connection_id,
            )
        logger.info("Retrying task", task_id=task_id)
        retried = await self.create(
            original.client_id,
            original.task_type,
            step_definitions=[
                StepDefinition(step.name, step.description) for step in original.steps
            ],
            estimated_duration_ms=original.estimated_duration,
            statement_id=original.statement_id,
            queued=True,
        )
        self._log(retried.task_id, TaskLogLevel.INFO, f"Retry of task {task_id}")
        return retried

    # ------------------------------------------------------------------
    # reporting
    # ------------------------------------------------------------------
    async def metrics(self) -> TaskMetrics:
        total = await self._tasks.count_tasks()
        completed = await self._tasks.count_tasks(status=TaskStatus.COMPLETED)
        failed = await self._tasks.count_tasks(status=TaskStatus.FAILED)
        running = await self._tasks.count_tasks(status=TaskStatus.IN_PROGRESS)

        finished = await self._tasks.list_tasks(status=TaskStatus.COMPLETED, limit=None)
        durations = [t.duration_ms for t in finished if t.duration_ms is not None]
        average = sum(durations) // len(durations) if durations else 0

        return TaskMetrics(
            total_tasks=total,
            completed_tasks=completed,
            failed_tasks=failed,
            in_progress_tasks=running,
            average_processing_time=average,
            current_load=min(running / self._max_concurrent_tasks, 1.0),
        )
