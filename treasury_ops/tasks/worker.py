"""
In-process task worker.

Runs registered handlers for task types as background asyncio tasks. The
handler is opaque to the engine: it receives the claimed task and a reporter
for step progress, and returns the results payload.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from treasury_ops.errors import InvalidState
from treasury_ops.tasks.engine import TaskEngine
from treasury_ops.tasks.models import ProcessingTask, TaskError, TaskType

logger = structlog.get_logger(__name__)


class StepReporter:
    """Progress callback handed to task handlers."""

    def __init__(self, engine: TaskEngine, task_id: str):
        self._engine = engine
        self.task_id = task_id

    async def advance(self, step_index: int, progress_delta: int, detail: str | None = None) -> None:
        await self._engine.advance(self.task_id, step_index, progress_delta, detail)

    async def finish_step(self, step_index: int, detail: str | None = None) -> None:
        await self._engine.advance(self.task_id, step_index, 100, detail)


TaskHandler = Callable[[ProcessingTask, StepReporter], Awaitable[dict[str, Any]]]


class TaskWorker:
    """
    Drives tasks through registered handlers.

    Example:
        >>> worker = TaskWorker(engine, max_concurrent=4)
        >>> worker.register(TaskType.ANALYSIS, run_analysis)
        >>> worker.submit(task.task_id)
    """

    def __init__(self, engine: TaskEngine, max_concurrent: int = 10):
        self._engine = engine
        self._handlers: dict[TaskType, TaskHandler] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._running: set[asyncio.Task] = set()

    def register(self, task_type: TaskType, handler: TaskHandler) -> None:
        self._handlers[task_type] = handler

    def has_handler(self, task_type: TaskType) -> bool:
        return task_type in self._handlers

    @property
    def running(self) -> int:
        return len(self._running)

    def submit(self, task_id: str) -> asyncio.Task:
        """Schedule ``run`` in the background and keep a reference to it."""
        background = asyncio.create_task(self.run(task_id), name=f"task-{task_id}")
        self._running.add(background)
        background.add_done_callback(self._running.discard)
        return background

    async def run(self, task_id: str) -> ProcessingTask:
        """Claim the task, execute its handler and record the outcome."""
        async with self._semaphore:
            try:
                task = await self._engine.start(task_id)
            except InvalidState as e:
                # claimed or ended elsewhere before this run got a slot
                logger.info("Task not claimable, skipping run", task_id=task_id, reason=e.message)
                return await self._engine.get(task_id)
            handler = self._handlers.get(task.task_type)
            if handler is None:
                return await self._engine.fail(
                    task_id,
                    TaskError("no_handler", f"No handler registered for {task.task_type.value}"),
                )

            try:
                results = await handler(task, StepReporter(self._engine, task_id))
            except asyncio.CancelledError:
                logger.info("Task run cancelled", task_id=task_id)
                await self._engine.cancel(task_id)
                raise
            except Exception as e:
                current = await self._engine.get(task_id)
                if current.is_terminal:
                    # cancelled from outside while the handler was running
                    logger.info("Task ended during run", task_id=task_id, status=current.status.value)
                    return current
                logger.error("Task handler raised", task_id=task_id, error=str(e), exc_info=True)
                return await self._engine.fail(task_id, TaskError("processing_error", str(e)))

            current = await self._engine.get(task_id)
            if current.is_terminal:
                logger.info("Task ended during run", task_id=task_id, status=current.status.value)
                return current
            return await self._engine.complete(task_id, results)

    async def shutdown(self) -> None:
        """Cancel outstanding runs and wait for them to settle."""
        pending = list(self._running)
        for background in pending:
            background.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info("Task worker stopped", cancelled=len(pending))
