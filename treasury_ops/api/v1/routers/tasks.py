"""Processing task endpoints."""

from fastapi import APIRouter, Depends, Query, status
import structlog

from treasury_ops.api.v1.dependencies import get_container
from treasury_ops.api.v1.schemas import (
    AdvanceTaskRequest,
    CompleteTaskRequest,
    CreateTaskRequest,
    FailTaskRequest,
    MetricsResponse,
    TaskListResponse,
    TaskLogEntryResponse,
    TaskResponse,
    TaskStatusResponse,
)
from treasury_ops.container import ServiceContainer
from treasury_ops.errors import InvalidRequest
from treasury_ops.tasks.models import StepDefinition, TaskError, TaskLogLevel, TaskStatus

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/processing", tags=["processing"])


@router.post("/tasks", response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_task(
    request: CreateTaskRequest, container: ServiceContainer = Depends(get_container)
) -> TaskResponse:
    """Create a processing task.

    With ``run`` set the task is admitted as QUEUED and handed to the
    in-process worker; otherwise it stays PENDING for an external worker.
    """
    if request.run and not container.worker.has_handler(request.task_type):
        raise InvalidRequest(
            f"No handler registered for {request.task_type.value}", field="run"
        )

    task = await container.engine.create(
        request.client_id,
        request.task_type,
        step_definitions=(
            [StepDefinition(s.name, s.description) for s in request.steps]
            if request.steps is not None
            else None
        ),
        estimated_duration_ms=request.estimated_duration,
        statement_id=request.statement_id,
        queued=request.run,
    )
    if request.run:
        container.worker.submit(task.task_id)

    return TaskResponse(
        task_id=task.task_id,
        status=task.status,
        message="Task queued for processing" if request.run else "Task created",
    )


@router.get("/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task_status(
    task_id: str, container: ServiceContainer = Depends(get_container)
) -> TaskStatusResponse:
    task = await container.engine.get(task_id)
    return TaskStatusResponse.from_task(task)


@router.get("/clients/{client_id}/tasks", response_model=TaskListResponse)
async def list_client_tasks(
    client_id: str,
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    container: ServiceContainer = Depends(get_container),
) -> TaskListResponse:
    """Processing history for a client, newest first."""
    tasks, total = await container.engine.list_for_client(client_id, limit=limit, offset=offset)
    return TaskListResponse(
        tasks=[TaskStatusResponse.from_task(t) for t in tasks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/tasks/{task_id}/start", response_model=TaskStatusResponse)
async def start_task(
    task_id: str, container: ServiceContainer = Depends(get_container)
) -> TaskStatusResponse:
    return TaskStatusResponse.from_task(await container.engine.start(task_id))


@router.post("/tasks/{task_id}/advance", response_model=TaskStatusResponse)
async def advance_task(
    task_id: str,
    request: AdvanceTaskRequest,
    container: ServiceContainer = Depends(get_container),
) -> TaskStatusResponse:
    task = await container.engine.advance(
        task_id, request.step_index, request.progress_delta, request.detail
    )
    return TaskStatusResponse.from_task(task)


@router.post("/tasks/{task_id}/complete", response_model=TaskStatusResponse)
async def complete_task(
    task_id: str,
    request: CompleteTaskRequest,
    container: ServiceContainer = Depends(get_container),
) -> TaskStatusResponse:
    return TaskStatusResponse.from_task(await container.engine.complete(task_id, request.results))


@router.post("/tasks/{task_id}/fail", response_model=TaskStatusResponse)
async def fail_task(
    task_id: str,
    request: FailTaskRequest,
    container: ServiceContainer = Depends(get_container),
) -> TaskStatusResponse:
    task = await container.engine.fail(task_id, TaskError(request.code, request.message))
    return TaskStatusResponse.from_task(task)


@router.post("/tasks/{task_id}/cancel", response_model=TaskStatusResponse)
async def cancel_task(
    task_id: str, container: ServiceContainer = Depends(get_container)
) -> TaskStatusResponse:
    return TaskStatusResponse.from_task(await container.engine.cancel(task_id))


@router.post(
    "/tasks/{task_id}/retry", response_model=TaskResponse, status_code=status.HTTP_202_ACCEPTED
)
async def retry_task(
    task_id: str, container: ServiceContainer = Depends(get_container)
) -> TaskResponse:
    """Queue a fresh copy of a failed task.

    A failed bank sync is retried as a new sync of its connection, so the
    connection's single-sync rule still applies (409 while one is running).
    """
    original = await container.engine.get(task_id)
    if original.connection_id and original.status == TaskStatus.FAILED:
        new_task_id = await container.coordinator.sync(original.connection_id)
        task = await container.engine.get(new_task_id)
    else:
        task = await container.engine.retry(task_id)
    if container.worker.has_handler(task.task_type):
        container.worker.submit(task.task_id)
    return TaskResponse(task_id=task.task_id, status=task.status, message="Task queued for retry")


@router.get("/tasks/{task_id}/logs", response_model=list[TaskLogEntryResponse])
async def get_task_logs(
    task_id: str,
    level: str | None = Query(default=None, description="DEBUG, INFO, WARNING or ERROR"),
    container: ServiceContainer = Depends(get_container),
) -> list[TaskLogEntryResponse]:
    """Processing log of a task, optionally filtered to one level."""
    log_level = None
    if level:
        try:
            log_level = TaskLogLevel(level.upper())
        except ValueError:
            raise InvalidRequest(f"Unknown log level {level}", field="level") from None
    entries = await container.engine.logs(task_id, log_level)
    return [TaskLogEntryResponse.from_entry(entry) for entry in entries]


@router.get("/metrics", response_model=MetricsResponse)
async def get_metrics(container: ServiceContainer = Depends(get_container)) -> MetricsResponse:
    return MetricsResponse.from_metrics(await container.engine.metrics())
