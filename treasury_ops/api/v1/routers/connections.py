"""Bank connection endpoints."""

from fastapi import APIRouter, Depends, status

from treasury_ops.api.v1.dependencies import get_container
from treasury_ops.api.v1.schemas import (
    ConnectionResponse,
    CreateConnectionRequest,
    HealthCheckResponse,
    SyncResponse,
    UpdateConnectionRequest,
)
from treasury_ops.container import ServiceContainer
from treasury_ops.tasks.models import TaskType

router = APIRouter(prefix="/api/v1/bank-connections", tags=["bank-connections"])


@router.post("", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
async def create_connection(
    request: CreateConnectionRequest, container: ServiceContainer = Depends(get_container)
) -> ConnectionResponse:
    connection = await container.coordinator.create(
        request.client_id,
        request.account_id,
        request.bank_name,
        request.connection_type,
        request.settings,
    )
    return ConnectionResponse.from_connection(connection)


@router.get("/client/{client_id}", response_model=list[ConnectionResponse])
async def list_client_connections(
    client_id: str, container: ServiceContainer = Depends(get_container)
) -> list[ConnectionResponse]:
    connections = await container.coordinator.list_for_client(client_id)
    return [ConnectionResponse.from_connection(c) for c in connections]


@router.get("/{connection_id}", response_model=ConnectionResponse)
async def get_connection(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> ConnectionResponse:
    return ConnectionResponse.from_connection(await container.coordinator.get(connection_id))


@router.patch("/{connection_id}", response_model=ConnectionResponse)
async def update_connection(
    connection_id: str,
    request: UpdateConnectionRequest,
    container: ServiceContainer = Depends(get_container),
) -> ConnectionResponse:
    connection = await container.coordinator.update(
        connection_id,
        bank_name=request.bank_name,
        connection_type=request.connection_type,
        settings=request.settings,
    )
    return ConnectionResponse.from_connection(connection)


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_connection(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> None:
    """Delete a connection; 409 while a sync is running."""
    await container.coordinator.delete(connection_id)


@router.post(
    "/{connection_id}/sync", response_model=SyncResponse, status_code=status.HTTP_202_ACCEPTED
)
async def sync_connection(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> SyncResponse:
    """Start a manual sync; 409 while one is already running."""
    task_id = await container.coordinator.sync(connection_id)
    if container.worker.has_handler(TaskType.DATA_SYNC):
        container.worker.submit(task_id)
    return SyncResponse(task_id=task_id, message="Synchronization started")


@router.post("/{connection_id}/disconnect", response_model=ConnectionResponse)
async def disconnect_connection(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> ConnectionResponse:
    return ConnectionResponse.from_connection(
        await container.coordinator.disconnect(connection_id)
    )


@router.post("/{connection_id}/reconnect", response_model=ConnectionResponse)
async def reconnect_connection(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> ConnectionResponse:
    return ConnectionResponse.from_connection(await container.coordinator.reconnect(connection_id))


@router.post("/{connection_id}/health-check", response_model=HealthCheckResponse)
async def check_connection_health(
    connection_id: str, container: ServiceContainer = Depends(get_container)
) -> HealthCheckResponse:
    return HealthCheckResponse.from_result(await container.coordinator.check_health(connection_id))
