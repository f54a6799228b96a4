"""Notification endpoints, including the live SSE stream."""

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import StreamingResponse
import structlog

from treasury_ops.api.v1.dependencies import get_container, get_user_id
from treasury_ops.api.v1.schemas import (
    CleanupResponse,
    CreateNotificationRequest,
    MarkAllReadResponse,
    NotificationListResponse,
    NotificationResponse,
)
from treasury_ops.container import ServiceContainer
from treasury_ops.errors import InvalidRequest
from treasury_ops.notifications.models import NotificationFilter, NotificationType, SortDirection
from treasury_ops.notifications.stream import QueueChannel, sse_events

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def parse_types(types: str | None) -> list[NotificationType]:
    """Comma-separated notification types; empty means all types."""
    if not types:
        return []
    parsed = []
    for raw in types.split(","):
        value = raw.strip()
        if not value:
            continue
        try:
            parsed.append(NotificationType(value))
        except ValueError:
            raise InvalidRequest(f"Unknown notification type {value}", field="types") from None
    return parsed


@router.get("", response_model=NotificationListResponse)
async def list_notifications(
    read: bool | None = Query(default=None),
    type: NotificationType | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    sort_by: str = Query(default="created_at"),
    sort_dir: SortDirection = Query(default=SortDirection.DESC),
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
) -> NotificationListResponse:
    result = await container.notifications.query(
        user_id,
        NotificationFilter(read=read, type=type),
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_dir=sort_dir,
    )
    return NotificationListResponse.from_page(result)


@router.get("/stream")
async def stream_notifications(
    types: str | None = Query(default=None, description="Comma-separated notification types"),
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    """
    Open the caller's live notification stream (Server-Sent Events).

    The first frame acknowledges the connection, heartbeats follow on a
    fixed interval. Opening a second stream closes the first.
    """
    channel = QueueChannel(maxsize=container.settings.stream_queue_size)
    await container.registry.subscribe(user_id, channel, parse_types(types))
    return StreamingResponse(
        sse_events(container.registry, user_id, channel),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.post("", response_model=NotificationResponse, status_code=status.HTTP_201_CREATED)
async def create_notification(
    request: CreateNotificationRequest, container: ServiceContainer = Depends(get_container)
) -> NotificationResponse:
    """Create a notification for any user (admin)."""
    notification = await container.notifications.create(
        request.user_id,
        request.type,
        request.title,
        request.message,
        request.data,
        request.expires_at,
    )
    return NotificationResponse.from_notification(notification)


@router.patch("/read-all", response_model=MarkAllReadResponse)
async def mark_all_read(
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
) -> MarkAllReadResponse:
    return MarkAllReadResponse(updated=await container.notifications.mark_all_read(user_id))


@router.patch("/{notification_id}/read", response_model=NotificationResponse)
async def mark_read(
    notification_id: str,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
) -> NotificationResponse:
    notification = await container.notifications.mark_read(notification_id, user_id)
    return NotificationResponse.from_notification(notification)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_notification(
    notification_id: str,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
) -> None:
    await container.notifications.delete(notification_id, user_id)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_expired(container: ServiceContainer = Depends(get_container)) -> CleanupResponse:
    """Run the expiry sweep now."""
    deleted = await container.notifications.expire_sweep()
    return CleanupResponse(deleted=deleted)
