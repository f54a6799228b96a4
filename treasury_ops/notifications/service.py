"""
Notification service.

Persists notifications and pushes each one to the stream registry right
after the write, within the same call, so a user's open stream sees
notifications in creation order. Persistence never depends on delivery.
"""

from datetime import datetime, timedelta
from typing import Any
import uuid

import structlog

from treasury_ops.errors import InvalidRequest, NotFound, StoreError
from treasury_ops.notifications.models import (
    SORTABLE_FIELDS,
    Notification,
    NotificationFilter,
    NotificationPage,
    NotificationType,
    SortDirection,
)
from treasury_ops.notifications.stream import StreamRegistry
from treasury_ops.repositories.base import NotificationRepository
from treasury_ops.utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class NotificationService:
    """
    Creates, queries and expires notifications.

    Args:
        repository: Notification store
        registry: Live stream registry notified after every create
        business_retention: Default lifetime of business-event notifications
        alert_retention: Default lifetime of system alerts
        sweep_batch_size: Rows deleted per batch by ``expire_sweep``
    """

    def __init__(
        self,
        repository: NotificationRepository,
        registry: StreamRegistry,
        clock: Clock = utc_now,
        business_retention: timedelta = timedelta(days=30),
        alert_retention: timedelta = timedelta(days=7),
        sweep_batch_size: int = 500,
    ):
        self._repository = repository
        self._registry = registry
        self._clock = clock
        self.business_retention = business_retention
        self.alert_retention = alert_retention
        self._sweep_batch_size = sweep_batch_size

    async def create(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        data: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Notification:
        """Persist a notification, then publish it to the user's live stream."""
        notification = Notification(
            notification_id=str(uuid.uuid4()),
            user_id=user_id,
            type=notification_type,
            title=title,
            message=message,
            data=data,
            read=False,
            expires_at=expires_at,
            created_at=self._clock(),
        )
        await self._repository.create_notification(notification)
        delivered = await self._registry.publish(user_id, notification)

        logger.info(
            "Notification created",
            notification_id=notification.notification_id,
            user_id=user_id,
            type=notification_type.value,
            delivered=delivered,
        )
        return notification

    async def query(
        self,
        user_id: str,
        filter: NotificationFilter | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "created_at",
        sort_dir: SortDirection = SortDirection.DESC,
    ) -> NotificationPage:
        """
        Page through a user's notifications.

        ``total`` and ``unread_count`` cover the whole filtered set for the
        user, not just the returned page.
        """
        if page < 1 or limit < 1:
            raise InvalidRequest("page and limit must be positive")
        if sort_by not in SORTABLE_FIELDS:
            raise InvalidRequest(f"Cannot sort by {sort_by}", field="sort_by")

        filter = filter or NotificationFilter()
        notifications = await self._repository.query_notifications(
            user_id,
            read=filter.read,
            notification_type=filter.type,
            limit=limit,
            offset=(page - 1) * limit,
            sort_by=sort_by,
            descending=sort_dir == SortDirection.DESC,
        )
        total = await self._repository.count_notifications(
            user_id, read=filter.read, notification_type=filter.type
        )
        if filter.read is True:
            unread = 0
        else:
            unread = await self._repository.count_notifications(
                user_id, read=False, notification_type=filter.type
            )

        return NotificationPage(
            notifications=notifications,
            total=total,
            unread_count=unread,
            page=page,
            limit=limit,
        )

    async def get(self, notification_id: str, user_id: str) -> Notification:
        notification = await self._repository.get_notification(notification_id)
        if notification is None or notification.user_id != user_id:
            raise NotFound("Notification not found")
        return notification

    async def mark_read(self, notification_id: str, user_id: str) -> Notification:
        """Flip ``read``; marking an already-read notification is a no-op."""
        notification = await self.get(notification_id, user_id)
        if notification.read:
            return notification
        notification.read = True
        await self._repository.update_notification(notification)
        logger.debug("Notification read", notification_id=notification_id, user_id=user_id)
        return notification

    async def mark_all_read(self, user_id: str) -> int:
        count = await self._repository.mark_all_read(user_id)
        logger.info("Notifications marked read", user_id=user_id, count=count)
        return count

    async def delete(self, notification_id: str, user_id: str) -> None:
        await self.get(notification_id, user_id)
        await self._repository.delete_notification(notification_id)
        logger.info("Notification deleted", notification_id=notification_id, user_id=user_id)

    async def expire_sweep(self) -> int:
        """
        Delete every notification whose ``expires_at`` is at or before now.

        Deletes in batches; a batch the store fails on is logged and left for
        the next run. Returns the number of rows deleted.
        """
        now = self._clock()
        expired = await self._repository.find_expired_ids(now)
        deleted = 0
        failed_batches = 0

        for start in range(0, len(expired), self._sweep_batch_size):
            batch = expired[start:start + self._sweep_batch_size]
            try:
                deleted += await self._repository.delete_notifications(batch)
            except StoreError as e:
                failed_batches += 1
                logger.warning(
                    "Expired notification batch not deleted",
                    batch_size=len(batch),
                    error=str(e),
                )

        logger.info(
            "Notification expiry sweep finished",
            expired=len(expired),
            deleted=deleted,
            failed_batches=failed_batches,
        )
        return deleted

    # ------------------------------------------------------------------
    # named constructors
    # ------------------------------------------------------------------
    def _business_expiry(self) -> datetime:
        return self._clock() + self.business_retention

    async def processing_complete(
        self,
        user_id: str,
        client_id: str,
        client_name: str,
        task_id: str,
        transaction_count: int | None = None,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.PROCESSING_COMPLETE,
            "Statement Processing Complete",
            f"Processing completed successfully for {client_name} statements",
            {
                "clientId": client_id,
                "clientName": client_name,
                "taskId": task_id,
                "transactionCount": transaction_count,
                "processingTime": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def processing_failed(
        self,
        user_id: str,
        client_id: str,
        client_name: str,
        task_id: str,
        error: str,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.PROCESSING_FAILED,
            "Statement Processing Failed",
            f"Processing failed for {client_name} statements: {error}",
            {
                "clientId": client_id,
                "clientName": client_name,
                "taskId": task_id,
                "error": error,
                "failedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def recommendation_ready(
        self,
        user_id: str,
        client_id: str,
        client_name: str,
        recommendation_id: str,
        priority: str,
        estimated_benefit: float | None = None,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.RECOMMENDATION_READY,
            "New Recommendation Available",
            f"{priority} priority recommendation generated for {client_name}",
            {
                "clientId": client_id,
                "clientName": client_name,
                "recommendationId": recommendation_id,
                "priority": priority,
                "estimatedBenefit": estimated_benefit,
                "generatedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def statement_uploaded(
        self,
        user_id: str,
        client_id: str,
        client_name: str,
        file_name: str,
        file_size: int,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.STATEMENT_UPLOADED,
            "Statement Uploaded",
            f"New bank statement uploaded for {client_name}",
            {
                "clientId": client_id,
                "clientName": client_name,
                "fileName": file_name,
                "fileSize": file_size,
                "uploadedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def workflow_task_assigned(
        self,
        user_id: str,
        task_id: str,
        task_type: str,
        client_id: str,
        client_name: str,
        priority: str,
        due_date: datetime | None = None,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.WORKFLOW_TASK_ASSIGNED,
            "New Task Assigned",
            f"{_humanize(task_type)} task has been assigned to you",
            {
                "taskId": task_id,
                "taskType": task_type,
                "clientId": client_id,
                "clientName": client_name,
                "priority": priority,
                "dueDate": due_date.isoformat() if due_date else None,
                "assignedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def workflow_task_completed(
        self,
        user_id: str,
        task_id: str,
        task_type: str,
        client_id: str,
        client_name: str,
        completed_by: str,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.WORKFLOW_TASK_COMPLETED,
            "Task Completed",
            f"{_humanize(task_type)} task for {client_name} has been completed",
            {
                "taskId": task_id,
                "taskType": task_type,
                "clientId": client_id,
                "clientName": client_name,
                "completedBy": completed_by,
                "completedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )

    async def system_alert(
        self,
        user_id: str,
        title: str,
        message: str,
        alert_data: dict[str, Any] | None = None,
        expires_at: datetime | None = None,
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.SYSTEM_ALERT,
            title,
            message,
            alert_data,
            expires_at or self._clock() + self.alert_retention,
        )

    async def client_updated(
        self,
        user_id: str,
        client_id: str,
        client_name: str,
        update_type: str,
        changes: list[Any],
    ) -> Notification:
        return await self.create(
            user_id,
            NotificationType.CLIENT_UPDATED,
            "Client Updated",
            f"{client_name} profile has been updated ({update_type})",
            {
                "clientId": client_id,
                "clientName": client_name,
                "updateType": update_type,
                "changes": changes,
                "updatedAt": self._clock().isoformat(),
            },
            self._business_expiry(),
        )


def _humanize(task_type: str) -> str:
    """``KYC_REVIEW`` -> ``kyc review``."""
    return task_type.replace("_", " ").lower()
