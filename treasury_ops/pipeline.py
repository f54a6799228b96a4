"""
Task event pipeline.

Single listener on the task engine that turns terminal task transitions into
their side effects: settling the bank connection a sync task belonged to,
then notifying the client's relationship manager. Notification creation
publishes to the live stream in the same step. Connection errors propagate
to the caller of the transition; notification errors are only logged.
"""

import structlog

from treasury_ops.connections.coordinator import SyncCoordinator
from treasury_ops.notifications.service import NotificationService
from treasury_ops.repositories.base import ClientRepository
from treasury_ops.tasks.models import ProcessingTask, TaskStatus, TaskTransition

logger = structlog.get_logger(__name__)


class TaskEventPipeline:
    def __init__(
        self,
        clients: ClientRepository,
        coordinator: SyncCoordinator,
        notifications: NotificationService,
    ):
        self._clients = clients
        self._coordinator = coordinator
        self._notifications = notifications

    async def __call__(self, transition: TaskTransition) -> None:
        task = transition.task
        if not task.is_terminal:
            logger.debug(
                "Task transition",
                task_id=task.task_id,
                previous=transition.previous_status.value if transition.previous_status else None,
                status=task.status.value,
            )
            return

        if task.connection_id:
            await self._coordinator.on_task_terminal(task.connection_id, task.task_id, task.status)

        # the transition is already committed; a lost notification must not undo it
        try:
            await self._notify(task)
        except Exception as e:
            logger.error(
                "Task outcome notification failed",
                task_id=task.task_id,
                status=task.status.value,
                error=str(e),
                exc_info=True,
            )

    async def _notify(self, task: ProcessingTask) -> None:
        client = await self._clients.get_client(task.client_id)
        if client is None or not client.relationship_manager_id:
            logger.info(
                "No recipient for task outcome",
                task_id=task.task_id,
                client_id=task.client_id,
            )
            return

        user_id = client.relationship_manager_id
        if task.status == TaskStatus.COMPLETED:
            results = task.results or {}
            await self._notifications.processing_complete(
                user_id,
                client.client_id,
                client.name,
                task.task_id,
                transaction_count=results.get("transactionCount"),
            )
        elif task.status == TaskStatus.FAILED:
            await self._notifications.processing_failed(
                user_id,
                client.client_id,
                client.name,
                task.task_id,
                task.error.message if task.error else "Unknown error",
            )
        elif task.status == TaskStatus.CANCELLED:
            await self._notifications.system_alert(
                user_id,
                "Processing Cancelled",
                f"{task.task_type.value} task for {client.name} was cancelled",
                {
                    "clientId": client.client_id,
                    "clientName": client.name,
                    "taskId": task.task_id,
                    "taskType": task.task_type.value,
                },
            )
