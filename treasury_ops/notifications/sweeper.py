"""Periodic notification expiry sweep."""

import asyncio

import structlog

from treasury_ops.notifications.service import NotificationService

logger = structlog.get_logger(__name__)


class ExpirySweeper:
    """Runs ``NotificationService.expire_sweep`` on a fixed interval."""

    def __init__(self, service: NotificationService, interval_seconds: float):
        self._service = service
        self._interval = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="notification-expiry-sweep")
        logger.info("Expiry sweeper started", interval_seconds=self._interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Expiry sweeper stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self._service.expire_sweep()
            except Exception as e:
                # next tick retries; the sweep is idempotent
                logger.error("Expiry sweep failed", error=str(e), exc_info=True)
