"""
Service wiring.

Builds the repositories, engine, worker, coordinator, notification service
and stream registry from settings, and connects the task event pipeline.
One container lives on ``app.state`` for the lifetime of the process.
"""

from dataclasses import dataclass
from datetime import timedelta

import structlog

from treasury_ops.config import Settings
from treasury_ops.connections.coordinator import SyncCoordinator
from treasury_ops.connections.probe import BankProbe, HttpBankProbe, StaticBankProbe
from treasury_ops.notifications.service import NotificationService
from treasury_ops.notifications.stream import StreamRegistry
from treasury_ops.notifications.sweeper import ExpirySweeper
from treasury_ops.pipeline import TaskEventPipeline
from treasury_ops.repositories import RepositoryFactory, Repositories
from treasury_ops.tasks.engine import TaskEngine
from treasury_ops.tasks.worker import TaskWorker
from treasury_ops.utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    repositories: Repositories
    engine: TaskEngine
    worker: TaskWorker
    coordinator: SyncCoordinator
    registry: StreamRegistry
    notifications: NotificationService
    sweeper: ExpirySweeper
    probe: BankProbe

    async def shutdown(self) -> None:
        await self.sweeper.stop()
        await self.worker.shutdown()
        await self.registry.close()
        await self.probe.aclose()
        logger.info("Services stopped")


def build_probe(settings: Settings) -> BankProbe:
    if settings.bank_probe_url:
        return HttpBankProbe(settings.bank_probe_url, timeout=settings.bank_probe_timeout_seconds)
    logger.warning("BANK_PROBE_URL not configured - health checks always pass")
    return StaticBankProbe()


def build_container(
    settings: Settings,
    repositories: Repositories | None = None,
    probe: BankProbe | None = None,
    clock: Clock = utc_now,
) -> ServiceContainer:
    repositories = repositories or RepositoryFactory.create_repositories(settings, clock)
    probe = probe or build_probe(settings)

    engine = TaskEngine(repositories, clock=clock, max_concurrent_tasks=settings.max_concurrent_tasks)
    worker = TaskWorker(engine, max_concurrent=settings.max_concurrent_tasks)
    coordinator = SyncCoordinator(repositories, engine, probe=probe, clock=clock)
    registry = StreamRegistry(heartbeat_interval=settings.heartbeat_interval_seconds, clock=clock)
    notifications = NotificationService(
        repositories.notifications,
        registry,
        clock=clock,
        business_retention=timedelta(days=settings.business_retention_days),
        alert_retention=timedelta(days=settings.alert_retention_days),
        sweep_batch_size=settings.sweep_batch_size,
    )
    engine.add_listener(TaskEventPipeline(repositories.clients, coordinator, notifications))
    sweeper = ExpirySweeper(notifications, settings.notification_sweep_interval_minutes * 60)

    logger.info(
        "Services initialized",
        repository=repositories.backend,
        max_concurrent_tasks=settings.max_concurrent_tasks,
        heartbeat_interval_seconds=settings.heartbeat_interval_seconds,
    )
    return ServiceContainer(
        settings=settings,
        repositories=repositories,
        engine=engine,
        worker=worker,
        coordinator=coordinator,
        registry=registry,
        notifications=notifications,
        sweeper=sweeper,
        probe=probe,
    )
