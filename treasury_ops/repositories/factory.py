"""
Repository factory.

Selects the entity store adapter from settings: in-memory for development
and tests, DuckDB for a file-backed deployment.
"""

import structlog

from treasury_ops.config import RepositoryType, Settings
from treasury_ops.repositories.base import Repositories
from treasury_ops.repositories.memory import InMemoryStore
from treasury_ops.utils.clock import Clock, utc_now

logger = structlog.get_logger(__name__)


class RepositoryFactory:
    """Factory for creating repository instances."""

    @staticmethod
    def create_repositories(settings: Settings, clock: Clock = utc_now) -> Repositories:
        """
        Create repository instances based on configuration.

        Returns:
            The repositories bundle the services are wired with
        """
        if settings.repository_type == RepositoryType.DUCKDB:
            return RepositoryFactory._create_duckdb_repositories(settings, clock)

        logger.info("Creating in-memory repositories")
        return InMemoryStore(clock=clock).as_repositories()

    @staticmethod
    def _create_duckdb_repositories(settings: Settings, clock: Clock) -> Repositories:
        # Import here so the memory backend never loads the DuckDB driver
        from treasury_ops.repositories.duckdb_repository import (
            create_duckdb_repositories,
        )

        logger.info("Creating DuckDB repositories", db_path=settings.duckdb_path)
        return create_duckdb_repositories(settings.duckdb_path, clock)
