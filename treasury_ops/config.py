"""
Configuration for the treasury operations backend.

Settings come from environment variables (or a ``.env`` file next to this
package) and are validated by Pydantic. Logging is configured through
structlog on top of the standard library handlers.
"""

from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings
import structlog

PACKAGE_DIR = Path(__file__).resolve().parent
load_dotenv(dotenv_path=PACKAGE_DIR / ".env")


class Environment(str, Enum):
    """Application environment types."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RepositoryType(str, Enum):
    """Entity store backends."""

    MEMORY = "memory"
    DUCKDB = "duckdb"


class Settings(BaseSettings):
    """
    Application settings with environment-specific defaults.

    Environment variables override defaults (case-insensitive).
    """

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT, description="Application environment"
    )

    # API
    api_title: str = Field(default="Treasury Operations API")
    api_version: str = Field(default="1.0.0")
    debug: bool = Field(default=True)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1, le=65535)
    reload: bool = Field(default=False)

    # CORS
    cors_origins: str = Field(
        default="*", description="Allowed CORS origins (comma-separated)"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=False, description="Render logs as JSON")

    # Entity store
    repository_type: RepositoryType = Field(default=RepositoryType.MEMORY)
    duckdb_path: str = Field(default="data/treasury.duckdb")

    # Live notification streams
    heartbeat_interval_seconds: float = Field(default=30.0, gt=0)
    stream_queue_size: int = Field(default=100, ge=1, le=10_000)

    # Notification retention and expiry sweep
    business_retention_days: int = Field(default=30, ge=1)
    alert_retention_days: int = Field(default=7, ge=1)
    notification_sweep_interval_minutes: int = Field(default=60, ge=1, le=1440)
    sweep_batch_size: int = Field(default=500, ge=1)

    # Processing
    max_concurrent_tasks: int = Field(
        default=10, ge=1, le=50, description="Maximum concurrent in-process tasks"
    )

    # Bank connection health probe
    bank_probe_url: str = Field(
        default="", description="Base URL of the bank aggregator health API"
    )
    bank_probe_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    class Config:
        """Pydantic configuration."""

        env_file = ".env"
        case_sensitive = False
        extra = "ignore"

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        """Accept lower-case level names."""
        return v.upper()

    def get_environment_display(self) -> str:
        """Get human-readable environment name."""
        return self.environment.value.title()

    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    def get_cors_origins(self) -> list[str]:
        """Parse the comma-separated origin list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    def get_cors_config(self) -> dict[str, Any]:
        """Get CORS middleware configuration."""
        origins = self.get_cors_origins()
        if self.is_production():
            return {
                "allow_origins": [origin for origin in origins if origin != "*"],
                "allow_credentials": True,
                "allow_methods": ["GET", "POST", "PATCH", "DELETE"],
                "allow_headers": ["*"],
            }
        return {
            "allow_origins": origins,
            "allow_credentials": True,
            "allow_methods": ["*"],
            "allow_headers": ["*"],
        }


settings = Settings()


def configure_structlog(log_level: str | None = None, log_json: bool | None = None) -> None:
    """Initialize structlog on top of stdlib logging."""
    import logging
    import sys

    level = getattr(logging, log_level or settings.log_level, logging.INFO)
    use_json = settings.log_json if log_json is None else log_json

    logging.basicConfig(
        level=level,
        stream=sys.stdout,
        force=True,
        format="%(message)s",
    )

    processors: list[Any] = [
        structlog.processors.TimeStamper(fmt="iso" if use_json else "%H:%M:%S"),
        structlog.stdlib.add_log_level,
    ]
    if use_json:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
