"""
FastAPI backend for treasury operations.

Serves processing task tracking, bank connection sync and user
notifications (including live SSE streams) under ``/api/v1``.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import structlog

from treasury_ops.api.v1.endpoints import router as api_v1_router
from treasury_ops.api.v1.endpoints import service_error_handler
from treasury_ops.config import Settings, configure_structlog, settings
from treasury_ops.container import ServiceContainer, build_container
from treasury_ops.errors import ServiceError

configure_structlog()
logger = structlog.get_logger(__name__)


def create_app(
    app_settings: Settings | None = None,
    container: ServiceContainer | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        app_settings: Settings to run with, defaulting to the environment
        container: Pre-built services; built from settings on startup if omitted
    """
    app_settings = app_settings or settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifespan event handler for startup and shutdown."""
        logger.info(
            "Treasury Operations API starting up",
            version=app_settings.api_version,
            environment=app_settings.get_environment_display(),
            debug=app_settings.debug,
        )

        services = container or build_container(app_settings)
        app.state.container = services
        services.sweeper.start()
        logger.info(
            "Notification sweeper scheduled",
            interval_minutes=app_settings.notification_sweep_interval_minutes,
        )
        logger.info("API routes registered", endpoints=len(app.routes))

        yield

        logger.info("Treasury Operations API shutting down")
        await services.shutdown()

    app = FastAPI(
        title=app_settings.api_title,
        description=f"""
    **Treasury Advisory Operations Service**

    * **Processing Tasks**: Track statement parsing, sync, analysis and
      recommendation work step by step
    * **Bank Connections**: One sync at a time per connection, health checks
    * **Notifications**: Durable per-user notifications with a live SSE stream

    ## Environment

    Currently running in **{app_settings.get_environment_display()}** mode.

    ## Identity

    Notification endpoints act on behalf of the user named in the
    `X-User-Id` header, set by the upstream gateway.
    """,
        version=app_settings.api_version,
        debug=app_settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if not app_settings.is_production() else None,
        redoc_url="/redoc" if not app_settings.is_production() else None,
        openapi_url="/openapi.json" if not app_settings.is_production() else None,
    )

    app.add_middleware(CORSMiddleware, **app_settings.get_cors_config())
    app.add_exception_handler(ServiceError, service_error_handler)
    app.include_router(api_v1_router, tags=["API v1"])

    @app.get("/", tags=["Root"])
    async def root():
        """
        Root endpoint providing basic API information.

        Use `/api/v1/health` for detailed health checks.
        """
        return {
            "service": app_settings.api_title,
            "version": app_settings.api_version,
            "environment": app_settings.get_environment_display(),
            "status": "operational",
            "docs": "/docs" if not app_settings.is_production() else "disabled",
            "health": "/api/v1/health",
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "treasury_ops.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.reload,
        log_config=None,  # Use our structured logging
    )
