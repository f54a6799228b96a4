"""
API v1 for the treasury operations backend.

Collects the v1 routers and the handlers that turn service errors into the
standard error envelope.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
import structlog

from treasury_ops.api.v1.routers import connections, health, notifications, tasks
from treasury_ops.api.v1.schemas import ErrorDetail, ErrorResponse
from treasury_ops.errors import ServiceError

logger = structlog.get_logger(__name__)

router = APIRouter()
router.include_router(health.router)
router.include_router(tasks.router)
router.include_router(connections.router)
router.include_router(notifications.router)


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    field: str | None = None,
    request_id: str | None = None,
) -> JSONResponse:
    """Create standardized error response."""
    error_response = ErrorResponse(
        error=ErrorDetail(code=error_code, message=message, field=field),
        request_id=request_id,
    )
    return JSONResponse(status_code=status_code, content=error_response.model_dump())


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    log = logger.warning if exc.status_code >= 500 else logger.info
    log(
        "Request failed",
        path=request.url.path,
        method=request.method,
        code=exc.code,
        error=exc.message,
        **exc.context,
    )
    return create_error_response(
        exc.status_code,
        exc.code,
        exc.message,
        field=exc.field,
        request_id=request.headers.get("X-Request-Id"),
    )
