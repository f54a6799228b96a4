"""Request-scoped access to the service container."""

from fastapi import Header, Request

from treasury_ops.container import ServiceContainer
from treasury_ops.errors import InvalidRequest


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """Caller identity; authentication happens upstream of this service."""
    if not x_user_id:
        raise InvalidRequest("X-User-Id header is required", field="X-User-Id")
    return x_user_id
