"""
Typed service errors.

Every error carries a machine-readable ``code`` and the HTTP status the
request layer answers with. Services raise these; routers never build
``HTTPException`` for domain failures themselves.
"""

from typing import Any


class ServiceError(Exception):
    """Base class for failures surfaced to the caller of a service."""

    code = "service_error"
    status_code = 500

    def __init__(self, message: str, *, field: str | None = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.field = field
        self.context = context


class NotFound(ServiceError):
    """Unknown id."""

    code = "not_found"
    status_code = 404


class InvalidState(ServiceError):
    """Operation is illegal for the record's current state."""

    code = "invalid_state"
    status_code = 400


class Conflict(ServiceError):
    """A concurrent operation is already in progress."""

    code = "conflict"
    status_code = 409


class InvalidRequest(ServiceError):
    """Referential integrity or argument failure."""

    code = "invalid_request"
    status_code = 422


class StoreError(ServiceError):
    """Transient failure reported by an entity store adapter."""

    code = "store_unavailable"
    status_code = 503


class ProbeError(Exception):
    """Raised by a bank probe when the external system is unreachable or unhealthy."""

    def __init__(self, reason: str, status_code: int | None = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code
