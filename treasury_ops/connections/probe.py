"""
Bank probe clients.

A probe answers one question: is the external banking system behind a
connection reachable and healthy right now. It is called exactly once per
health check; retries and backoff are the caller's business.
"""

from typing import Protocol

import httpx
import structlog

from treasury_ops.connections.models import BankConnection
from treasury_ops.errors import ProbeError

logger = structlog.get_logger(__name__)


class BankProbe(Protocol):
    async def probe(self, connection: BankConnection) -> None:
        """Return normally when healthy, raise ``ProbeError`` otherwise."""


class HttpBankProbe:
    """
    Probe a bank gateway over HTTP.

    Issues ``GET {base_url}/connections/{connection_id}/health``; any 2xx is
    healthy. Non-2xx responses and transport errors raise ``ProbeError``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def probe(self, connection: BankConnection) -> None:
        url = f"{self.base_url}/connections/{connection.connection_id}/health"
        params = {"accountId": connection.account_id, "bank": connection.bank_name}
        try:
            response = await self._client.get(url, params=params)
        except httpx.HTTPError as e:
            raise ProbeError(f"Bank gateway unreachable: {e}") from e

        if not response.is_success:
            logger.warning(
                "Bank probe returned error status",
                connection_id=connection.connection_id,
                status_code=response.status_code,
            )
            raise ProbeError(
                f"Bank gateway returned {response.status_code}",
                status_code=response.status_code,
            )

    async def aclose(self) -> None:
        await self._client.aclose()


class StaticBankProbe:
    """Probe with a fixed answer, used when no gateway is configured."""

    def __init__(self, healthy: bool = True, reason: str = "Bank probe reported unhealthy"):
        self.healthy = healthy
        self.reason = reason
        self.calls: list[str] = []

    async def probe(self, connection: BankConnection) -> None:
        self.calls.append(connection.connection_id)
        if not self.healthy:
            raise ProbeError(self.reason)

    async def aclose(self) -> None:
        return None
