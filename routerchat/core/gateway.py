"""
Shared HTTP plumbing for talking to the gateway.
"""

from __future__ import annotations

import logging
from types import TracebackType

import httpx

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
DEFAULT_READ_TIMEOUT = 300.0  # long generations can pause between tokens


def auth_headers(token: str) -> dict[str, str]:
    """Request headers carrying the bearer token."""
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
    }


class GatewayClient:
    """
    Base for components that call the gateway.

    Owns one lazily created ``httpx.AsyncClient``. The bearer token is passed
    per request rather than baked into the client, so a credential change
    takes effect on the next call.
    """

    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: httpx.Timeout | float | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        if timeout is None:
            timeout = httpx.Timeout(DEFAULT_CONNECT_TIMEOUT, read=DEFAULT_READ_TIMEOUT)
        self._timeout = timeout
        self._http: httpx.AsyncClient | None = None

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                transport=self._transport,
                timeout=self._timeout,
            )
        return self._http

    def url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None

    async def __aenter__(self) -> GatewayClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()
