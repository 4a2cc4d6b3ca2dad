"""
Transport - the single network call underneath the request executor.

A transport performs exactly one HTTP exchange. It returns the response
whatever its status, and raises when no response exists at all (timeouts,
refused or aborted connections). Retrying, rate limiting and circuit breaking
all happen above it.
"""

from dataclasses import dataclass
from typing import Any, Protocol

import httpx
from loguru import logger


@dataclass(frozen=True)
class RequestDescriptor:
    """Immutable description of an outbound request."""

    url: str
    method: str = "GET"
    headers: dict[str, str] | None = None
    params: dict[str, Any] | None = None
    json: Any = None
    content: bytes | str | None = None

    @property
    def endpoint_key(self) -> str:
        """URL without query string, used to group rate-limit state."""
        return self.url.split("?", 1)[0].split("#", 1)[0]


class Transport(Protocol):
    """Anything that can turn a RequestDescriptor into an httpx.Response."""

    async def __call__(
        self, request: RequestDescriptor, timeout: float
    ) -> httpx.Response: ...


class HttpxTransport:
    """
    Default transport backed by a lazily created httpx.AsyncClient.

    Usage:
        transport = HttpxTransport(base_url="https://api.perplexity.ai")
        response = await transport(
            RequestDescriptor(url="/chat/completions", method="POST", json=body),
            timeout=30.0,
        )
        await transport.aclose()
    """

    def __init__(
        self,
        base_url: str | None = None,
        default_timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._default_timeout = default_timeout
        self._headers = headers
        self._http_transport = http_transport

        # HTTP client (lazy initialization)
        self._http_client: httpx.AsyncClient | None = None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            options: dict[str, Any] = {
                "timeout": httpx.Timeout(self._default_timeout),
                "follow_redirects": True,
                "headers": self._headers,
            }
            if self._base_url:
                options["base_url"] = self._base_url
            if self._http_transport is not None:
                options["transport"] = self._http_transport
            self._http_client = httpx.AsyncClient(**options)
        return self._http_client

    async def __call__(
        self, request: RequestDescriptor, timeout: float
    ) -> httpx.Response:
        client = await self._get_http_client()
        return await client.request(
            method=request.method,
            url=request.url,
            params=request.params,
            headers=request.headers,
            json=request.json,
            content=request.content,
            timeout=timeout,
        )

    async def aclose(self) -> None:
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug("HttpxTransport closed")
