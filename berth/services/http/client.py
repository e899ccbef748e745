"""Shared httpx.AsyncClient with connection pooling.

Owned by the service container built in the FastAPI lifespan; there is no
module-level instance.
"""

from __future__ import annotations

import httpx
import structlog

logger = structlog.get_logger()


class HTTPClientManager:
    """Manages a shared httpx.AsyncClient.

    Usage:
        manager = HTTPClientManager(timeout=5.0)
        await manager.startup()
        response = await manager.client.get("http://...")
        await manager.shutdown()
    """

    def __init__(
        self,
        *,
        timeout: float = 5.0,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
        keepalive_expiry: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HTTP client manager.

        Args:
            timeout: Total per-request timeout in seconds.
            max_connections: Maximum number of concurrent connections.
            max_keepalive_connections: Maximum connections to keep alive.
            keepalive_expiry: Seconds before idle connections are closed.
            transport: Optional transport override (tests use MockTransport).
        """
        self._timeout = timeout
        self._max_connections = max_connections
        self._max_keepalive_connections = max_keepalive_connections
        self._keepalive_expiry = keepalive_expiry
        self._transport = transport

        self._client: httpx.AsyncClient | None = None
        self._log = logger.bind(component="http_client")

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the shared HTTP client.

        Raises:
            RuntimeError: If client is not initialized (call startup first)
        """
        if self._client is None:
            raise RuntimeError("HTTP client not initialized. Call startup() first.")
        return self._client

    @property
    def is_started(self) -> bool:
        return self._client is not None

    async def startup(self) -> None:
        if self._client is not None:
            self._log.warning("http_client.already_started")
            return

        limits = httpx.Limits(
            max_connections=self._max_connections,
            max_keepalive_connections=self._max_keepalive_connections,
            keepalive_expiry=self._keepalive_expiry,
        )
        self._client = httpx.AsyncClient(
            limits=limits,
            timeout=httpx.Timeout(self._timeout),
            transport=self._transport,
        )
        self._log.info("http_client.started", max_connections=self._max_connections)

    async def shutdown(self) -> None:
        if self._client is None:
            return

        await self._client.aclose()
        self._client = None
        self._log.info("http_client.shutdown")
