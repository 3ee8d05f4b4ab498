"""
Self-Healing Engine - HTTP Service Client
=========================================

JSON client for the services the engine reads from, such as the activity
service behind ``HttpPatternStore``. Each request carries the current
correlation ID so the remote side can log against the same job.

Usage:
    from healing_shared.utils.http_client import ServiceClient

    async with ServiceClient("http://activity-service:8010") as client:
        payload = await client.get_json("/api/v1/signals", params={"organization_id": "org-1"})
"""

from typing import Any, Optional

import httpx

from healing_shared.utils.logging import get_logger, get_correlation_id

logger = get_logger(__name__)

USER_AGENT = "self-healing-engine/0.1"


class ServiceClient:
    """
    Lazily connected ``httpx.AsyncClient`` bound to one base URL.

    Args:
        base_url: Service root, trailing slash ignored
        timeout_seconds: Per-request timeout
        transport: Optional httpx transport, e.g. ``httpx.MockTransport``
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout_seconds),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        correlation_id = get_correlation_id()
        if correlation_id:
            headers["X-Correlation-ID"] = correlation_id
        return headers

    async def get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        GET ``path`` and decode the JSON body.

        Raises:
            httpx.HTTPStatusError: Non-2xx response
            httpx.HTTPError: Connection or timeout failure
        """
        response = await self._get_client().get(path, params=params, headers=self._headers())
        logger.debug(
            f"GET {self.base_url}{path} -> {response.status_code}",
            extra={"path": path, "status": response.status_code}
        )
        response.raise_for_status()
        return response.json()

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ServiceClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
