"""Session-scoped state shared by the auth session, API and transports."""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

import httpx

from rool_sync.config import RoolConfig

logger = logging.getLogger(__name__)


class SessionContext:
    """Owns what used to be process-wide: the HTTP client and the caches.

    Created when a client session starts and closed with ``aclose()`` when
    it ends.
    """

    HTTP_TIMEOUT_SECONDS = 30.0

    def __init__(
        self,
        config: Optional[RoolConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timezone: Optional[str] = None,
    ):
        self.config = config or RoolConfig()
        self._http_client = http_client
        self._owns_http_client = http_client is None
        self.timezone = timezone or os.environ.get("TZ") or None
        self.api_key: Optional[str] = None
        self.storage_cache: dict[str, Any] = {}
        self.closed = False

    def get_http_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.HTTP_TIMEOUT_SECONDS)
            self._owns_http_client = True
        return self._http_client

    async def aclose(self) -> None:
        """Release the HTTP client and drop the caches."""
        if self.closed:
            return
        self.closed = True
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
        self._http_client = None
        self.api_key = None
        self.storage_cache.clear()
        logger.debug("Session context closed")

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.aclose()
        return False
