from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from wizard_engine.form_engine.errors import RemoteFetchError

logger = logging.getLogger("wizard_engine.remote")

ALLOWED_WRITE_METHODS = {"POST", "PUT", "PATCH"}


class HttpJsonClient:
    """Thin JSON wrapper over `httpx.AsyncClient`. Transport, status and decode failures raise RemoteFetchError."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        base_url: str = "",
        timeout_s: float = 10.0,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_s, headers=headers)

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise RemoteFetchError(f"{method} {url} failed: {e.__class__.__name__}", url=url) from e
        if resp.status_code >= 400:
            raise RemoteFetchError(f"{method} {url} returned {resp.status_code}", url=url, status_code=resp.status_code)
        if not resp.content:
            return None
        try:
            return resp.json()
        except ValueError as e:
            raise RemoteFetchError(f"{method} {url} returned invalid JSON", url=url, status_code=resp.status_code) from e

    async def get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Any:
        logger.debug("GET %s params=%s", url, params)
        return await self._request("GET", url, params=params)

    async def send_json(self, method: str, url: str, payload: Any) -> Any:
        m = str(method or "POST").upper()
        if m not in ALLOWED_WRITE_METHODS:
            raise RemoteFetchError(f"unsupported method {m}", url=url)
        logger.debug("%s %s", m, url)
        return await self._request(m, url, json=payload)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
