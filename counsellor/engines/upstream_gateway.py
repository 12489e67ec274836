"""Record provider gateway.

Wraps the external student information system. `fetch_resource` never
raises: any transport error, non-2xx status or unparseable body becomes an
empty result so one flaky endpoint cannot block the others.
"""

from __future__ import annotations

from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from counsellor.config import Config
from counsellor.core.errors import UpstreamUnavailable
from counsellor.core.records import is_empty_document
from counsellor.utils.logging_utils import get_logger

logger = get_logger("upstream")


class UpstreamGateway:
    """Fetch-with-fallback client for the record provider."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else Config.RECORD_API_BASE).rstrip("/")
        self._headers: Dict[str, str] = {"Accept": "application/json"}
        api_token = token if token is not None else Config.RECORD_API_TOKEN
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"
        self._client = httpx.AsyncClient(
            timeout=timeout or Config.UPSTREAM_TIMEOUT,
            headers=self._headers,
            transport=transport,
        )

    def build_url(self, template: str, **params: Any) -> str:
        quoted = {k: quote(str(v), safe="") for k, v in params.items()}
        return template.format(base=self.base_url, **quoted)

    async def fetch_resource(self, url: str) -> Optional[Any]:
        """GET `url` and return its JSON document, or None on any failure."""
        try:
            return await self._get_json(url)
        except UpstreamUnavailable as e:
            logger.warning("UpstreamUnavailable | %s", e)
            return None

    async def _get_json(self, url: str) -> Any:
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(url, f"{type(e).__name__}: {e}") from e
        if resp.status_code < 200 or resp.status_code >= 300:
            raise UpstreamUnavailable(url, f"HTTP {resp.status_code}")
        try:
            data = resp.json()
        except ValueError as e:
            raise UpstreamUnavailable(url, "malformed JSON body") from e
        if is_empty_document(data):
            logger.debug("Empty document from %s", url)
            return None
        return data

    async def aclose(self) -> None:
        await self._client.aclose()
