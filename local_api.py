"""Shared HTTP plumbing for adapters backed by the local persistence API."""
import logging
from typing import Any, Dict, Optional

import httpx

import dashboard_config as cfg

logger = logging.getLogger(__name__)


class LocalApiClient:
    """Base class for the settings, tracking, customer and expense adapters.

    A fresh `httpx.AsyncClient` is opened per call so instances can be shared
    between event loops (Flask runs each async view on its own loop).
    """

    resource = ''

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or cfg.LOCAL_API_BASE).rstrip('/')
        self.timeout = timeout or cfg.HTTP_TIMEOUT

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.resource}"

    async def _get(self, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(self.url, params=params)

    async def _post(self, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(self.url, json=payload)

    async def _get_list(self) -> list:
        """GET the resource as a JSON array; anything else reads as empty."""
        try:
            resp = await self._get()
        except httpx.HTTPError as exc:
            logger.warning("Local API %s unreachable: %s", self.resource, exc)
            return []
        if resp.status_code >= 400:
            logger.warning("Local API %s returned HTTP %s", self.resource, resp.status_code)
            return []
        text = resp.text.strip()
        if not text or text == 'null':
            return []
        try:
            data = resp.json()
        except ValueError:
            logger.warning("Local API %s returned invalid JSON", self.resource)
            return []
        if isinstance(data, dict) and data.get('error'):
            logger.error("Local API %s error: %s", self.resource, data.get('error'))
            return []
        return data if isinstance(data, list) else []
