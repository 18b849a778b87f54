"""Key/value settings store client.

Every configuration blob (commerce and courier credentials, SMS gateway,
cached OAuth tokens, saved templates) is persisted through this accessor.
"""
import json
import logging
from typing import Any, Optional

import httpx

from local_api import LocalApiClient

logger = logging.getLogger(__name__)


def decode_setting(text: Optional[str]) -> Any:
    """Decode a stored value, unwrapping one extra level of JSON string encoding."""
    if text is None:
        return None
    text = text.strip()
    if not text or text == 'null':
        return None
    try:
        data = json.loads(text)
    except ValueError:
        return None
    if isinstance(data, str):
        try:
            return json.loads(data)
        except ValueError:
            return data
    return data


class SettingsStore(LocalApiClient):
    resource = 'settings'

    async def get(self, key: str) -> Any:
        """Return the decoded value for `key`, or None when missing or unreadable."""
        try:
            resp = await self._get(params={'key': key})
        except httpx.HTTPError as exc:
            logger.warning("Settings fetch failed for %s: %s", key, exc)
            return None
        if resp.status_code >= 400:
            return None
        return decode_setting(resp.text)

    async def save(self, key: str, value: Any) -> bool:
        try:
            resp = await self._post({'key': key, 'value': json.dumps(value)})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("Error saving setting %s: %s", key, exc)
            return False
        return True
