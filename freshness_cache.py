import json
import logging
import time
from datetime import timedelta
from typing import Dict, Optional
from urllib.parse import quote

import httpx
from pydantic import ValidationError

from errors import CacheWriteError
from models import CacheEntry

logger = logging.getLogger("poap_preview.cache")

FRESHNESS_WINDOW = timedelta(hours=24)
KV_API_ROOT = "https://api.cloudflare.com/client/v4/accounts"


def now_millis() -> int:
    return int(time.time() * 1000)


def is_fresh(entry: Optional[CacheEntry], now_ms: Optional[int] = None) -> bool:
    """True when ``entry`` was written less than ``FRESHNESS_WINDOW`` ago."""
    if entry is None:
        return False
    try:
        last_updated = int(entry.last_updated)
    except (TypeError, ValueError):
        logger.warning("Cache entry for %s has unparsable lastUpdated %r", entry.url, entry.last_updated)
        return False
    current = now_millis() if now_ms is None else now_ms
    return current - last_updated < FRESHNESS_WINDOW.total_seconds() * 1000


def parse_entry(raw: str) -> Optional[CacheEntry]:
    if not raw:
        return None
    return CacheEntry.model_validate(json.loads(raw))


class FreshnessCache:
    """String-keyed store of ``CacheEntry`` values.

    ``get`` must never raise; any failure reads as a miss. ``set`` raises
    ``CacheWriteError`` and is only called from the background upload path.
    """

    async def get(self, key: str) -> Optional[CacheEntry]:
        raise NotImplementedError

    async def set(self, key: str, entry: CacheEntry) -> None:
        raise NotImplementedError

    async def get_raw(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set_raw(self, key: str, value: str) -> None:
        raise NotImplementedError


class InMemoryCache(FreshnessCache):
    def __init__(self):
        self._values: Dict[str, str] = {}

    async def get_raw(self, key: str) -> Optional[str]:
        return self._values.get(key)

    async def set_raw(self, key: str, value: str) -> None:
        self._values[key] = value

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            return parse_entry(self._values.get(key, ""))
        except (ValueError, ValidationError) as exc:
            logger.warning("Discarding unreadable cache value for %s: %s", key, exc)
            return None

    async def set(self, key: str, entry: CacheEntry) -> None:
        self._values[key] = entry.to_json()


class CloudflareKVCache(FreshnessCache):
    def __init__(self, client: httpx.AsyncClient, account_id: str, namespace_id: str, api_token: str):
        self.client = client
        self.base_url = f"{KV_API_ROOT}/{account_id}/storage/kv/namespaces/{namespace_id}"
        self.api_token = api_token

    def _value_url(self, key: str) -> str:
        return f"{self.base_url}/values/{quote(key, safe='')}"

    async def get_raw(self, key: str) -> Optional[str]:
        response = await self.client.get(
            self._value_url(key),
            headers={"Authorization": f"Bearer {self.api_token}"},
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.text or None

    async def set_raw(self, key: str, value: str) -> None:
        try:
            response = await self.client.put(
                self._value_url(key),
                headers={"Authorization": f"Bearer {self.api_token}", "Content-Type": "text/plain"},
                content=value,
            )
        except httpx.HTTPError as exc:
            raise CacheWriteError(f"KV write for {key} failed: {exc}") from exc
        if response.is_error:
            raise CacheWriteError(f"KV write for {key} failed with status {response.status_code}")

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            return parse_entry(await self.get_raw(key) or "")
        except Exception as exc:
            logger.warning("Cache read for %s failed; treating as miss: %s", key, exc)
            return None

    async def set(self, key: str, entry: CacheEntry) -> None:
        await self.set_raw(key, entry.to_json())
