import logging
from typing import List, Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from errors import UpstreamFetchError
from models import BadgeRecord

logger = logging.getLogger("poap_preview.provider")

POAP_SCAN_URL = "https://api.poap.tech/actions/scan/{address}"
COMPASS_GRAPHQL_URL = "https://public.compass.poap.tech/v1/graphql"

RECENT_MINTS_QUERY = """
query RecentMints($since: bigint!, $until: bigint!) {
  poaps(where: { minted_on: { _gte: $since, _lte: $until } }) {
    minted_on
    collector_address
  }
}
"""

_badge_list = TypeAdapter(List[BadgeRecord])


class BadgeProvider:
    """Client for the POAP API scan lookup and the compass GraphQL index."""

    def __init__(self, client: httpx.AsyncClient, api_key: Optional[str] = None):
        self.client = client
        self.api_key = api_key

    async def get_badges(self, address: str) -> List[BadgeRecord]:
        if not self.api_key:
            raise UpstreamFetchError("POAP API key not configured")
        try:
            response = await self.client.get(
                POAP_SCAN_URL.format(address=address),
                headers={"accept": "application/json", "x-api-key": self.api_key},
            )
        except httpx.HTTPError as exc:
            raise UpstreamFetchError(f"Failed to fetch POAPs for {address}: {exc}") from exc
        if not response.is_success:
            raise UpstreamFetchError(f"Failed to fetch POAPs for {address}: status {response.status_code}")
        try:
            return _badge_list.validate_python(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamFetchError(f"Unexpected POAP payload for {address}: {exc}") from exc

    async def get_recent_collectors(self, since: int, until: int) -> List[str]:
        """Unique collector addresses with a mint in ``[since, until]`` (epoch seconds), in first-seen order."""
        try:
            response = await self.client.post(
                COMPASS_GRAPHQL_URL,
                json={"query": RECENT_MINTS_QUERY, "variables": {"since": since, "until": until}},
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise UpstreamFetchError(f"Recent mints query failed: {exc}") from exc
        if not isinstance(payload, dict) or payload.get("errors"):
            raise UpstreamFetchError(f"Recent mints query failed: {payload}")
        poaps = (payload.get("data") or {}).get("poaps") or []
        seen = {}
        for poap in poaps:
            address = poap.get("collector_address")
            if address:
                seen.setdefault(address, None)
        logger.info("Found %d collectors with mints between %s and %s", len(seen), since, until)
        return list(seen)
