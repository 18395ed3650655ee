"""
Places-lookup capability used for venue enrichment.

`search(query, near)` returns ranked candidates, an empty list when nothing
matches, and raises UpstreamFailure (or RateLimited / UpstreamTimeout) only
for transport problems.
"""

from typing import Any, Dict, List, Optional, Protocol

import httpx
from pydantic import BaseModel

import config
from errors import RateLimited, UpstreamFailure, UpstreamTimeout
from stategraph import Coordinates
from logger_config import setup_logger

logger = setup_logger(__name__)


class PlaceCandidate(BaseModel):
    name: str
    address: str = ""
    coordinates: Optional[Coordinates] = None
    rating: Optional[float] = None
    category: Optional[str] = None
    importance: float = 0.0


class PlacesClient(Protocol):
    async def search(self, query: str, near: Optional[str] = None) -> List[PlaceCandidate]:
        ...


def _to_candidate(item: Dict[str, Any]) -> Optional[PlaceCandidate]:
    display_name = item.get("display_name") or ""
    name = item.get("name") or display_name.split(",")[0].strip()
    if not name:
        return None
    coordinates = None
    try:
        coordinates = Coordinates(lat=float(item["lat"]), lon=float(item["lon"]))
    except (KeyError, TypeError, ValueError):
        pass
    try:
        importance = float(item.get("importance") or 0.0)
    except (TypeError, ValueError):
        importance = 0.0
    return PlaceCandidate(
        name=name,
        address=display_name,
        coordinates=coordinates,
        category=item.get("type") or item.get("class"),
        importance=importance,
    )


class LocationIQPlacesClient:
    """LocationIQ forward-geocoding search over httpx."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: str = config.LOCATIONIQ_BASE_URL,
        timeout: float = config.PLACES_TIMEOUT_SECONDS,
        limit: int = 5,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or config.LOCATIONIQ_API_KEY
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.limit = limit
        self._transport = transport

    async def search(self, query: str, near: Optional[str] = None) -> List[PlaceCandidate]:
        if not self.api_key:
            raise UpstreamFailure("LOCATIONIQ_API_KEY is not configured")

        q = query
        if near and near.lower() not in query.lower():
            q = f"{query}, {near}"
        params = {
            "key": self.api_key,
            "q": q,
            "format": "json",
            "addressdetails": "1",
            "limit": str(self.limit),
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.base_url}/search",
                    params=params,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise UpstreamTimeout(f"LocationIQ search timed out for '{query}'") from e
        except httpx.HTTPError as e:
            raise UpstreamFailure(f"LocationIQ request failed: {e}") from e

        # LocationIQ answers 404 "Unable to geocode" for no matches
        if response.status_code == 404:
            logger.debug(f"No places found for '{params['q']}'")
            return []
        if response.status_code == 429:
            raise RateLimited("LocationIQ rate limit exceeded")
        if response.status_code >= 400:
            raise UpstreamFailure(f"LocationIQ API error: {response.status_code}")

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamFailure("LocationIQ returned a non-JSON body") from e

        if not isinstance(data, list):
            logger.warning(f"Unexpected LocationIQ response format for '{params['q']}'")
            return []

        candidates = [c for c in (_to_candidate(item) for item in data if isinstance(item, dict)) if c]
        candidates.sort(key=lambda c: c.importance, reverse=True)
        logger.info(f"Found {len(candidates)} places for '{params['q']}'")
        return candidates
