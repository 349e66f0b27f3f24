"""
Nominatim geocoder for the legacy city-based network path.

  GET /search?q=<city>&format=json&limit=1  → [{lat, lon, display_name}]

Nominatim asks for an identifying User-Agent. Any failure (bad status, empty
result, junk coordinates, network error) means "no match", never an error.
Hits are kept in a cachetools TTLCache (LRU within its capacity) shared by
every request in the process.
"""
import logging
import math
from dataclasses import dataclass
from typing import Optional

import httpx
from cachetools import TTLCache

from farmaps.config import settings
from farmaps.telemetry import GEOCODE_CACHE_TOTAL

logger = logging.getLogger(__name__)

CACHE_SIZE = 2000
CACHE_TTL = 60 * 60 * 24 * 14


@dataclass(frozen=True)
class GeoPoint:
    lat: float
    lng: float
    display_name: Optional[str] = None


def _finite(v) -> Optional[float]:
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


class GeocodeClient:
    def __init__(
        self,
        *,
        base_url: str = "https://nominatim.openstreetmap.org",
        user_agent: str = "FarMaps/1.0 (demo; contact: none)",
        cache: Optional[TTLCache] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.cache = cache if cache is not None else TTLCache(maxsize=CACHE_SIZE, ttl=CACHE_TTL)
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
            headers={"User-Agent": user_agent, "accept": "application/json"},
        )

    @classmethod
    def from_settings(cls) -> "GeocodeClient":
        return cls(
            base_url=settings.geocode_base_url,
            user_agent=settings.geocode_user_agent,
            cache=TTLCache(maxsize=settings.geocode_cache_size, ttl=settings.geocode_cache_ttl),
            timeout=settings.geocode_timeout_s,
        )

    async def stop(self) -> None:
        await self._http.aclose()

    async def geocode_city(self, city: str) -> Optional[GeoPoint]:
        key = city.strip().lower()
        if not key:
            return None

        cached = self.cache.get(key)
        if cached is not None:
            GEOCODE_CACHE_TOTAL.labels(result="hit").inc()
            return cached
        GEOCODE_CACHE_TOTAL.labels(result="miss").inc()

        try:
            resp = await self._http.get(
                "/search", params={"q": city.strip(), "format": "json", "limit": "1"}
            )
        except httpx.TransportError as exc:
            logger.warning("Geocode request failed for %r: %s", city, exc)
            return None
        if not resp.is_success:
            logger.warning("Geocode %r returned HTTP %s", city, resp.status_code)
            return None

        try:
            data = resp.json()
        except ValueError:
            logger.warning("Geocode %r returned non-JSON body", city)
            return None
        if not isinstance(data, list) or not data or not isinstance(data[0], dict):
            logger.debug("No geocode match for %r", city)
            return None

        first = data[0]
        lat, lng = _finite(first.get("lat")), _finite(first.get("lon"))
        if lat is None or lng is None:
            return None

        point = GeoPoint(lat=lat, lng=lng, display_name=first.get("display_name"))
        self.cache[key] = point
        return point
