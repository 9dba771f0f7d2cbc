"""
Travel estimation between installation sites and geocoding of addresses.
Offline estimates use haversine distance; geocoding goes through an HTTP
collaborator with rate limiting and retries.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Any

import httpx

from .models import Installation, Location
from .schemas import AppConfig, Settings
from .util.haversine import km, road_km, minutes_from_km


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Coordinates:
    """Geographic coordinates."""
    lat: float
    lon: float

    @classmethod
    def of(cls, location: Optional[Location]) -> Optional["Coordinates"]:
        if location is None or not location.has_coordinates:
            return None
        return cls(lat=location.lat, lon=location.lon)


@dataclass(frozen=True)
class TravelEstimate:
    """Estimated road distance and drive time for one leg."""
    distance_km: float
    minutes: float


class GeoDistanceEstimator:
    """
    Estimates travel between installations.

    Pre-computed distances (from a routing collaborator) take precedence over
    the haversine estimate. Returns None when either end has no usable
    location, so callers can skip the leg instead of failing.
    """

    def __init__(
        self,
        config: AppConfig,
        precomputed: Optional[Dict[Tuple[str, str], TravelEstimate]] = None
    ):
        self.config = config
        self._precomputed = dict(precomputed or {})
        # keyed by coordinates, never by installation id
        self._cache: Dict[Tuple[Coordinates, Coordinates], TravelEstimate] = {}

    def between(self, origin: Installation, destination: Installation) -> Optional[TravelEstimate]:
        """Travel estimate between two installations (cached per coordinate pair)."""
        key = (origin.id, destination.id)
        if key in self._precomputed:
            return self._precomputed[key]

        a = Coordinates.of(origin.location)
        b = Coordinates.of(destination.location)
        if a is None or b is None:
            missing = [i.id for i in (origin, destination) if not i.location.has_coordinates]
            logger.warning(f"Skipping travel estimate {origin.id} -> {destination.id}: "
                           f"no coordinates for {', '.join(missing)}")
            return None
        if (a, b) not in self._cache:
            self._cache[(a, b)] = self.between_locations(origin.location, destination.location)
        return self._cache[(a, b)]

    def between_locations(self, origin: Optional[Location], destination: Optional[Location]) -> Optional[TravelEstimate]:
        """Offline estimate from coordinates; None when either side lacks them."""
        a = Coordinates.of(origin)
        b = Coordinates.of(destination)
        if a is None or b is None:
            return None
        if a == b:
            return TravelEstimate(distance_km=0.0, minutes=0.0)
        d_km = road_km(km(a.lat, a.lon, b.lat, b.lon), self.config.travel.road_factor)
        return TravelEstimate(
            distance_km=d_km,
            minutes=minutes_from_km(d_km, self.config.travel.speed_kmph),
        )


class GeocodingClient:
    """Geocoding API client with rate limiting and retry logic."""

    def __init__(self, config: AppConfig, settings: Settings,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.api_key = settings.geocoding_api_key
        self.base_url = config.geocoding.base_url

        # Rate limiting
        self.last_request_time = 0.0
        self.min_request_interval = 1.0 / config.geocoding.rate_limit_requests_per_second

        self.client = httpx.AsyncClient(timeout=30.0, transport=transport)

        if not self.api_key and not config.geocoding.mock:
            logger.warning("Geocoding API key not configured - addresses will not be geocoded")

    async def _rate_limited_request(self, url: str, params: Dict[str, Any]) -> Dict[str, Any]:
        """Make a rate-limited HTTP request with retries."""
        time_since_last = time.monotonic() - self.last_request_time
        if time_since_last < self.min_request_interval:
            await asyncio.sleep(self.min_request_interval - time_since_last)

        params["key"] = self.api_key

        for attempt in range(self.config.geocoding.max_retries):
            try:
                self.last_request_time = time.monotonic()
                response = await self.client.get(url, params=params)
                response.raise_for_status()
                data = response.json()

                if data.get("status") in ("OK", "ZERO_RESULTS", "NOT_FOUND"):
                    return data
                raise httpx.HTTPError(
                    f"Geocoding API error: {data.get('status')} - {data.get('error_message', '')}"
                )
            except httpx.HTTPError as e:
                logger.warning(f"Request attempt {attempt + 1} failed: {e}")
                if attempt < self.config.geocoding.max_retries - 1:
                    await asyncio.sleep(self.config.geocoding.retry_delay_seconds * (2 ** attempt))
                else:
                    raise

    async def geocode_address(self, address: str) -> Optional[Coordinates]:
        """Geocode an address to coordinates."""
        if self.config.geocoding.mock:
            return self._mock_geocode(address)

        if not self.api_key:
            logger.error("Cannot geocode without API key")
            return None

        try:
            data = await self._rate_limited_request(f"{self.base_url}/geocode/json", {"address": address})
        except httpx.HTTPError as e:
            logger.error(f"Geocoding error for '{address}': {e}")
            return None

        if data.get("status") == "OK" and data.get("results"):
            location = data["results"][0]["geometry"]["location"]
            return Coordinates(lat=location["lat"], lon=location["lng"])
        logger.error(f"Geocoding failed for '{address}': {data.get('status')}")
        return None

    def _mock_geocode(self, address: str) -> Coordinates:
        """Deterministic mock geocoding for development/testing."""
        # Stable across processes, unlike hash()
        hash_val = sum((i + 1) * ord(ch) for i, ch in enumerate(address.lower())) % 10000
        lat = 34.0 + (hash_val % 100) / 1000.0
        lon = -118.5 + (hash_val % 500) / 1000.0

        logger.debug(f"Mock geocoding '{address}' -> ({lat:.6f}, {lon:.6f})")
        return Coordinates(lat=lat, lon=lon)

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class DistanceProvider:
    """High-level interface for geocoding installations before detection."""

    def __init__(self, config: AppConfig, settings: Settings,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.geocoder = GeocodingClient(config, settings, transport=transport)
        self._geocoding_cache: Dict[str, Optional[Coordinates]] = {}

    async def geocode_addresses(self, addresses: List[str]) -> Dict[str, Optional[Coordinates]]:
        """Geocode multiple addresses, using cache when available."""
        results = {}
        for address in addresses:
            if self.config.geocoding.cache and address in self._geocoding_cache:
                results[address] = self._geocoding_cache[address]
                logger.debug(f"Using cached coordinates for '{address}'")
                continue
            coords = await self.geocoder.geocode_address(address)
            results[address] = coords
            if coords and self.config.geocoding.cache:
                self._geocoding_cache[address] = coords
        return results

    async def geocode_installations(self, installations: List[Installation]) -> List[Installation]:
        """Return installations with coordinates filled in where an address resolves."""
        pending = sorted({
            inst.location.address for inst in installations
            if not inst.location.has_coordinates and inst.location.address
        })
        if not pending:
            return list(installations)

        resolved = await self.geocode_addresses(pending)
        updated = []
        for inst in installations:
            coords = resolved.get(inst.location.address) if not inst.location.has_coordinates else None
            if coords:
                location = inst.location.model_copy(update={"lat": coords.lat, "lon": coords.lon})
                inst = inst.model_copy(update={"location": location})
            elif not inst.location.has_coordinates:
                logger.warning(f"Installation {inst.id} has no coordinates; travel checks will skip it")
            updated.append(inst)
        return updated

    async def close(self):
        """Clean up resources."""
        await self.geocoder.close()
