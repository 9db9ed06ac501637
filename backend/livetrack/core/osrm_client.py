"""Async routing client: OSRM for driving routes, Nominatim for address lookup."""

import asyncio
import logging

import httpx

from livetrack.config import settings
from livetrack.core.directions import DirectionsError, DirectionsResult
from livetrack.core.geo import LatLng, is_valid_coordinate, parse_latlng

logger = logging.getLogger(__name__)

# Retry configuration
MAX_RETRIES = 3
RETRY_BACKOFF = [1, 2, 4]  # seconds between retries

USER_AGENT = "livetrack/0.1 (fleet live tracking)"


class OsrmClient:
    """Resolves origin/destination strings and fetches driving routes."""

    def __init__(
        self,
        osrm_base_url: str | None = None,
        nominatim_base_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_backoff: list[float] | None = None,
    ) -> None:
        self.osrm_base_url = (osrm_base_url or settings.osrm_base_url).rstrip("/")
        self.nominatim_base_url = (nominatim_base_url or settings.nominatim_base_url).rstrip("/")
        self.retry_backoff = RETRY_BACKOFF if retry_backoff is None else retry_backoff
        self._client = httpx.AsyncClient(
            timeout=10.0,
            headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            transport=transport,
        )
        # address -> coordinate, memoized for the session
        self._geocoded: dict[str, LatLng] = {}

    async def close(self) -> None:
        await self._client.aclose()

    async def _get_with_retry(self, url: str, label: str, params: dict | None = None) -> httpx.Response:
        """GET with retry and exponential backoff; raises DirectionsError when exhausted."""
        retries = min(MAX_RETRIES, len(self.retry_backoff))
        for attempt in range(retries + 1):
            try:
                resp = await self._client.get(url, params=params)
                resp.raise_for_status()
                return resp
            except (httpx.ReadTimeout, httpx.ConnectTimeout, httpx.ConnectError) as e:
                if attempt < retries:
                    wait = self.retry_backoff[attempt]
                    logger.warning(
                        "%s attempt %d/%d failed (%s), retrying in %ss",
                        label, attempt + 1, retries + 1, type(e).__name__, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise DirectionsError(f"{label} failed after {retries + 1} attempts: {e}") from e
            except httpx.HTTPStatusError as e:
                if e.response.status_code >= 500 and attempt < retries:
                    wait = self.retry_backoff[attempt]
                    logger.warning(
                        "%s attempt %d/%d got HTTP %d, retrying in %ss",
                        label, attempt + 1, retries + 1, e.response.status_code, wait,
                    )
                    await asyncio.sleep(wait)
                else:
                    raise DirectionsError(f"{label} failed: HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise DirectionsError(f"{label} failed: {e}") from e
        raise DirectionsError(f"{label} failed")

    async def geocode(self, address: str) -> LatLng:
        """Look up an address through Nominatim."""
        cached = self._geocoded.get(address)
        if cached is not None:
            return cached

        resp = await self._get_with_retry(
            f"{self.nominatim_base_url}/search",
            "geocode",
            params={"q": address, "format": "json", "limit": 1},
        )
        try:
            items = resp.json()
            lat, lng = float(items[0]["lat"]), float(items[0]["lon"])
        except (ValueError, TypeError, KeyError, IndexError) as e:
            raise DirectionsError(f"could not geocode {address!r}") from e
        if not is_valid_coordinate(lat, lng):
            raise DirectionsError(f"could not geocode {address!r}")

        point = LatLng(lat, lng)
        self._geocoded[address] = point
        logger.debug("Geocoded %r -> %.6f,%.6f", address, lat, lng)
        return point

    async def resolve(self, location: str) -> LatLng:
        """A 'lat,lng' string is used as is; anything else is geocoded."""
        point = parse_latlng(location)
        if point is not None:
            return point
        return await self.geocode(location)

    async def route(self, origin: str, destination: str, mode: str = "driving") -> DirectionsResult:
        """Fetch the fastest route between two locations."""
        start = await self.resolve(origin)
        end = await self.resolve(destination)

        coords = f"{start.lng:.6f},{start.lat:.6f};{end.lng:.6f},{end.lat:.6f}"
        resp = await self._get_with_retry(
            f"{self.osrm_base_url}/route/v1/{mode}/{coords}",
            "route",
            params={"overview": "full", "geometries": "geojson"},
        )
        try:
            data = resp.json()
        except ValueError as e:
            raise DirectionsError("route response is not JSON") from e

        if data.get("code") != "Ok" or not data.get("routes"):
            raise DirectionsError(f"no route from {origin!r} to {destination!r}: {data.get('code')}")

        best = data["routes"][0]
        # GeoJSON is [lon, lat]
        path = tuple(
            LatLng(c[1], c[0])
            for c in best.get("geometry", {}).get("coordinates", [])
        )
        if not path:
            raise DirectionsError(f"empty route geometry from {origin!r} to {destination!r}")

        waypoints = data.get("waypoints") or []
        start_location = _waypoint(waypoints[0]) if waypoints else path[0]
        end_location = _waypoint(waypoints[-1]) if waypoints else path[-1]

        return DirectionsResult(
            origin=origin,
            destination=destination,
            path=path,
            distance_m=float(best.get("distance", 0.0)),
            duration_s=float(best.get("duration", 0.0)),
            start_location=start_location or path[0],
            end_location=end_location or path[-1],
            raw=data,
        )


def _waypoint(item: dict) -> LatLng | None:
    loc = item.get("location")
    if isinstance(loc, list) and len(loc) == 2:
        return LatLng(loc[1], loc[0])
    return None
