"""Session-scoped cache of routing results keyed by (trip, origin, destination)."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from livetrack.core.geo import LatLng

logger = logging.getLogger(__name__)


class DirectionsError(Exception):
    """The routing provider could not produce a route."""


@dataclass(frozen=True)
class DirectionsKey:
    trip_id: str
    origin: str
    destination: str


@dataclass(frozen=True)
class DirectionsResult:
    origin: str
    destination: str
    path: tuple[LatLng, ...]  # overview path, ordered
    distance_m: float = 0.0
    duration_s: float = 0.0
    start_location: LatLng | None = None  # leg start (pickup marker)
    end_location: LatLng | None = None  # leg end (dropoff marker)
    raw: dict = field(default_factory=dict, compare=False, repr=False)


class DirectionsProvider(Protocol):
    async def route(self, origin: str, destination: str, mode: str = "driving") -> DirectionsResult:
        ...


class DirectionsCache:
    """Append-only directions store for one tracking session.

    `get` serves cached results and fetches on a miss; concurrent misses on
    the same key share one provider call. `refetch` always goes to the
    provider and is used for reroutes, where the origin is the driver's
    current position. Entries are never evicted; a refetch under a key that
    already has an entry replaces that one entry with the fresher result.
    Failures propagate and leave nothing behind.
    """

    def __init__(self, provider: DirectionsProvider, mode: str = "driving") -> None:
        self.provider = provider
        self.mode = mode
        self._entries: dict[DirectionsKey, DirectionsResult] = {}
        self._pending: dict[DirectionsKey, asyncio.Future] = {}
        # trip_id -> key of the most recently requested route for that trip
        self._latest: dict[str, DirectionsKey] = {}

        self.hits = 0
        self.misses = 0
        self.fetches = 0
        self.failures = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: DirectionsKey) -> bool:
        return key in self._entries

    def peek(self, key: DirectionsKey) -> DirectionsResult | None:
        return self._entries.get(key)

    def latest_key(self, trip_id: str) -> DirectionsKey | None:
        return self._latest.get(trip_id)

    def is_current(self, key: DirectionsKey) -> bool:
        """True if no newer route has been requested for the key's trip."""
        return self._latest.get(key.trip_id) == key

    async def get(self, trip_id: str, origin: str, destination: str) -> DirectionsResult:
        key = DirectionsKey(trip_id, origin, destination)
        self._latest[trip_id] = key

        cached = self._entries.get(key)
        if cached is not None:
            self.hits += 1
            logger.debug("Directions cache hit for trip %s", trip_id)
            return cached

        self.misses += 1
        pending = self._pending.get(key)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch(key))
            self._pending[key] = pending
            pending.add_done_callback(lambda fut, k=key: self._settle(k, fut))
        return await asyncio.shield(pending)

    async def refetch(self, trip_id: str, new_origin: str, destination: str) -> DirectionsResult:
        """Bypass the cache and store a fresh route under the new origin's key."""
        key = DirectionsKey(trip_id, new_origin, destination)
        self._latest[trip_id] = key
        return await self._fetch(key)

    async def _fetch(self, key: DirectionsKey) -> DirectionsResult:
        self.fetches += 1
        try:
            result = await self.provider.route(key.origin, key.destination, self.mode)
        except Exception:
            self.failures += 1
            raise
        if not result.path:
            self.failures += 1
            raise DirectionsError(f"empty route for trip {key.trip_id}")
        # Same-key refetch replaces the entry; other keys are untouched
        self._entries[key] = result
        logger.info(
            "Fetched route for trip %s: %d points, %.0f m",
            key.trip_id, len(result.path), result.distance_m,
        )
        return result

    def _settle(self, key: DirectionsKey, fut: asyncio.Future) -> None:
        self._pending.pop(key, None)
        # Mark the exception retrieved even if every waiter was cancelled
        if not fut.cancelled():
            fut.exception()

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "hits": self.hits,
            "misses": self.misses,
            "fetches": self.fetches,
            "failures": self.failures,
        }
