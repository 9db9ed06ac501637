"""Realtime feed adapter: location broadcasts and row-change events from Redis."""

import asyncio
import logging

import orjson
import redis.asyncio as aioredis
from pydantic import ValidationError

from livetrack.config import settings
from livetrack.core.geo import LatLng, approx_sq_dist, is_valid_coordinate
from livetrack.schemas.events import (
    DriverChangeEvent,
    LocationEvent,
    TripChangeEvent,
    realtime_event_adapter,
)

logger = logging.getLogger(__name__)

RECONNECT_BACKOFF = [1, 2, 4, 8, 16]  # seconds between reconnect attempts


def locations_channel(org_id: str) -> str:
    return f"fleet:{org_id}:locations"


def changes_channel(org_id: str) -> str:
    return f"fleet:{org_id}:changes"


class RealtimeIngestionAdapter:
    """Turns realtime events into tracker updates.

    Positions become animator targets plus a route-following update;
    row changes either patch driver metadata or trigger a refetch of the
    affected list. Events for another organization, for drivers outside
    the tracked set, or that fail validation are dropped and counted.

    List refetches run as background tasks, one in flight per list, so a
    slow route fetch never holds up the position stream. A change arriving
    mid-refetch queues exactly one more refetch.
    """

    def __init__(
        self,
        tracker,
        org_id: str | None = None,
        min_target_delta_sq: float | None = None,
        redis_url: str | None = None,
    ) -> None:
        self.tracker = tracker
        self.org_id = settings.org_id if org_id is None else org_id
        self.min_target_delta_sq = (
            settings.min_target_delta_sq if min_target_delta_sq is None else min_target_delta_sq
        )
        self.redis_url = redis_url or settings.redis_url
        self._redis: aioredis.Redis | None = None
        self._task: asyncio.Task | None = None
        self._refresh_tasks: dict[str, asyncio.Task] = {}
        self._refresh_again: set[str] = set()

        self.counters = {
            "received": 0,
            "applied": 0,
            "malformed": 0,
            "foreign_org": 0,
            "untracked": 0,
            "invalid_coordinate": 0,
            "below_threshold": 0,
            "driver_refetches": 0,
            "trip_refetches": 0,
        }

    @property
    def channels(self) -> list[str]:
        return [locations_channel(self.org_id), changes_channel(self.org_id)]

    async def start(self) -> None:
        self._redis = aioredis.from_url(self.redis_url, decode_responses=False)
        self._task = asyncio.create_task(self._listen())
        logger.info("Listening for realtime events on %s", ", ".join(self.channels))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        for task in self._refresh_tasks.values():
            task.cancel()
        await asyncio.gather(*self._refresh_tasks.values(), return_exceptions=True)
        self._refresh_tasks.clear()
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def _listen(self) -> None:
        attempt = 0
        while True:
            pubsub = self._redis.pubsub(ignore_subscribe_messages=True)
            try:
                await pubsub.subscribe(*self.channels)
                attempt = 0
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    try:
                        await self.handle_raw(message["data"])
                    except Exception:
                        logger.exception("Failed to apply realtime event")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                delay = RECONNECT_BACKOFF[min(attempt, len(RECONNECT_BACKOFF) - 1)]
                attempt += 1
                logger.warning("Realtime subscription lost: %s, reconnecting in %ds", e, delay)
                await asyncio.sleep(delay)
            finally:
                await pubsub.aclose()

    async def handle_raw(self, data: bytes | str) -> bool:
        """Parse and validate one feed message, then apply it."""
        self.counters["received"] += 1
        try:
            event = realtime_event_adapter.validate_python(orjson.loads(data))
        except (orjson.JSONDecodeError, ValidationError) as e:
            self.counters["malformed"] += 1
            logger.debug("Dropping malformed realtime event: %s", e)
            return False
        return await self.handle_event(event)

    async def handle_event(self, event) -> bool:
        if isinstance(event, LocationEvent):
            applied = self.handle_location(event)
        elif isinstance(event, DriverChangeEvent):
            applied = await self.handle_driver_change(event)
        elif isinstance(event, TripChangeEvent):
            applied = await self.handle_trip_change(event)
        else:
            self.counters["malformed"] += 1
            return False
        if applied:
            self.counters["applied"] += 1
        return applied

    def _is_foreign(self, org_id: str | None) -> bool:
        if org_id is not None and org_id != self.org_id:
            logger.debug("Dropping event for foreign org %s", org_id)
            return True
        return False

    def handle_location(self, event: LocationEvent) -> bool:
        if self._is_foreign(event.org_id):
            self.counters["foreign_org"] += 1
            return False
        return self._apply_position(event.id, event.lat, event.lng, event.heading, event.timestamp)

    def _apply_position(self, driver_id, lat, lng, heading=None, timestamp=None) -> bool:
        if not self.tracker.is_tracked(driver_id):
            self.counters["untracked"] += 1
            return False
        if not is_valid_coordinate(lat, lng):
            self.counters["invalid_coordinate"] += 1
            return False

        point = LatLng(lat, lng)
        current = self.tracker.animator.target_of(driver_id)
        # The noise filter guards only the animation target; every fix still
        # reaches route following as ground truth
        if current is not None and approx_sq_dist(current, point) < self.min_target_delta_sq:
            self.counters["below_threshold"] += 1
        else:
            self.tracker.animator.set_target(driver_id, point, heading)
        self.tracker.record_position(driver_id, point, timestamp)
        return True

    async def handle_driver_change(self, event: DriverChangeEvent) -> bool:
        if self._is_foreign(event.org_id):
            self.counters["foreign_org"] += 1
            return False

        row = event.new
        if event.event_type == "UPDATE" and row is not None and self.tracker.is_tracked(row.id):
            self.tracker.update_driver_metadata(row.id, active=row.active, last_update=row.last_location_update)
            if row.current_lat is not None and row.current_lng is not None:
                self._apply_position(row.id, row.current_lat, row.current_lng, timestamp=row.last_location_update)
            return True

        # Membership may have changed: refetch the whole list
        self.counters["driver_refetches"] += 1
        self._schedule_refresh("drivers")
        return True

    async def handle_trip_change(self, event: TripChangeEvent) -> bool:
        if self._is_foreign(event.org_id):
            self.counters["foreign_org"] += 1
            return False
        self.counters["trip_refetches"] += 1
        self._schedule_refresh("trips")
        return True

    def _schedule_refresh(self, kind: str) -> None:
        task = self._refresh_tasks.get(kind)
        if task is not None and not task.done():
            self._refresh_again.add(kind)
            return
        self._refresh_tasks[kind] = asyncio.create_task(self._run_refresh(kind))

    async def _run_refresh(self, kind: str) -> None:
        refresh = self.tracker.refresh_drivers if kind == "drivers" else self.tracker.refresh_trips
        while True:
            self._refresh_again.discard(kind)
            try:
                await refresh()
            except Exception:
                logger.exception("Background %s refresh failed", kind)
            if kind not in self._refresh_again:
                return

    async def drain(self) -> None:
        """Wait for queued list refetches to finish."""
        while any(not t.done() for t in self._refresh_tasks.values()):
            await asyncio.gather(*self._refresh_tasks.values(), return_exceptions=True)

    def stats(self) -> dict:
        return dict(self.counters)
