"""Main orchestrator: fleet state, animation, route following, rerouting, clustering."""

import asyncio
import datetime
import logging
import time
from collections import deque
from dataclasses import dataclass

from livetrack.core.animator import PositionAnimator
from livetrack.core.broadcaster import Broadcaster
from livetrack.core.cluster_index import Cluster, ClusterPoint, Viewport, ViewportClusterer
from livetrack.core.directions import DirectionsCache, DirectionsKey, DirectionsResult
from livetrack.core.eta_calculator import EtaCalculator
from livetrack.core.geo import LatLng, format_latlng, is_valid_coordinate
from livetrack.core.route_follower import RouteFollower, RouteFollowingState
from livetrack.core.route_matcher import RoutePolyline
from livetrack.schemas.fleet import (
    ACTIVE_TRIP_STATUSES,
    Coordinate,
    DriverPosition,
    DriverRecord,
    LiveDriver,
    LiveTrip,
    RouteSegments,
    RouteState,
)

logger = logging.getLogger(__name__)

# Wait before retrying a trip whose initial route fetch failed
ROUTE_RETRY_SECONDS = 30.0


def _coords(points) -> list[Coordinate]:
    return [Coordinate(lat=p[0], lng=p[1]) for p in points]


@dataclass(frozen=True)
class TripRoute:
    key: DirectionsKey
    result: DirectionsResult
    polyline: RoutePolyline


class FleetTracker:
    """Owns the tracked fleet of one organization.

    All state lives in plain dicts mutated from the event loop only. Every
    method that awaits re-checks relevance afterwards: a route that comes
    back for an ended trip or a superseded request is dropped.
    """

    def __init__(
        self,
        source,
        directions: DirectionsCache,
        broadcaster: Broadcaster | None = None,
        *,
        animator: PositionAnimator | None = None,
        follower: RouteFollower | None = None,
        clusterer: ViewportClusterer | None = None,
        follow_all_trips: bool = False,
        clock=time.monotonic,
    ) -> None:
        self.source = source
        self.directions = directions
        self.broadcaster = broadcaster
        self.animator = animator if animator is not None else PositionAnimator(clock=clock)
        self.follower = follower if follower is not None else RouteFollower(clock=clock)
        self.clusterer = clusterer if clusterer is not None else ViewportClusterer()
        self.eta_calculator = EtaCalculator()
        self.follow_all_trips = follow_all_trips
        self._clock = clock

        self.drivers: dict[str, DriverRecord] = {}
        # Active trips only (en_route, in_progress)
        self.trips: dict[str, LiveTrip] = {}
        # driver_id -> trip_id of the driver's active trip
        self._active_trip: dict[str, str] = {}
        # trip_id -> current planned route
        self._routes: dict[str, TripRoute] = {}
        # trip_id -> earliest time to retry a failed initial route fetch
        self._route_retry_at: dict[str, float] = {}

        self.selected: set[str] = set()
        self._reroutes_in_flight: set[str] = set()

        # Refresh generations: only the newest fetch result is applied
        self._driver_refresh_seq = 0
        self._trip_refresh_seq = 0

        self.stale_results = 0
        self.reroutes_issued = 0
        self.reroutes_failed = 0
        self._route_events: deque[dict] = deque(maxlen=500)

    # ------------------------------------------------------------------
    # Fleet refresh

    async def load(self) -> None:
        """Initial fetch of drivers and active trips."""
        await self.refresh_drivers()
        await self.refresh_trips()

    async def refresh_drivers(self) -> bool:
        self._driver_refresh_seq += 1
        seq = self._driver_refresh_seq
        try:
            records = await self.source.fetch_drivers()
        except Exception:
            logger.exception("Failed to refresh drivers - keeping previous fleet")
            return False
        if seq != self._driver_refresh_seq:
            logger.info("Discarding superseded driver refresh #%d", seq)
            return False

        needing_routes = self.apply_drivers(records)
        await self._fetch_missing_routes(needing_routes)
        await self.publish_fleet()
        return True

    async def refresh_trips(self) -> bool:
        self._trip_refresh_seq += 1
        seq = self._trip_refresh_seq
        try:
            trips = await self.source.fetch_active_trips()
        except Exception:
            logger.exception("Failed to refresh trips - keeping previous trips")
            return False
        if seq != self._trip_refresh_seq:
            logger.info("Discarding superseded trip refresh #%d", seq)
            return False

        needing_routes = self.apply_trips(trips)
        await self._fetch_missing_routes(needing_routes)
        await self.publish_fleet()
        return True

    async def refresh_fleet(self) -> None:
        """Polling fallback: full refetch of drivers and trips."""
        await self.refresh_drivers()
        await self.refresh_trips()

    def apply_drivers(self, records: list[DriverRecord]) -> list[str]:
        """Replace the tracked driver set. Returns drivers that still need a route."""
        previous = set(self.drivers)
        self.drivers = {r.id: r for r in records}

        for r in records:
            if is_valid_coordinate(r.lat, r.lng):
                self.animator.place(r.id, LatLng(r.lat, r.lng))
        self.animator.retain(self.drivers)

        for driver_id in previous - set(self.drivers):
            self.selected.discard(driver_id)
            self.follower.discard(driver_id)
        if previous != set(self.drivers):
            self.clusterer.invalidate()

        logger.info("Tracking %d drivers", len(self.drivers))
        return self._sync_following()

    def apply_trips(self, trips: list[LiveTrip]) -> list[str]:
        """Replace the active trip list. Returns drivers that still need a route."""
        self.trips = {t.id: t for t in trips if t.status in ACTIVE_TRIP_STATUSES}

        active: dict[str, str] = {}
        for t in trips:
            if t.id in self.trips and t.driver_id and t.driver_id not in active:
                active[t.driver_id] = t.id
        self._active_trip = active

        for trip_id in [t for t in self._routes if t not in self.trips]:
            del self._routes[trip_id]
        for trip_id in [t for t in self._route_retry_at if t not in self.trips]:
            del self._route_retry_at[trip_id]

        logger.info("Tracking %d active trips", len(self.trips))
        return self._sync_following()

    def _is_watched(self, driver_id: str) -> bool:
        return self.follow_all_trips or driver_id in self.selected

    def _sync_following(self) -> list[str]:
        """Align follower states with selection and active trips."""
        followed = {
            driver_id: trip_id
            for driver_id, trip_id in self._active_trip.items()
            if driver_id in self.drivers and self._is_watched(driver_id)
        }
        self.follower.retain(followed)

        needing_routes = []
        for driver_id, trip_id in followed.items():
            route = self._routes.get(trip_id)
            self.follower.start(driver_id, trip_id, route.polyline if route else None)
            if route is None:
                needing_routes.append(driver_id)
        return needing_routes

    # ------------------------------------------------------------------
    # Selection

    async def select_driver(self, driver_id: str) -> RouteFollowingState | None:
        if driver_id not in self.drivers:
            raise KeyError(driver_id)
        self.selected.add(driver_id)
        await self._fetch_missing_routes(self._sync_following())
        return self.follower.get(driver_id)

    def deselect_driver(self, driver_id: str) -> None:
        self.selected.discard(driver_id)
        self._sync_following()

    # ------------------------------------------------------------------
    # Realtime input

    def is_tracked(self, driver_id: str) -> bool:
        return driver_id in self.drivers

    def record_position(
        self,
        driver_id: str,
        point: LatLng,
        timestamp: datetime.datetime | None = None,
        now: float | None = None,
    ) -> RouteFollowingState | None:
        """Store a raw GPS fix and re-evaluate the driver's route following."""
        driver = self.drivers.get(driver_id)
        if driver is None:
            return None
        update = {"lat": point.lat, "lng": point.lng}
        if timestamp is not None:
            update["last_update"] = timestamp
        self.drivers[driver_id] = driver.model_copy(update=update)
        return self.follower.update(driver_id, point, now)

    def update_driver_metadata(
        self,
        driver_id: str,
        active: bool | None = None,
        last_update: datetime.datetime | None = None,
    ) -> bool:
        """Apply non-positional fields directly, without interpolation."""
        driver = self.drivers.get(driver_id)
        if driver is None:
            return False
        update = {}
        if active is not None:
            update["active"] = active
        if last_update is not None:
            update["last_update"] = last_update
        if update:
            self.drivers[driver_id] = driver.model_copy(update=update)
        return True

    # ------------------------------------------------------------------
    # Routes

    async def ensure_route(self, driver_id: str) -> TripRoute | None:
        """Fetch the planned pickup -> dropoff route of the driver's active trip."""
        trip_id = self._active_trip.get(driver_id)
        if trip_id is None:
            return None
        existing = self._routes.get(trip_id)
        if existing is not None:
            return existing

        trip = self.trips[trip_id]
        if not trip.pickup_location or not trip.dropoff_location:
            return None
        retry_at = self._route_retry_at.get(trip_id)
        if retry_at is not None and self._clock() < retry_at:
            return None

        try:
            result = await self.directions.get(trip_id, trip.pickup_location, trip.dropoff_location)
        except Exception as e:
            self._route_retry_at[trip_id] = self._clock() + ROUTE_RETRY_SECONDS
            logger.warning("Route fetch failed for trip %s: %s", trip_id, e)
            self._log_route_event("route_failed", {"trip_id": trip_id, "error": str(e)})
            return None

        self._route_retry_at.pop(trip_id, None)
        self.on_route_load(trip_id, result, trip.pickup_location, trip.dropoff_location)
        return self._routes.get(trip_id)

    async def _fetch_missing_routes(self, driver_ids: list[str]) -> None:
        if driver_ids:
            await asyncio.gather(*(self.ensure_route(d) for d in driver_ids))

    def on_route_load(self, trip_id: str, result: DirectionsResult, origin: str, destination: str) -> bool:
        """Install a fetched route for a trip unless the request went stale meanwhile."""
        key = DirectionsKey(trip_id, origin, destination)
        if trip_id not in self.trips:
            self._discard_stale(key, "trip no longer active")
            return False
        if not self.directions.is_current(key):
            self._discard_stale(key, "superseded by a newer request")
            return False
        if not result.path:
            return False

        polyline = RoutePolyline(result.path)
        rerouted = trip_id in self._routes
        self._routes[trip_id] = TripRoute(key=key, result=result, polyline=polyline)

        driver_id = self.trips[trip_id].driver_id
        state = self.follower.get(driver_id) if driver_id else None
        if state is not None and state.trip_id == trip_id:
            self.follower.set_route(driver_id, polyline)

        self._log_route_event("rerouted" if rerouted else "route_loaded", {
            "trip_id": trip_id,
            "driver_id": driver_id,
            "origin": origin,
            "points": len(result.path),
            "distance_m": round(result.distance_m, 1),
        })
        return True

    def _discard_stale(self, key: DirectionsKey, reason: str) -> None:
        self.stale_results += 1
        logger.info("Discarding stale route for trip %s (%s)", key.trip_id, reason)
        self._log_route_event("stale_route", {"trip_id": key.trip_id, "origin": key.origin, "reason": reason})

    def get_driver_route_state(self, driver_id: str) -> RouteFollowingState | None:
        return self.follower.get(driver_id)

    def clear_reroute_flag(self, driver_id: str) -> bool:
        return self.follower.acknowledge_reroute(driver_id)

    def get_route_polyline(self, trip_id: str) -> list[LatLng] | None:
        route = self._routes.get(trip_id)
        return list(route.polyline.points) if route else None

    def active_trip_id(self, driver_id: str) -> str | None:
        return self._active_trip.get(driver_id)

    # ------------------------------------------------------------------
    # Periodic work

    async def tick(self) -> list[str]:
        """One animation step; moved positions are fanned out."""
        moved = self.animator.tick()
        if self.broadcaster is not None:
            if moved:
                snapshot = self.animator.snapshot()
                await self.broadcaster.publish_positions([
                    DriverPosition(
                        id=d, lat=snapshot[d].lat, lng=snapshot[d].lng, bearing=snapshot[d].bearing,
                    ).model_dump()
                    for d in moved
                ])
            await self.broadcaster.flush_state()
        return moved

    async def evaluate_routes(self, now: float | None = None) -> None:
        """Dwell check, retry of missing routes, then pending reroutes."""
        if now is None:
            now = self._clock()
        for driver_id in self.follower.poll(now):
            state = self.follower.get(driver_id)
            self._log_route_event("reroute_requested", {"driver_id": driver_id, "trip_id": state.trip_id})

        missing = [s.driver_id for s in self.follower.states() if s.polyline is None]
        await self._fetch_missing_routes(missing)
        await self.service_reroutes()

    async def service_reroutes(self) -> None:
        pending = [
            s.driver_id for s in self.follower.pending_reroutes()
            if s.driver_id not in self._reroutes_in_flight
        ]
        if pending:
            await asyncio.gather(*(self._reroute(d) for d in pending))

    async def _reroute(self, driver_id: str) -> None:
        state = self.follower.get(driver_id)
        if state is None:
            return
        trip = self.trips.get(state.trip_id)
        if state.actual_path_history:
            position = state.actual_path_history[-1]
        else:
            position = self.animator.target_of(driver_id)
        if trip is None or not trip.dropoff_location or position is None:
            self.follower.acknowledge_reroute(driver_id)
            return

        origin = format_latlng(position)
        logger.info("Rerouting driver %s from %s to %s", driver_id, origin, trip.dropoff_location)
        self._reroutes_in_flight.add(driver_id)
        self.reroutes_issued += 1
        try:
            result = await self.directions.refetch(trip.id, origin, trip.dropoff_location)
            self.on_route_load(trip.id, result, origin, trip.dropoff_location)
        except Exception as e:
            self.reroutes_failed += 1
            logger.warning("Reroute fetch failed for driver %s: %s", driver_id, e)
            self._log_route_event("reroute_failed", {"driver_id": driver_id, "trip_id": trip.id, "error": str(e)})
        finally:
            self._reroutes_in_flight.discard(driver_id)
            # The flag belongs to the state that raised it; a newer state keeps its own
            if self.follower.get(driver_id) is state:
                self.follower.acknowledge_reroute(driver_id)

    # ------------------------------------------------------------------
    # Views for the presentation layer

    def driver_status(self, driver_id: str) -> str:
        driver = self.drivers[driver_id]
        if not driver.active:
            return "offline"
        if driver_id in self._active_trip:
            return "en_route"
        return "idle"

    def live_driver(self, driver_id: str) -> LiveDriver | None:
        driver = self.drivers.get(driver_id)
        if driver is None:
            return None
        pos = self.animator.get(driver_id)
        if pos is not None:
            lat, lng, bearing = pos.lat, pos.lng, pos.bearing
            target = Coordinate(lat=pos.target.lat, lng=pos.target.lng)
        else:
            lat, lng, bearing, target = driver.lat or 0.0, driver.lng or 0.0, 0.0, None
        return LiveDriver(
            id=driver.id,
            name=driver.name,
            active=driver.active,
            status=self.driver_status(driver_id),
            lat=lat,
            lng=lng,
            target=target,
            bearing=bearing,
            last_update=driver.last_update,
            active_trip_id=self._active_trip.get(driver_id),
        )

    def live_drivers(self) -> list[LiveDriver]:
        return [self.live_driver(d) for d in self.drivers]

    def route_state(self, driver_id: str) -> RouteState | None:
        state = self.follower.get(driver_id)
        if state is None:
            return None
        eta = None
        route = self._routes.get(state.trip_id)
        if route is not None and state.polyline is not None:
            eta = self.eta_calculator.calculate(
                state.remaining_distance, route.result.distance_m, route.result.duration_s,
            )
        return RouteState(
            driver_id=state.driver_id,
            trip_id=state.trip_id,
            distance_along_route=state.distance_along_route,
            total_distance=state.total_distance,
            remaining_distance=state.remaining_distance,
            segment_index=state.segment_index,
            offset_m=state.last_offset_m,
            is_off_route=state.is_off_route,
            off_route_start_time=state.off_route_start_time,
            reroute_requested=state.reroute_requested,
            deviation_trail=_coords(state.deviation_trail),
            completed_deviations=[_coords(t) for t in state.completed_deviations],
            actual_path_history=_coords(state.actual_path_history),
            eta_seconds=eta,
        )

    def route_segments(self, driver_id: str) -> RouteSegments | None:
        """Driven / remaining / deviation paths for the driver's active trip."""
        trip_id = self._active_trip.get(driver_id)
        if trip_id is None:
            return None
        route = self._routes.get(trip_id)
        if route is None:
            return RouteSegments(trip_id=trip_id)

        points = list(route.polyline.points)
        segments = RouteSegments(
            trip_id=trip_id,
            pickup=_coords([route.result.start_location])[0] if route.result.start_location else None,
            dropoff=_coords([route.result.end_location])[0] if route.result.end_location else None,
        )

        state = self.follower.get(driver_id)
        if state is None or state.trip_id != trip_id or state.polyline is None:
            segments.remaining = _coords(points)
            return segments

        if len(state.actual_path_history) > 1:
            segments.driven = _coords(state.actual_path_history)
        else:
            driven = points[: state.segment_index + 1]
            pos = self.animator.get(driver_id)
            if pos is not None:
                driven.append(pos.position)
            segments.driven = _coords(driven)

        segments.remaining = _coords(points[state.segment_index:])
        progress, _, _ = state.polyline.position_at(state.distance_along_route)
        segments.progress = _coords([progress])[0]
        deviations = [_coords(t) for t in state.completed_deviations]
        if state.is_off_route and len(state.deviation_trail) > 1:
            deviations.append(_coords(state.deviation_trail))
        segments.deviations = deviations
        return segments

    def _cluster_points(self) -> list[tuple[str, LatLng]]:
        snapshot = self.animator.snapshot()
        return [(d, snapshot[d].position) for d in self.drivers if d in snapshot]

    def clusters(self, viewport: Viewport) -> list[ClusterPoint | Cluster]:
        return self.clusterer.query(viewport, self._cluster_points)

    def expansion_zoom(self, cluster_id: int) -> int:
        return self.clusterer.expansion_zoom(cluster_id)

    async def publish_fleet(self) -> None:
        if self.broadcaster is None:
            return
        await self.broadcaster.publish_fleet(
            [d.model_dump(mode="json") for d in self.live_drivers()],
            [t.model_dump(mode="json") for t in self.trips.values()],
        )

    # ------------------------------------------------------------------
    # Diagnostics

    def _log_route_event(self, kind: str, payload: dict) -> None:
        event = {
            "ts": datetime.datetime.now(datetime.timezone.utc).isoformat(),
            "kind": kind,
            **payload,
        }
        self._route_events.append(event)

    def get_route_events(self, limit: int = 100) -> dict:
        events = list(self._route_events)[-max(1, min(limit, 500)):]
        counts: dict[str, int] = {}
        for e in self._route_events:
            k = e.get("kind", "unknown")
            counts[k] = counts.get(k, 0) + 1
        return {
            "events_total": len(self._route_events),
            "counts": counts,
            "latest": events,
        }

    def get_diagnostics(self) -> dict:
        states = self.follower.states()
        return {
            "drivers": len(self.drivers),
            "animated": len(self.animator),
            "active_trips": len(self.trips),
            "routes": len(self._routes),
            "selected": sorted(self.selected),
            "followed": len(states),
            "off_route": sum(1 for s in states if s.is_off_route),
            "reroutes_pending": sum(1 for s in states if s.reroute_requested),
            "reroutes_requested": self.follower.reroutes_requested,
            "reroutes_issued": self.reroutes_issued,
            "reroutes_failed": self.reroutes_failed,
            "stale_results": self.stale_results,
            "cluster_recomputes": self.clusterer.recomputes,
            "directions_cache": self.directions.stats(),
        }
