"""Per-driver route following: progress, off-route detection and reroute requests.

One RouteFollowingState exists per followed driver, bound to that driver's
current active trip. Each GPS fix is projected onto the trip's planned
polyline. Progress only moves forward until the route is replaced. A fix
outside the corridor opens a deviation trail; returning inside closes it.
A deviation that outlives the dwell time raises a reroute request, at most
once per rate-limit window per driver. The request stays raised until the
caller acknowledges it.
"""

import logging
import time
from dataclasses import dataclass, field

from livetrack.core.geo import LatLng
from livetrack.core.route_matcher import RoutePolyline

logger = logging.getLogger(__name__)

# Max perpendicular distance (meters) from the route still counted as on route
CORRIDOR_M = 50.0
# How long a deviation must last before it is worth a reroute (GPS noise debounce)
DWELL_SECONDS = 10.0
# Min time between two reroute requests for the same driver
REROUTE_INTERVAL_SECONDS = 30.0


@dataclass
class RouteFollowingState:
    driver_id: str
    trip_id: str
    polyline: RoutePolyline | None = None
    distance_along_route: float = 0.0
    total_distance: float = 0.0
    segment_index: int = 0
    is_off_route: bool = False
    off_route_start_time: float | None = None
    reroute_requested: bool = False
    deviation_trail: list[LatLng] = field(default_factory=list)
    completed_deviations: list[list[LatLng]] = field(default_factory=list)
    actual_path_history: list[LatLng] = field(default_factory=list)
    last_offset_m: float | None = None

    @property
    def remaining_distance(self) -> float:
        return max(self.total_distance - self.distance_along_route, 0.0)


class RouteFollower:
    """Holds the route-following state of every followed driver."""

    def __init__(
        self,
        corridor_m: float = CORRIDOR_M,
        dwell_seconds: float = DWELL_SECONDS,
        reroute_interval_seconds: float = REROUTE_INTERVAL_SECONDS,
        clock=time.monotonic,
    ) -> None:
        self.corridor_m = corridor_m
        self.dwell_seconds = dwell_seconds
        self.reroute_interval_seconds = reroute_interval_seconds
        self._clock = clock
        self._states: dict[str, RouteFollowingState] = {}
        # Rate-limit gate, per driver; outlives individual states
        self._last_reroute_at: dict[str, float] = {}
        self.reroutes_requested = 0

    def __contains__(self, driver_id: str) -> bool:
        return driver_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def get(self, driver_id: str) -> RouteFollowingState | None:
        return self._states.get(driver_id)

    def states(self) -> list[RouteFollowingState]:
        return list(self._states.values())

    def start(
        self, driver_id: str, trip_id: str, polyline: RoutePolyline | None = None,
    ) -> RouteFollowingState:
        """Begin following `driver_id` on `trip_id`.

        An existing state for the same trip is kept; a state for another
        trip is replaced.
        """
        state = self._states.get(driver_id)
        if state is not None and state.trip_id == trip_id:
            if polyline is not None and state.polyline is None:
                self._attach(state, polyline)
            return state

        state = RouteFollowingState(driver_id=driver_id, trip_id=trip_id)
        if polyline is not None:
            self._attach(state, polyline)
        self._states[driver_id] = state
        logger.info("Following driver %s on trip %s", driver_id, trip_id)
        return state

    def set_route(
        self, driver_id: str, polyline: RoutePolyline, now: float | None = None,
    ) -> RouteFollowingState | None:
        """Attach a route, or reset progress against a replacement route.

        History (actual path, completed deviations) is kept across a reroute,
        and an open deviation trail is closed into the history. The pending
        reroute flag is left for the caller to acknowledge.
        """
        state = self._states.get(driver_id)
        if state is None:
            return None
        if state.polyline is None:
            self._attach(state, polyline)
        else:
            self._close_deviation(state)
            self._attach(state, polyline)
            state.distance_along_route = 0.0
            state.segment_index = 0
            state.last_offset_m = None
            logger.info(
                "Driver %s route replaced on trip %s (%.0f m)",
                driver_id, state.trip_id, polyline.total_distance,
            )

        # Place the driver on the new route from the latest known fix
        if state.actual_path_history:
            if now is None:
                now = self._clock()
            self._evaluate(state, state.actual_path_history[-1], now, record=False)
        return state

    def update(self, driver_id: str, point: LatLng, now: float | None = None) -> RouteFollowingState | None:
        """Feed one GPS fix. Returns None if the driver is not followed."""
        state = self._states.get(driver_id)
        if state is None:
            return None
        if now is None:
            now = self._clock()
        self._evaluate(state, LatLng(point[0], point[1]), now, record=True)
        return state

    def poll(self, now: float | None = None) -> list[str]:
        """Re-check dwell for drivers sitting off route without new fixes.

        Returns the drivers whose reroute request was raised by this call.
        """
        if now is None:
            now = self._clock()
        raised = []
        for state in self._states.values():
            if self._check_reroute(state, now):
                raised.append(state.driver_id)
        return raised

    def acknowledge_reroute(self, driver_id: str) -> bool:
        """Clear a pending reroute request once a new routing fetch was issued."""
        state = self._states.get(driver_id)
        if state is None or not state.reroute_requested:
            return False
        state.reroute_requested = False
        logger.info("Reroute acknowledged for driver %s", driver_id)
        return True

    def pending_reroutes(self) -> list[RouteFollowingState]:
        return [s for s in self._states.values() if s.reroute_requested]

    def discard(self, driver_id: str) -> RouteFollowingState | None:
        state = self._states.pop(driver_id, None)
        if state is not None:
            logger.info("Stopped following driver %s (trip %s)", driver_id, state.trip_id)
        return state

    def retain(self, active: dict[str, str]) -> list[str]:
        """Discard states whose driver is gone or has moved to another trip.

        `active` maps driver_id -> active trip_id. Returns discarded ids.
        """
        dropped = [
            driver_id for driver_id, state in self._states.items()
            if active.get(driver_id) != state.trip_id
        ]
        for driver_id in dropped:
            self.discard(driver_id)
        return dropped

    # ------------------------------------------------------------------

    @staticmethod
    def _attach(state: RouteFollowingState, polyline: RoutePolyline) -> None:
        state.polyline = polyline
        state.total_distance = polyline.total_distance

    def _evaluate(self, state: RouteFollowingState, point: LatLng, now: float, record: bool) -> None:
        if record:
            state.actual_path_history.append(point)

        if state.polyline is None:
            return

        proj = state.polyline.project(point)
        state.last_offset_m = proj.offset_m
        if proj.segment_index > state.segment_index:
            state.segment_index = proj.segment_index
        if proj.distance_along_m > state.distance_along_route:
            state.distance_along_route = proj.distance_along_m

        if proj.offset_m > self.corridor_m:
            if not state.is_off_route:
                state.is_off_route = True
                state.off_route_start_time = now
                state.deviation_trail = []
                logger.info(
                    "Driver %s off route on trip %s (%.0f m from segment %d)",
                    state.driver_id, state.trip_id, proj.offset_m, proj.segment_index,
                )
            if record:
                state.deviation_trail.append(point)
        elif state.is_off_route:
            self._close_deviation(state)
            logger.info("Driver %s back on route on trip %s", state.driver_id, state.trip_id)

        self._check_reroute(state, now)

    @staticmethod
    def _close_deviation(state: RouteFollowingState) -> None:
        if state.deviation_trail:
            state.completed_deviations.append(state.deviation_trail)
        state.deviation_trail = []
        state.is_off_route = False
        state.off_route_start_time = None

    def _check_reroute(self, state: RouteFollowingState, now: float) -> bool:
        if not state.is_off_route or state.reroute_requested or state.off_route_start_time is None:
            return False
        if now - state.off_route_start_time < self.dwell_seconds:
            return False
        last = self._last_reroute_at.get(state.driver_id)
        if last is not None and now - last < self.reroute_interval_seconds:
            return False

        state.reroute_requested = True
        self._last_reroute_at[state.driver_id] = now
        self.reroutes_requested += 1
        logger.info(
            "Reroute requested for driver %s on trip %s (off route %.0fs)",
            state.driver_id, state.trip_id, now - state.off_route_start_time,
        )
        return True
