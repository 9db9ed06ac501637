"""Fixed-rate position animation toward the latest known driver positions."""

import logging
import time
from dataclasses import dataclass, replace

from livetrack.core.geo import LatLng, approx_sq_dist, bearing, interpolate, is_valid_coordinate, lerp_bearing

logger = logging.getLogger(__name__)

# Fraction of the remaining distance covered per tick (4 Hz -> ~1 s to settle)
LERP_FACTOR = 0.25
# Squared-degree distance under which an entity is at rest (~3.5 m)
STOP_THRESHOLD_SQ = 1e-9
# Only recompute bearing when the remaining move is large enough (~80 m),
# otherwise GPS jitter spins the marker
BEARING_UPDATE_THRESHOLD_SQ = 5e-7
# Fraction of the remaining turn applied per tick, along the shortest arc
BEARING_SMOOTHING = 0.5


@dataclass(frozen=True)
class AnimatedPosition:
    lat: float
    lng: float
    target: LatLng
    bearing: float = 0.0
    last_updated: float = 0.0

    @property
    def position(self) -> LatLng:
        return LatLng(self.lat, self.lng)


class PositionAnimator:
    """Owns current and target position per entity.

    Every write replaces the entity's AnimatedPosition as a whole, so a
    reader holding a snapshot never sees a half-updated coordinate pair.
    """

    def __init__(
        self,
        lerp_factor: float = LERP_FACTOR,
        stop_threshold_sq: float = STOP_THRESHOLD_SQ,
        bearing_update_threshold_sq: float = BEARING_UPDATE_THRESHOLD_SQ,
        bearing_smoothing: float = BEARING_SMOOTHING,
        clock=time.monotonic,
    ) -> None:
        if not 0 < lerp_factor <= 1:
            raise ValueError("lerp_factor must be in (0, 1]")
        self.lerp_factor = lerp_factor
        self.stop_threshold_sq = stop_threshold_sq
        self.bearing_update_threshold_sq = bearing_update_threshold_sq
        self.bearing_smoothing = bearing_smoothing
        self._clock = clock
        self._positions: dict[str, AnimatedPosition] = {}

    def __contains__(self, entity_id: str) -> bool:
        return entity_id in self._positions

    def __len__(self) -> int:
        return len(self._positions)

    def place(self, entity_id: str, point: LatLng, heading: float | None = None) -> bool:
        """Register an entity at rest at `point` unless it is already animated."""
        if entity_id in self._positions:
            return False
        if not is_valid_coordinate(point.lat, point.lng):
            return False
        self._positions[entity_id] = AnimatedPosition(
            lat=point.lat,
            lng=point.lng,
            target=point,
            bearing=heading or 0.0,
            last_updated=self._clock(),
        )
        return True

    def set_target(self, entity_id: str, target: LatLng, heading: float | None = None) -> bool:
        """Record a new destination. Unknown entities start at rest on the target."""
        if not is_valid_coordinate(target.lat, target.lng):
            logger.debug("Ignoring invalid target for %s: %s", entity_id, target)
            return False
        target = LatLng(target.lat, target.lng)
        existing = self._positions.get(entity_id)
        if existing is None:
            return self.place(entity_id, target, heading)
        self._positions[entity_id] = replace(existing, target=target, last_updated=self._clock())
        return True

    def retain(self, entity_ids) -> None:
        """Drop every entity not in `entity_ids`."""
        keep = set(entity_ids)
        for entity_id in [e for e in self._positions if e not in keep]:
            del self._positions[entity_id]

    def tick(self) -> list[str]:
        """Advance every moving entity one step. Returns ids that moved."""
        moved = []
        for entity_id, pos in list(self._positions.items()):
            dist_sq = approx_sq_dist(pos.position, pos.target)
            if dist_sq <= self.stop_threshold_sq:
                continue

            nxt = interpolate(pos.position, pos.target, self.lerp_factor)
            new_bearing = pos.bearing
            if dist_sq > self.bearing_update_threshold_sq:
                new_bearing = lerp_bearing(pos.bearing, bearing(pos.position, pos.target), self.bearing_smoothing)

            self._positions[entity_id] = replace(pos, lat=nxt.lat, lng=nxt.lng, bearing=new_bearing)
            moved.append(entity_id)
        return moved

    def get(self, entity_id: str) -> AnimatedPosition | None:
        return self._positions.get(entity_id)

    def target_of(self, entity_id: str) -> LatLng | None:
        pos = self._positions.get(entity_id)
        return pos.target if pos else None

    def snapshot(self) -> dict[str, AnimatedPosition]:
        """Copy of the position table; values are immutable."""
        return dict(self._positions)
