"""Project GPS positions onto a planned route using Shapely linear referencing."""

import bisect
import logging
from dataclasses import dataclass
from typing import Sequence

from shapely.geometry import LineString, Point

from livetrack.core.geo import LatLng, LocalProjection, bearing, interpolate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Projection:
    segment_index: int  # polyline[i] -> polyline[i + 1]
    distance_along_m: float  # meters from the route start to the projected point
    offset_m: float  # perpendicular distance from the route
    point: LatLng  # projected point on the route


class RoutePolyline:
    """Immutable planned path of one trip, measured in meters.

    Coordinates are projected to a local metric plane around the first
    point; Shapely does the nearest-point work in that plane.
    """

    def __init__(self, points: Sequence[LatLng]) -> None:
        if not points:
            raise ValueError("route polyline needs at least one point")
        self.points: tuple[LatLng, ...] = tuple(LatLng(p[0], p[1]) for p in points)
        self._proj = LocalProjection(self.points[0])
        xy = [self._proj.to_xy(p) for p in self.points]

        cumulative = [0.0]
        for (x0, y0), (x1, y1) in zip(xy, xy[1:]):
            cumulative.append(cumulative[-1] + ((x1 - x0) ** 2 + (y1 - y0) ** 2) ** 0.5)
        self.cumulative: tuple[float, ...] = tuple(cumulative)
        self.total_distance: float = cumulative[-1]

        self._line: LineString | None = LineString(xy) if len(xy) >= 2 else None

    def __len__(self) -> int:
        return len(self.points)

    @property
    def segment_count(self) -> int:
        return max(len(self.points) - 1, 0)

    def project(self, point: LatLng) -> Projection:
        """Nearest point on the route to `point`."""
        x, y = self._proj.to_xy(point)
        if self._line is None:
            ox, oy = self._proj.to_xy(self.points[0])
            offset = ((x - ox) ** 2 + (y - oy) ** 2) ** 0.5
            return Projection(segment_index=0, distance_along_m=0.0, offset_m=offset, point=self.points[0])

        pt = Point(x, y)
        along = self._line.project(pt)
        offset = self._line.distance(pt)
        snapped = self._line.interpolate(along)
        return Projection(
            segment_index=self.segment_index_at(along),
            distance_along_m=along,
            offset_m=offset,
            point=self._proj.to_latlng(snapped.x, snapped.y),
        )

    def segment_index_at(self, distance_m: float) -> int:
        """Index of the segment containing the point `distance_m` from the start."""
        if self.segment_count == 0:
            return 0
        idx = bisect.bisect_right(self.cumulative, distance_m) - 1
        return max(0, min(idx, self.segment_count - 1))

    def position_at(self, distance_m: float) -> tuple[LatLng, int, float]:
        """(point, segment_index, bearing) at `distance_m` along the route, clamped to its ends."""
        if self.segment_count == 0:
            return self.points[0], 0, 0.0
        if distance_m <= 0:
            return self.points[0], 0, bearing(self.points[0], self.points[1])
        if distance_m >= self.total_distance:
            last = self.segment_count - 1
            return self.points[-1], last, bearing(self.points[last], self.points[last + 1])

        idx = self.segment_index_at(distance_m)
        start, end = self.points[idx], self.points[idx + 1]
        seg_len = self.cumulative[idx + 1] - self.cumulative[idx]
        t = (distance_m - self.cumulative[idx]) / seg_len if seg_len > 0 else 0.0
        return interpolate(start, end, t), idx, bearing(start, end)
