"""Zoom-level marker clustering over Web Mercator, in the manner of supercluster.

Points are greedily merged bottom-up: level max_zoom + 1 holds the raw
points, and each lower level clusters the level above within a radius of
`radius` pixels at that zoom. Neighbours come from a Shapely STRtree per
level. ClusterIndex queries read one precomputed level; ViewportClusterer
reloads the index with current positions whenever the viewport changes.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Iterable

from shapely.geometry import Point
from shapely.strtree import STRtree

from livetrack.core.geo import LatLng, is_valid_coordinate

logger = logging.getLogger(__name__)

RADIUS_PX = 75
EXTENT_PX = 512
MIN_ZOOM = 0
MAX_ZOOM = 20
MIN_POINTS = 2


@dataclass(frozen=True)
class ClusterPoint:
    id: str
    lat: float
    lng: float


@dataclass(frozen=True)
class Cluster:
    cluster_id: int
    lat: float
    lng: float
    count: int


@dataclass(frozen=True)
class Viewport:
    west: float
    south: float
    east: float
    north: float
    zoom: float


@dataclass
class _Node:
    x: float
    y: float
    count: int
    point_id: str | None = None  # set on leaf nodes
    cluster_id: int | None = None  # set on cluster nodes
    zoom: float = math.inf  # last zoom at which this node was processed
    parent_id: int | None = None


@dataclass
class _ClusterRecord:
    zoom: int  # level the cluster was formed at
    children: list[_Node] = field(default_factory=list)


def _lng_x(lng: float) -> float:
    return lng / 360 + 0.5


def _lat_y(lat: float) -> float:
    sin = math.sin(lat * math.pi / 180)
    # Poles project to infinity; clamp to the map edge
    if sin >= 1:
        return 0.0
    if sin <= -1:
        return 1.0
    y = 0.5 - 0.25 * math.log((1 + sin) / (1 - sin)) / math.pi
    return min(max(y, 0.0), 1.0)


def _x_lng(x: float) -> float:
    return (x - 0.5) * 360


def _y_lat(y: float) -> float:
    y2 = (180 - y * 360) * math.pi / 180
    return 360 * math.atan(math.exp(y2)) / math.pi - 90


class ClusterIndex:
    """Immutable-after-load cluster hierarchy for one set of points."""

    def __init__(
        self,
        radius: float = RADIUS_PX,
        extent: float = EXTENT_PX,
        min_zoom: int = MIN_ZOOM,
        max_zoom: int = MAX_ZOOM,
        min_points: int = MIN_POINTS,
    ) -> None:
        self.radius = radius
        self.extent = extent
        self.min_zoom = min_zoom
        self.max_zoom = max_zoom
        self.min_points = max(min_points, 2)
        self._levels: dict[int, list[_Node]] = {}
        self._clusters: dict[int, _ClusterRecord] = {}

    def load(self, points: Iterable[tuple[str, LatLng]]) -> int:
        """Build the hierarchy; invalid coordinates are skipped. Returns points kept."""
        leaves = []
        for point_id, p in sorted(points, key=lambda item: item[0]):
            if not is_valid_coordinate(p.lat, p.lng):
                continue
            leaves.append(_Node(x=_lng_x(p.lng), y=_lat_y(p.lat), count=1, point_id=point_id))

        self._clusters = {}
        self._levels = {self.max_zoom + 1: leaves}
        nodes = leaves
        for z in range(self.max_zoom, self.min_zoom - 1, -1):
            nodes = self._cluster(nodes, z)
            self._levels[z] = nodes
        logger.debug("Cluster index built: %d points, %d clusters", len(leaves), len(self._clusters))
        return len(leaves)

    def get_clusters(self, bbox: tuple[float, float, float, float], zoom: float) -> list[ClusterPoint | Cluster]:
        """Points and clusters inside (west, south, east, north) at `zoom`."""
        west, south, east, north = bbox
        west = ((west + 180) % 360 + 360) % 360 - 180 if west < -180 or west > 180 else west
        east = ((east + 180) % 360 + 360) % 360 - 180 if east < -180 or east > 180 else east
        south = max(-90.0, min(90.0, south))
        north = max(-90.0, min(90.0, north))

        if west > east:
            # Viewport crosses the antimeridian
            return (
                self.get_clusters((west, south, 180.0, north), zoom)
                + self.get_clusters((-180.0, south, east, north), zoom)
            )

        nodes = self._levels.get(self._limit_zoom(zoom), [])
        min_x, max_x = _lng_x(west), _lng_x(east)
        min_y, max_y = _lat_y(north), _lat_y(south)
        return [
            self._to_feature(n) for n in nodes
            if min_x <= n.x <= max_x and min_y <= n.y <= max_y
        ]

    def get_children(self, cluster_id: int) -> list[ClusterPoint | Cluster]:
        record = self._clusters.get(cluster_id)
        if record is None:
            raise KeyError(cluster_id)
        return [self._to_feature(n) for n in record.children]

    def expansion_zoom(self, cluster_id: int) -> int:
        """Lowest zoom at which the cluster splits, capped at max_zoom."""
        record = self._clusters.get(cluster_id)
        if record is None:
            raise KeyError(cluster_id)
        zoom = record.zoom
        while zoom <= self.max_zoom:
            children = record.children
            zoom += 1
            if len(children) != 1 or children[0].cluster_id is None:
                break
            record = self._clusters[children[0].cluster_id]
        return min(zoom, self.max_zoom)

    # ------------------------------------------------------------------

    def _limit_zoom(self, zoom: float) -> int:
        return max(self.min_zoom, min(math.floor(zoom), self.max_zoom + 1))

    def _cluster(self, nodes: list[_Node], zoom: int) -> list[_Node]:
        if not nodes:
            return []
        r = self.radius / (self.extent * 2 ** zoom)
        geoms = [Point(n.x, n.y) for n in nodes]
        tree = STRtree(geoms)

        out: list[_Node] = []
        for i, p in enumerate(nodes):
            if p.zoom <= zoom:
                continue
            p.zoom = zoom

            hits = tree.query(geoms[i], predicate="dwithin", distance=r)
            neighbours = [
                nodes[j] for j in sorted(int(j) for j in hits)
                if j != i and nodes[j].zoom > zoom
            ]

            count = p.count + sum(b.count for b in neighbours)
            if not neighbours or count < self.min_points:
                out.append(p)
                for b in neighbours:
                    b.zoom = zoom
                    out.append(b)
                continue

            cluster_id = len(self._clusters)
            wx, wy = p.x * p.count, p.y * p.count
            members = [p]
            for b in neighbours:
                b.zoom = zoom
                wx += b.x * b.count
                wy += b.y * b.count
                members.append(b)
            for m in members:
                m.parent_id = cluster_id

            self._clusters[cluster_id] = _ClusterRecord(zoom=zoom, children=members)
            out.append(_Node(x=wx / count, y=wy / count, count=count, cluster_id=cluster_id))
        return out

    @staticmethod
    def _to_feature(node: _Node) -> ClusterPoint | Cluster:
        lat, lng = _y_lat(node.y), _x_lng(node.x)
        if node.cluster_id is not None:
            return Cluster(cluster_id=node.cluster_id, lat=lat, lng=lng, count=node.count)
        return ClusterPoint(id=node.point_id or "", lat=lat, lng=lng)


class ViewportClusterer:
    """Recomputes clusters only when the viewport or the point set changes."""

    def __init__(self, index: ClusterIndex | None = None) -> None:
        self.index = index or ClusterIndex()
        self._viewport: Viewport | None = None
        self._result: list[ClusterPoint | Cluster] = []
        self._dirty = True
        self.recomputes = 0

    def invalidate(self) -> None:
        """Force a rebuild on the next query (tracked set membership changed)."""
        self._dirty = True

    def query(self, viewport: Viewport, points) -> list[ClusterPoint | Cluster]:
        """Clusters for `viewport`; `points` is a callable returning (id, LatLng) pairs."""
        if not self._dirty and viewport == self._viewport:
            return self._result
        self.index.load(points())
        self._result = self.index.get_clusters(
            (viewport.west, viewport.south, viewport.east, viewport.north), viewport.zoom,
        )
        self._viewport = viewport
        self._dirty = False
        self.recomputes += 1
        return self._result

    def expansion_zoom(self, cluster_id: int) -> int:
        return self.index.expansion_zoom(cluster_id)
