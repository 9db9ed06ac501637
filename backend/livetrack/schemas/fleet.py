import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel


class TripStatus(str, Enum):
    scheduled = "scheduled"
    en_route = "en_route"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"
    no_show = "no_show"


# Only these trips take part in route following
ACTIVE_TRIP_STATUSES = (TripStatus.en_route, TripStatus.in_progress)

DriverStatus = Literal["idle", "en_route", "offline"]


class Coordinate(BaseModel):
    lat: float
    lng: float


class DriverRecord(BaseModel):
    """Driver as supplied by the data service."""
    id: str
    name: str
    lat: float | None = None
    lng: float | None = None
    last_update: datetime.datetime | None = None
    active: bool = True


class LiveTrip(BaseModel):
    id: str
    status: TripStatus
    driver_id: str | None = None
    rider_id: str | None = None
    pickup_location: str | None = None
    dropoff_location: str | None = None
    pickup_time: datetime.datetime | None = None
    actual_start_time: datetime.datetime | None = None


class LiveDriver(BaseModel):
    id: str
    name: str
    active: bool
    status: DriverStatus
    lat: float
    lng: float
    target: Coordinate | None = None
    bearing: float = 0.0
    last_update: datetime.datetime | None = None
    active_trip_id: str | None = None


class DriverPosition(BaseModel):
    id: str
    lat: float
    lng: float
    bearing: float


class RouteState(BaseModel):
    driver_id: str
    trip_id: str
    distance_along_route: float
    total_distance: float
    remaining_distance: float
    segment_index: int
    offset_m: float | None = None  # distance from the route at the last fix
    is_off_route: bool
    off_route_start_time: float | None = None
    reroute_requested: bool
    deviation_trail: list[Coordinate] = []
    completed_deviations: list[list[Coordinate]] = []
    actual_path_history: list[Coordinate] = []
    eta_seconds: int | None = None


class RouteSegments(BaseModel):
    trip_id: str
    driven: list[Coordinate] = []
    remaining: list[Coordinate] = []
    progress: Coordinate | None = None  # point on the route at distance_along_route
    deviations: list[list[Coordinate]] = []
    pickup: Coordinate | None = None
    dropoff: Coordinate | None = None


class ClusterFeature(BaseModel):
    kind: Literal["cluster", "point"]
    lat: float
    lng: float
    cluster_id: int | None = None
    count: int = 1
    driver_id: str | None = None


class ExpansionZoom(BaseModel):
    cluster_id: int
    zoom: int
