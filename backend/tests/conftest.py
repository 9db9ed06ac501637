"""Shared fakes for tracker-level tests: a manual clock, a data source and a routing provider."""

import asyncio
import datetime

import pytest

from livetrack.core.animator import PositionAnimator
from livetrack.core.directions import DirectionsCache, DirectionsError, DirectionsResult
from livetrack.core.fleet_tracker import FleetTracker
from livetrack.core.geo import LatLng, parse_latlng
from livetrack.core.route_follower import RouteFollower
from livetrack.schemas.fleet import DriverRecord, LiveTrip, TripStatus

# Straight east-west street in Yekaterinburg; 0.01 deg of longitude is ~609 m here
LAT0 = 56.8389
PICKUP = "56.838900,60.590000"
DROPOFF = "56.838900,60.610000"


class ManualClock:
    def __init__(self, t: float = 0.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t


class FakeSource:
    def __init__(self, drivers, trips) -> None:
        self.drivers = drivers
        self.trips = trips
        self.fail = False

    async def fetch_drivers(self):
        if self.fail:
            raise RuntimeError("database unavailable")
        return list(self.drivers)

    async def fetch_active_trips(self):
        if self.fail:
            raise RuntimeError("database unavailable")
        return list(self.trips)


class StraightLineProvider:
    """Routes are a straight line from origin to destination."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.fail = False
        self.gate: asyncio.Event | None = None

    async def route(self, origin: str, destination: str, mode: str = "driving") -> DirectionsResult:
        self.calls.append((origin, destination, mode))
        if self.gate is not None:
            await self.gate.wait()
        else:
            await asyncio.sleep(0)
        if self.fail:
            raise DirectionsError("provider down")
        start, end = parse_latlng(origin), parse_latlng(destination)
        return DirectionsResult(
            origin=origin,
            destination=destination,
            path=(start, end),
            distance_m=1200.0,
            duration_s=120.0,
            start_location=start,
            end_location=end,
        )


def make_drivers() -> list[DriverRecord]:
    ts = datetime.datetime(2024, 5, 1, 9, 0, tzinfo=datetime.timezone.utc)
    return [
        DriverRecord(id="d1", name="Anna", lat=LAT0, lng=60.59, last_update=ts, active=True),
        DriverRecord(id="d2", name="Boris", lat=56.85, lng=60.62, last_update=ts, active=True),
        DriverRecord(id="d3", name="Chen", lat=None, lng=None, last_update=None, active=False),
    ]


def make_trips() -> list[LiveTrip]:
    return [
        LiveTrip(
            id="t1",
            status=TripStatus.en_route,
            driver_id="d1",
            rider_id="r1",
            pickup_location=PICKUP,
            dropoff_location=DROPOFF,
        ),
    ]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def provider():
    return StraightLineProvider()


@pytest.fixture
def source():
    return FakeSource(make_drivers(), make_trips())


@pytest.fixture
def tracker(clock, provider, source):
    return FleetTracker(
        source,
        DirectionsCache(provider),
        None,
        animator=PositionAnimator(clock=clock),
        follower=RouteFollower(clock=clock),
        clock=clock,
    )


@pytest.fixture
def off_route_point():
    # ~500 m north of the street
    return LatLng(LAT0 + 0.0045, 60.60)
