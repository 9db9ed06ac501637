"""Tenant-scoped reads of drivers and active trips from the fleet database."""

import logging

from sqlalchemy import select

from livetrack.models.tables import Driver, Trip
from livetrack.schemas.fleet import ACTIVE_TRIP_STATUSES, DriverRecord, LiveTrip, TripStatus

logger = logging.getLogger(__name__)


class FleetDataSource:
    """Fetches the tracked set for one organization. Errors propagate."""

    def __init__(self, session_factory, org_id: str) -> None:
        self.session_factory = session_factory
        self.org_id = org_id

    async def fetch_drivers(self) -> list[DriverRecord]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Driver).where(Driver.org_id == self.org_id).order_by(Driver.id)
            )
            rows = result.scalars().all()

        drivers = [
            DriverRecord(
                id=d.id,
                name=d.full_name or "",
                lat=d.current_lat,
                lng=d.current_lng,
                last_update=d.last_location_update,
                active=bool(d.active),
            )
            for d in rows
        ]
        logger.info("Fetched %d drivers for org %s", len(drivers), self.org_id)
        return drivers

    async def fetch_active_trips(self) -> list[LiveTrip]:
        statuses = [s.value for s in ACTIVE_TRIP_STATUSES]
        async with self.session_factory() as session:
            result = await session.execute(
                select(Trip)
                .where(Trip.org_id == self.org_id, Trip.status.in_(statuses))
                .order_by(Trip.pickup_time.nulls_last(), Trip.id)
            )
            rows = result.scalars().all()

        trips = []
        for t in rows:
            try:
                status = TripStatus(t.status)
            except ValueError:
                logger.debug("Skipping trip %s with unknown status %r", t.id, t.status)
                continue
            trips.append(LiveTrip(
                id=t.id,
                status=status,
                driver_id=t.driver_id,
                rider_id=t.patient_id,
                pickup_location=t.pickup_location,
                dropoff_location=t.dropoff_location,
                pickup_time=t.pickup_time,
                actual_start_time=t.actual_start_time,
            ))
        logger.info("Fetched %d active trips for org %s", len(trips), self.org_id)
        return trips
