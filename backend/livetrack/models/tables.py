"""Read-only mappings of the fleet data service tables."""

import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from livetrack.models.base import Base


class Driver(Base):
    __tablename__ = "drivers"
    __table_args__ = (
        Index("ix_drivers_org", "org_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    current_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    current_lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    last_location_update: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class Trip(Base):
    __tablename__ = "trips"
    __table_args__ = (
        Index("ix_trips_org_status", "org_id", "status"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    org_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # scheduled, en_route, in_progress, completed, cancelled, no_show
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    driver_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("drivers.id"), nullable=True)
    patient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    pickup_location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    dropoff_location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    pickup_time: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_start_time: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
