"""Realtime feed payloads, validated at the ingestion boundary."""

import datetime
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class LocationEvent(BaseModel):
    """Low-latency position broadcast from a driver device."""
    type: Literal["location"] = "location"
    id: str
    lat: float
    lng: float
    heading: float | None = None
    timestamp: datetime.datetime | None = None
    org_id: str | None = None


class DriverRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    org_id: str | None = None
    full_name: str | None = None
    current_lat: float | None = None
    current_lng: float | None = None
    last_location_update: datetime.datetime | None = None
    active: bool | None = None


class TripRow(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    org_id: str | None = None
    status: str | None = None
    driver_id: str | None = None


ChangeType = Literal["INSERT", "UPDATE", "DELETE"]


class DriverChangeEvent(BaseModel):
    type: Literal["driver_change"] = "driver_change"
    event_type: ChangeType
    new: DriverRow | None = None
    old: DriverRow | None = None

    @property
    def org_id(self) -> str | None:
        row = self.new or self.old
        return row.org_id if row else None


class TripChangeEvent(BaseModel):
    type: Literal["trip_change"] = "trip_change"
    event_type: ChangeType
    new: TripRow | None = None
    old: TripRow | None = None

    @property
    def org_id(self) -> str | None:
        row = self.new or self.old
        return row.org_id if row else None


RealtimeEvent = Annotated[
    Union[LocationEvent, DriverChangeEvent, TripChangeEvent],
    Field(discriminator="type"),
]

realtime_event_adapter = TypeAdapter(RealtimeEvent)
