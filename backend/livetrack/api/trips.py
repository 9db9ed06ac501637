"""Active trip REST API endpoints."""

from fastapi import APIRouter, HTTPException

from livetrack.schemas.fleet import Coordinate, LiveTrip

router = APIRouter(prefix="/api/trips", tags=["trips"])

# Will be set by main.py
tracker = None


@router.get("", response_model=list[LiveTrip])
async def list_trips():
    """Get all active trips (en_route, in_progress)."""
    if tracker is None:
        return []
    return list(tracker.trips.values())


@router.get("/{trip_id}/polyline", response_model=list[Coordinate])
async def get_trip_polyline(trip_id: str):
    """Current planned route of a trip as [{lat, lng}, ...]."""
    if tracker is None or trip_id not in tracker.trips:
        raise HTTPException(status_code=404, detail="Trip not found")
    points = tracker.get_route_polyline(trip_id)
    if points is None:
        raise HTTPException(status_code=404, detail="Route not loaded")
    return [Coordinate(lat=p.lat, lng=p.lng) for p in points]
