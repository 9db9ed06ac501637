"""Driver REST API endpoints."""

from fastapi import APIRouter, HTTPException

from livetrack.schemas.fleet import LiveDriver, RouteSegments, RouteState

router = APIRouter(prefix="/api/drivers", tags=["drivers"])

# Will be set by main.py
tracker = None


def _require_driver(driver_id: str) -> None:
    if tracker is None or not tracker.is_tracked(driver_id):
        raise HTTPException(status_code=404, detail="Driver not found")


@router.get("", response_model=list[LiveDriver])
async def list_drivers(status: str | None = None):
    """Get all tracked drivers with their animated positions."""
    if tracker is None:
        return []
    drivers = tracker.live_drivers()
    if status:
        drivers = [d for d in drivers if d.status == status]
    return drivers


@router.get("/{driver_id}", response_model=LiveDriver)
async def get_driver(driver_id: str):
    _require_driver(driver_id)
    return tracker.live_driver(driver_id)


@router.post("/{driver_id}/selection", response_model=RouteState | None)
async def select_driver(driver_id: str):
    """Start following the driver's active trip."""
    _require_driver(driver_id)
    await tracker.select_driver(driver_id)
    return tracker.route_state(driver_id)


@router.delete("/{driver_id}/selection")
async def deselect_driver(driver_id: str):
    _require_driver(driver_id)
    tracker.deselect_driver(driver_id)
    return {"selected": False}


@router.get("/{driver_id}/route-state", response_model=RouteState)
async def get_route_state(driver_id: str):
    """Route-following state; 404 when the driver is not being followed."""
    _require_driver(driver_id)
    state = tracker.route_state(driver_id)
    if state is None:
        raise HTTPException(status_code=404, detail="Driver is not being followed")
    return state


@router.post("/{driver_id}/reroute-ack")
async def acknowledge_reroute(driver_id: str):
    _require_driver(driver_id)
    return {"cleared": tracker.clear_reroute_flag(driver_id)}


@router.get("/{driver_id}/route-segments", response_model=RouteSegments)
async def get_route_segments(driver_id: str):
    """Driven, remaining and deviation paths for the map layer."""
    _require_driver(driver_id)
    segments = tracker.route_segments(driver_id)
    if segments is None:
        raise HTTPException(status_code=404, detail="Driver has no active trip")
    return segments
