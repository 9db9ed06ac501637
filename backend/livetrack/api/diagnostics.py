"""Diagnostics API for the tracking pipeline."""

from fastapi import APIRouter

router = APIRouter(prefix="/api/diagnostics", tags=["diagnostics"])

# Will be set by main.py
tracker = None
ingestion = None


@router.get("")
async def get_diagnostics():
    """Tracker, directions cache and ingestion counters."""
    if tracker is None:
        return {"error": "Tracker not initialized"}
    diag = tracker.get_diagnostics()
    if ingestion is not None:
        diag["ingestion"] = ingestion.stats()
    return diag


@router.get("/events")
async def get_route_events(limit: int = 100):
    """Recent route events (loads, reroutes, stale results, failures)."""
    if tracker is None:
        return {"error": "Tracker not initialized"}
    return tracker.get_route_events(limit=limit)
