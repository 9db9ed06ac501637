"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from livetrack.api import clusters, diagnostics, drivers, trips, ws
from livetrack.config import settings
from livetrack.core.animator import PositionAnimator
from livetrack.core.broadcaster import Broadcaster
from livetrack.core.cluster_index import ClusterIndex, ViewportClusterer
from livetrack.core.directions import DirectionsCache
from livetrack.core.fleet_source import FleetDataSource
from livetrack.core.fleet_tracker import FleetTracker
from livetrack.core.ingestion import RealtimeIngestionAdapter
from livetrack.core.osrm_client import OsrmClient
from livetrack.core.route_follower import RouteFollower
from livetrack.core.scheduler import create_scheduler
from livetrack.db.session import async_session, engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def build_tracker(source, directions: DirectionsCache, broadcaster: Broadcaster | None) -> FleetTracker:
    """Assemble a tracker from settings."""
    return FleetTracker(
        source,
        directions,
        broadcaster,
        animator=PositionAnimator(
            lerp_factor=settings.lerp_factor,
            stop_threshold_sq=settings.stop_threshold_sq,
            bearing_update_threshold_sq=settings.bearing_update_threshold_sq,
            bearing_smoothing=settings.bearing_smoothing,
        ),
        follower=RouteFollower(
            corridor_m=settings.corridor_m,
            dwell_seconds=settings.dwell_seconds,
            reroute_interval_seconds=settings.reroute_interval_seconds,
        ),
        clusterer=ViewportClusterer(ClusterIndex(
            radius=settings.cluster_radius_px,
            extent=settings.cluster_extent,
            min_zoom=settings.cluster_min_zoom,
            max_zoom=settings.cluster_max_zoom,
            min_points=settings.cluster_min_points,
        )),
        follow_all_trips=settings.follow_all_trips,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    if not settings.org_id:
        logger.warning("ORG_ID is not set - no drivers will match")

    # Initialize services
    osrm = OsrmClient()
    directions = DirectionsCache(osrm)
    broadcaster = Broadcaster()
    await broadcaster.connect()

    source = FleetDataSource(async_session, settings.org_id)
    tracker = build_tracker(source, directions, broadcaster)
    ingestion = RealtimeIngestionAdapter(tracker)

    # Wire up API modules
    ws.broadcaster = broadcaster
    drivers.tracker = tracker
    trips.tracker = tracker
    clusters.tracker = tracker
    diagnostics.tracker = tracker
    diagnostics.ingestion = ingestion

    # Initial fleet load; failures are retried by the refresh job
    await tracker.load()
    await ingestion.start()

    scheduler = create_scheduler(tracker)
    scheduler.start()
    logger.info("Live tracking started for org %s - animating at %.0f Hz", settings.org_id, settings.animation_hz)

    yield

    # Shutdown
    scheduler.shutdown(wait=False)
    await ingestion.stop()
    await osrm.close()
    await broadcaster.close()
    await engine.dispose()
    logger.info("Live tracking shut down")


app = FastAPI(
    title="Fleet Live Tracking",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(drivers.router)
app.include_router(trips.router)
app.include_router(clusters.router)
app.include_router(diagnostics.router)
app.include_router(ws.router)


@app.get("/api/health")
async def health():
    return {"status": "ok"}
