"""APScheduler setup for periodic tasks."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


def create_scheduler(tracker) -> AsyncIOScheduler:
    """Create and configure the scheduler with all jobs."""
    from livetrack.config import settings

    scheduler = AsyncIOScheduler()

    # Animation ticks; a late tick is merged rather than replayed
    scheduler.add_job(
        tracker.tick,
        "interval",
        seconds=1.0 / settings.animation_hz,
        id="animate",
        name="Advance animated driver positions",
        max_instances=1,
        coalesce=True,
    )

    # Off-route dwell checks and pending reroutes
    scheduler.add_job(
        tracker.evaluate_routes,
        "interval",
        seconds=settings.route_eval_interval_seconds,
        id="evaluate_routes",
        name="Evaluate route following and reroutes",
        max_instances=1,
        coalesce=True,
    )

    # Full refetch behind the realtime feed
    scheduler.add_job(
        tracker.refresh_fleet,
        "interval",
        minutes=settings.fleet_refresh_minutes,
        id="refresh_fleet",
        name="Refresh drivers and active trips",
        max_instances=1,
    )

    return scheduler
