"""Redis snapshot store + WebSocket fan-out for fleet updates."""

import asyncio
import logging
import time

import orjson
import redis.asyncio as aioredis

from livetrack.config import settings

logger = logging.getLogger(__name__)


def snapshot_channel(org_id: str) -> str:
    return f"fleet:{org_id}:snapshots"


def state_key(org_id: str) -> str:
    return f"fleet:{org_id}:state"


class Broadcaster:
    """Fans position frames out to WebSocket subscribers every tick.

    The full fleet snapshot goes to Redis at most once per
    `state_write_interval` seconds; new connections start from it.
    """

    def __init__(
        self,
        org_id: str | None = None,
        state_write_interval: float | None = None,
        clock=time.monotonic,
    ) -> None:
        self.org_id = settings.org_id if org_id is None else org_id
        self.state_write_interval = (
            settings.state_write_interval_seconds if state_write_interval is None else state_write_interval
        )
        self._clock = clock
        self._redis: aioredis.Redis | None = None
        self._subscribers: set[asyncio.Queue] = set()
        self._last_state_write: float | None = None
        self._latest_snapshot: bytes | None = None
        self._state_dirty = False

    async def connect(self) -> None:
        self._redis = aioredis.from_url(settings.redis_url, decode_responses=False)

    async def close(self) -> None:
        if self._redis:
            await self._redis.aclose()

    def fan_out(self, payload: bytes) -> None:
        """Push a frame to every WebSocket subscriber, dropping stalled ones."""
        dead = set()
        for q in self._subscribers:
            try:
                q.put_nowait(payload)
            except asyncio.QueueFull:
                dead.add(q)
        self._subscribers -= dead

    async def publish_positions(self, positions: list[dict]) -> None:
        if not positions:
            return
        self.fan_out(orjson.dumps({"type": "positions", "drivers": positions}))

    async def publish_fleet(self, drivers: list[dict], trips: list[dict], force: bool = False) -> bool:
        """Fan out a full fleet snapshot; write it to Redis if the debounce allows.

        Returns True when the Redis write happened.
        """
        payload = orjson.dumps({"type": "fleet", "drivers": drivers, "trips": trips})
        self._latest_snapshot = payload
        self._state_dirty = True
        self.fan_out(payload)
        return await self.flush_state(force=force)

    async def flush_state(self, force: bool = False) -> bool:
        """Write the pending snapshot to Redis once the debounce window has passed."""
        if not self._state_dirty or self._latest_snapshot is None:
            return False
        now = self._clock()
        if not force and self._last_state_write is not None:
            if now - self._last_state_write < self.state_write_interval:
                return False
        self._last_state_write = now
        self._state_dirty = False

        if self._redis:
            try:
                await self._redis.set(state_key(self.org_id), self._latest_snapshot)
                await self._redis.publish(snapshot_channel(self.org_id), self._latest_snapshot)
            except Exception:
                logger.exception("Failed to publish fleet snapshot to Redis")
                return False
        return True

    async def get_current_state(self) -> bytes | None:
        """Latest fleet snapshot, from Redis if available."""
        if self._redis:
            try:
                data = await self._redis.get(state_key(self.org_id))
                if data:
                    return data
            except Exception:
                logger.exception("Failed to get state from Redis")
        return self._latest_snapshot

    def subscribe(self) -> asyncio.Queue:
        """Create a new subscriber queue for WebSocket fan-out."""
        q: asyncio.Queue = asyncio.Queue(maxsize=32)
        self._subscribers.add(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)
