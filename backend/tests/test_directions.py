"""Tests for DirectionsCache."""

import asyncio

import pytest

from livetrack.core.directions import DirectionsCache, DirectionsError, DirectionsKey, DirectionsResult
from livetrack.core.geo import LatLng

PICKUP = "56.838900,60.590000"
DROPOFF = "56.838900,60.610000"


class CountingProvider:
    def __init__(self, failures: int = 0, empty: bool = False) -> None:
        self.calls: list[tuple[str, str]] = []
        self.failures = failures
        self.empty = empty

    async def route(self, origin, destination, mode="driving"):
        self.calls.append((origin, destination))
        await asyncio.sleep(0)
        if self.failures:
            self.failures -= 1
            raise DirectionsError("provider timeout")
        path = () if self.empty else (LatLng(56.8389, 60.59), LatLng(56.8389, 60.61))
        return DirectionsResult(origin=origin, destination=destination, path=path, distance_m=1218, duration_s=150)


def test_identical_requests_fetch_once():
    """Test that an identical request is served from the cache."""
    async def run():
        provider = CountingProvider()
        cache = DirectionsCache(provider)
        first = await cache.get("t1", PICKUP, DROPOFF)
        second = await cache.get("t1", PICKUP, DROPOFF)
        return provider, cache, first, second

    provider, cache, first, second = asyncio.run(run())
    assert len(provider.calls) == 1
    assert first is second
    assert cache.hits == 1
    assert cache.misses == 1


def test_concurrent_misses_share_one_fetch():
    """Test that concurrent misses share one provider call."""
    async def run():
        provider = CountingProvider()
        cache = DirectionsCache(provider)
        results = await asyncio.gather(
            cache.get("t1", PICKUP, DROPOFF),
            cache.get("t1", PICKUP, DROPOFF),
        )
        return provider, results

    provider, (a, b) = asyncio.run(run())
    assert len(provider.calls) == 1
    assert a is b


def test_trip_id_is_part_of_the_key():
    """Test that two trips with the same endpoints fetch separately."""
    async def run():
        provider = CountingProvider()
        cache = DirectionsCache(provider)
        await cache.get("t1", PICKUP, DROPOFF)
        await cache.get("t2", PICKUP, DROPOFF)
        return provider, cache

    provider, cache = asyncio.run(run())
    assert len(provider.calls) == 2
    assert len(cache) == 2


def test_refetch_always_fetches_under_new_origin():
    """Test that refetch bypasses the cache and supersedes older keys."""
    new_origin = "56.843400,60.600000"

    async def run():
        provider = CountingProvider()
        cache = DirectionsCache(provider)
        original = await cache.get("t1", PICKUP, DROPOFF)
        rerouted = await cache.refetch("t1", new_origin, DROPOFF)
        again = await cache.refetch("t1", new_origin, DROPOFF)
        return provider, cache, original, rerouted, again

    provider, cache, original, rerouted, again = asyncio.run(run())
    assert len(provider.calls) == 3
    assert rerouted is not original
    assert rerouted.origin == new_origin
    assert again is not rerouted

    # Append-only: the original entry is still there, just superseded
    old_key = DirectionsKey("t1", PICKUP, DROPOFF)
    new_key = DirectionsKey("t1", new_origin, DROPOFF)
    assert cache.peek(old_key) is original
    assert cache.latest_key("t1") == new_key
    assert not cache.is_current(old_key)
    assert cache.is_current(new_key)

    # A repeated refetch under the same key replaces just that entry
    assert cache.peek(new_key) is again
    assert len(cache) == 2


def test_failure_is_raised_and_not_cached():
    """Test that a provider failure propagates and caches nothing."""
    async def run():
        provider = CountingProvider(failures=1)
        cache = DirectionsCache(provider)
        with pytest.raises(DirectionsError):
            await cache.get("t1", PICKUP, DROPOFF)
        assert len(cache) == 0
        result = await cache.get("t1", PICKUP, DROPOFF)
        return provider, cache, result

    provider, cache, result = asyncio.run(run())
    assert len(provider.calls) == 2
    assert result.path
    assert cache.failures == 1
    assert cache.stats()["entries"] == 1


def test_empty_route_is_an_error():
    """Test that an empty path is treated as a failure."""
    async def run():
        cache = DirectionsCache(CountingProvider(empty=True))
        with pytest.raises(DirectionsError):
            await cache.get("t1", PICKUP, DROPOFF)
        return cache

    cache = asyncio.run(run())
    assert len(cache) == 0
