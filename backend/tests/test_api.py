"""Tests for the HTTP surface, mounted on a bare app with an in-memory tracker."""

import asyncio

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from livetrack.api import clusters, diagnostics, drivers, trips


@pytest.fixture
def client(tracker, monkeypatch):
    asyncio.run(tracker.load())
    for module in (drivers, trips, clusters, diagnostics):
        monkeypatch.setattr(module, "tracker", tracker)

    app = FastAPI()
    for module in (drivers, trips, clusters, diagnostics):
        app.include_router(module.router)
    return TestClient(app)


def test_list_and_get_drivers(client):
    """Test driver listing, status filter and lookup."""
    resp = client.get("/api/drivers")
    assert resp.status_code == 200
    assert {d["id"] for d in resp.json()} == {"d1", "d2", "d3"}

    resp = client.get("/api/drivers", params={"status": "idle"})
    assert [d["id"] for d in resp.json()] == ["d2"]

    resp = client.get("/api/drivers/d1")
    assert resp.json()["active_trip_id"] == "t1"
    assert client.get("/api/drivers/nobody").status_code == 404


def test_selection_and_route_state(client):
    """Test selection, route state and reroute acknowledgement endpoints."""
    assert client.get("/api/drivers/d1/route-state").status_code == 404

    resp = client.post("/api/drivers/d1/selection")
    assert resp.status_code == 200
    assert resp.json()["trip_id"] == "t1"
    assert resp.json()["is_off_route"] is False

    state = client.get("/api/drivers/d1/route-state").json()
    assert state["reroute_requested"] is False
    assert client.post("/api/drivers/d1/reroute-ack").json() == {"cleared": False}

    segments = client.get("/api/drivers/d1/route-segments").json()
    assert len(segments["remaining"]) == 2

    assert client.delete("/api/drivers/d1/selection").status_code == 200
    assert client.get("/api/drivers/d1/route-state").status_code == 404


def test_trips_and_polyline(client):
    """Test trip listing and the loaded route polyline."""
    assert [t["id"] for t in client.get("/api/trips").json()] == ["t1"]
    # Route is only fetched once the driver is selected
    assert client.get("/api/trips/t1/polyline").status_code == 404

    client.post("/api/drivers/d1/selection")
    points = client.get("/api/trips/t1/polyline").json()
    assert points[0] == {"lat": 56.8389, "lng": 60.59}
    assert client.get("/api/trips/t9/polyline").status_code == 404


def test_clusters(client):
    """Test the viewport cluster query and expansion zoom."""
    features = client.get("/api/clusters", params={"zoom": 2}).json()
    assert len(features) == 1
    assert features[0]["kind"] == "cluster"
    assert features[0]["count"] == 2

    cluster_id = features[0]["cluster_id"]
    resp = client.get(f"/api/clusters/{cluster_id}/expansion-zoom")
    assert resp.status_code == 200
    assert 2 < resp.json()["zoom"] <= 20
    assert client.get("/api/clusters/999/expansion-zoom").status_code == 404

    points = client.get("/api/clusters", params={"zoom": 20}).json()
    assert {p["driver_id"] for p in points} == {"d1", "d2"}


def test_diagnostics(client):
    """Test that diagnostics merge tracker and ingestion counters."""
    diag = client.get("/api/diagnostics").json()
    assert diag["drivers"] == 3
    assert "directions_cache" in diag
    assert client.get("/api/diagnostics/events").json()["events_total"] == 0
