"""Tests for ClusterIndex and ViewportClusterer."""

import pytest

from livetrack.core.cluster_index import Cluster, ClusterIndex, ClusterPoint, Viewport, ViewportClusterer
from livetrack.core.geo import LatLng

WORLD = (-180, -85, 180, 85)
FULL_WORLD = (-180, -90, 180, 90)

EKB_A = ("a", LatLng(56.8389, 60.600))
EKB_B = ("b", LatLng(56.8389, 60.601))  # ~61 m east of a
NEW_YORK = ("ny", LatLng(40.7128, -74.0060))


def test_nearby_points_cluster_at_low_zoom():
    """Test that two close points merge into one cluster at a low zoom."""
    index = ClusterIndex()
    assert index.load([EKB_A, EKB_B, NEW_YORK]) == 3

    features = index.get_clusters(WORLD, 2)
    clusters = [f for f in features if isinstance(f, Cluster)]
    points = [f for f in features if isinstance(f, ClusterPoint)]
    assert len(clusters) == 1
    assert clusters[0].count == 2
    assert abs(clusters[0].lat - 56.8389) < 1e-6
    assert abs(clusters[0].lng - 60.6005) < 1e-6
    assert [p.id for p in points] == ["ny"]


def test_points_separate_at_max_zoom():
    """Test that every point is its own feature at max zoom."""
    index = ClusterIndex()
    index.load([EKB_A, EKB_B, NEW_YORK])
    features = index.get_clusters(WORLD, 20)
    assert sorted(f.id for f in features) == ["a", "b", "ny"]


def test_expansion_zoom():
    """Test the zoom at which a cluster splits."""
    index = ClusterIndex()
    index.load([EKB_A, EKB_B, NEW_YORK])
    cluster = next(f for f in index.get_clusters(WORLD, 2) if isinstance(f, Cluster))
    zoom = index.expansion_zoom(cluster.cluster_id)
    assert zoom == 16

    # One zoom below the expansion zoom the pair is still merged
    assert any(isinstance(f, Cluster) for f in index.get_clusters(WORLD, zoom - 1))
    assert not any(isinstance(f, Cluster) for f in index.get_clusters(WORLD, zoom))


def test_expansion_zoom_capped_at_max_zoom():
    """Test that coincident points report max zoom as expansion zoom."""
    index = ClusterIndex()
    index.load([("a", LatLng(56.8389, 60.6)), ("b", LatLng(56.8389, 60.6))])
    cluster = index.get_clusters(WORLD, 0)[0]
    assert isinstance(cluster, Cluster)
    assert index.expansion_zoom(cluster.cluster_id) == 20


def test_children():
    """Test that a cluster's children are the merged points."""
    index = ClusterIndex()
    index.load([EKB_A, EKB_B, NEW_YORK])
    cluster = next(f for f in index.get_clusters(WORLD, 2) if isinstance(f, Cluster))
    children = index.get_children(cluster.cluster_id)
    assert sorted(c.id for c in children) == ["a", "b"]


def test_unknown_cluster():
    """Test that unknown cluster ids raise KeyError."""
    index = ClusterIndex()
    index.load([EKB_A])
    with pytest.raises(KeyError):
        index.expansion_zoom(42)
    with pytest.raises(KeyError):
        index.get_children(42)


def test_invalid_points_are_excluded():
    """Test that zero and NaN coordinates never reach the index."""
    index = ClusterIndex()
    kept = index.load([EKB_A, ("zero", LatLng(0.0, 0.0)), ("nan", LatLng(float("nan"), 60.6))])
    assert kept == 1
    assert [f.id for f in index.get_clusters(WORLD, 20)] == ["a"]


def test_full_world_viewport_with_poles():
    """Test that a viewport reaching both poles returns every point."""
    index = ClusterIndex()
    index.load([EKB_A, NEW_YORK])
    features = index.get_clusters(FULL_WORLD, 2)
    assert sorted(f.id for f in features) == ["a", "ny"]


def test_polar_points_are_clustered():
    """Test that points at the poles load and sit on the map edge."""
    index = ClusterIndex()
    assert index.load([("north", LatLng(90.0, 10.0)), ("south", LatLng(-90.0, 10.0)), EKB_A]) == 3
    features = index.get_clusters(FULL_WORLD, 20)
    assert sorted(f.id for f in features) == ["a", "north", "south"]
    north = next(f for f in features if f.id == "north")
    assert north.lat > 85


def test_bbox_filters_points():
    """Test that only points inside the bbox are returned."""
    index = ClusterIndex()
    index.load([EKB_A, EKB_B, NEW_YORK])
    features = index.get_clusters((-80, 35, -70, 45), 20)
    assert [f.id for f in features] == ["ny"]


def test_viewport_across_antimeridian():
    """Test a viewport whose west edge is east of its east edge."""
    index = ClusterIndex()
    index.load([("east", LatLng(60.0, 175.0)), ("west", LatLng(60.0, -175.0)), EKB_A])
    features = index.get_clusters((170, 50, -170, 70), 20)
    assert sorted(f.id for f in features) == ["east", "west"]


def test_clustering_is_deterministic():
    """Test that input order does not change the partition."""
    index = ClusterIndex()
    pts = [(f"d{i}", LatLng(56.80 + i * 0.001, 60.55 + i * 0.002)) for i in range(40)]
    index.load(pts)
    first = index.get_clusters(WORLD, 12)
    index.load(list(reversed(pts)))
    second = index.get_clusters(WORLD, 12)
    assert first == second
    assert sum(f.count if isinstance(f, Cluster) else 1 for f in first) == 40


def test_viewport_clusterer_recomputes_only_on_change():
    """Test that a repeated viewport reuses the last partition."""
    calls = []

    def points():
        calls.append(1)
        return [EKB_A, EKB_B]

    clusterer = ViewportClusterer()
    vp = Viewport(*WORLD, zoom=2)
    first = clusterer.query(vp, points)
    second = clusterer.query(vp, points)
    assert first == second
    assert clusterer.recomputes == 1
    assert len(calls) == 1

    clusterer.query(Viewport(*WORLD, zoom=20), points)
    assert clusterer.recomputes == 2

    clusterer.invalidate()
    clusterer.query(Viewport(*WORLD, zoom=20), points)
    assert clusterer.recomputes == 3
