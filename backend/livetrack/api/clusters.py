"""Viewport clustering of driver markers."""

from fastapi import APIRouter, HTTPException, Query

from livetrack.core.cluster_index import Cluster, Viewport
from livetrack.schemas.fleet import ClusterFeature, ExpansionZoom

router = APIRouter(prefix="/api/clusters", tags=["clusters"])

# Will be set by main.py
tracker = None


@router.get("", response_model=list[ClusterFeature])
async def get_clusters(
    west: float = Query(-180, ge=-180, le=180),
    south: float = Query(-85, ge=-90, le=90),
    east: float = Query(180, ge=-180, le=180),
    north: float = Query(85, ge=-90, le=90),
    zoom: float = Query(10, ge=0, le=24),
):
    """Clusters and single drivers visible in the viewport."""
    if tracker is None:
        return []
    features = []
    for item in tracker.clusters(Viewport(west, south, east, north, zoom)):
        if isinstance(item, Cluster):
            features.append(ClusterFeature(
                kind="cluster", lat=item.lat, lng=item.lng,
                cluster_id=item.cluster_id, count=item.count,
            ))
        else:
            features.append(ClusterFeature(kind="point", lat=item.lat, lng=item.lng, driver_id=item.id))
    return features


@router.get("/{cluster_id}/expansion-zoom", response_model=ExpansionZoom)
async def get_expansion_zoom(cluster_id: int):
    """Zoom level at which the cluster splits apart."""
    if tracker is None:
        raise HTTPException(status_code=404, detail="Cluster not found")
    try:
        zoom = tracker.expansion_zoom(cluster_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Cluster not found")
    return ExpansionZoom(cluster_id=cluster_id, zoom=zoom)
