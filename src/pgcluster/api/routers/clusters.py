"""Cluster lifecycle endpoints."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from pgcluster.api.deps import Owner, http_error
from pgcluster.api.schemas import ClusterCreateRequest, ClusterResponse
from pgcluster.errors import PgClusterError
from pgcluster.models import ClusterHealth
from pgcluster.provisioning.service import ClusterService

router = APIRouter(prefix="/api/clusters", tags=["clusters"])

_service: ClusterService | None = None


def init_router(service: ClusterService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> ClusterService:
    assert _service is not None, "ClusterService not initialized"
    return _service


@router.post("", response_model=ClusterResponse, status_code=201)
def create_cluster(body: ClusterCreateRequest, owner: Owner = None) -> ClusterResponse:
    if not owner:
        raise HTTPException(status_code=400, detail="X-Owner header is required")
    try:
        cluster = _svc().create_cluster(
            owner,
            body.name,
            body.node_regions,
            node_size=body.node_size,
            postgres_version=body.postgres_version,
            slug=body.slug,
        )
    except PgClusterError as e:
        raise http_error(e) from e
    return ClusterResponse.from_cluster(cluster)


@router.get("", response_model=list[ClusterResponse])
def list_clusters(owner: Owner = None) -> list[ClusterResponse]:
    return [ClusterResponse.from_cluster(c) for c in _svc().list_clusters(owner)]


@router.get("/{cluster_id}", response_model=ClusterResponse)
def get_cluster(cluster_id: str, owner: Owner = None) -> ClusterResponse:
    try:
        return ClusterResponse.from_cluster(_svc().get_cluster(cluster_id, owner))
    except PgClusterError as e:
        raise http_error(e) from e


@router.delete("/{cluster_id}", response_model=ClusterResponse, status_code=202)
def delete_cluster(cluster_id: str, owner: Owner = None) -> ClusterResponse:
    try:
        return ClusterResponse.from_cluster(_svc().delete_cluster(cluster_id, owner))
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/health", response_model=ClusterHealth)
def cluster_health(cluster_id: str, owner: Owner = None) -> ClusterHealth:
    try:
        return _svc().cluster_health(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e
