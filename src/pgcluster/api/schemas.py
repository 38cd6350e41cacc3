"""Pydantic request and response schemas for the control-plane API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from pgcluster.models import (
    Cluster,
    ClusterStatus,
    Node,
    ProvisioningStep,
)

# --- Generic ---


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    workers: int = 0
    scheduled_jobs: int = 0


# --- Clusters ---


class ClusterCreateRequest(BaseModel):
    """Body of ``POST /api/clusters``. One region per node (1 or 3)."""

    name: str = Field(..., min_length=1, max_length=100)
    node_regions: list[str] = Field(..., min_length=1)
    node_size: str = "cx23"
    postgres_version: str = "16"
    slug: str | None = None


class ClusterResponse(BaseModel):
    """A cluster as returned by the API. Passwords are never included."""

    cluster_id: str
    owner: str
    name: str
    slug: str
    plan: str
    status: ClusterStatus
    postgres_version: str
    node_count: int
    node_size: str
    region: str
    node_regions: list[str]
    hostname: str | None = None
    port: int
    error_message: str | None = None
    provisioning_step: ProvisioningStep | None = None
    provisioning_progress: int | None = None
    nodes: list[Node] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> ClusterResponse:
        return cls.model_validate(
            cluster.model_dump(exclude={"postgres_password", "replicator_password"})
        )


# --- Backups ---


class BackupCreateRequest(BaseModel):
    """Body of ``POST /api/clusters/{id}/backups``.

    ``backup_type`` accepts full/diff/incr (and their long aliases); when
    omitted the tool picks an incremental backup.
    """

    backup_type: str | None = None


# --- Restores ---


class RestoreRequest(BaseModel):
    """Body of ``POST /api/clusters/{id}/backups/{backup_id}/restore``."""

    target_time: datetime | None = None
    create_new_cluster: bool = True
    new_cluster_name: str | None = Field(None, max_length=100)
