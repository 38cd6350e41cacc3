"""Restore requests and restore job status."""

from __future__ import annotations

from fastapi import APIRouter

from pgcluster.api.deps import Owner, http_error
from pgcluster.api.schemas import RestoreRequest
from pgcluster.backup.restore import RestoreService
from pgcluster.errors import PgClusterError
from pgcluster.models import RestoreJob

router = APIRouter(tags=["restores"])

_service: RestoreService | None = None


def init_router(service: RestoreService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> RestoreService:
    assert _service is not None, "RestoreService not initialized"
    return _service


@router.post(
    "/api/clusters/{cluster_id}/backups/{backup_id}/restore",
    response_model=RestoreJob,
    status_code=202,
)
def request_restore(
    cluster_id: str,
    backup_id: str,
    body: RestoreRequest | None = None,
    owner: Owner = None,
) -> RestoreJob:
    body = body or RestoreRequest()
    try:
        return _svc().request_restore(
            cluster_id,
            backup_id,
            target_time=body.target_time,
            create_new_cluster=body.create_new_cluster,
            new_cluster_name=body.new_cluster_name,
            owner=owner,
        )
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/api/clusters/{cluster_id}/restore-jobs", response_model=list[RestoreJob])
def list_restore_jobs(cluster_id: str, owner: Owner = None) -> list[RestoreJob]:
    try:
        return _svc().list_jobs(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/api/restore-jobs/{job_id}", response_model=RestoreJob)
def get_restore_job(job_id: str, owner: Owner = None) -> RestoreJob:
    try:
        return _svc().get_job(job_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e
