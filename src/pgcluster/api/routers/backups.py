"""Backup endpoints: create, list, delete, recovery window and metrics."""

from __future__ import annotations

from fastapi import APIRouter, Query

from pgcluster.api.deps import Owner, http_error
from pgcluster.api.schemas import BackupCreateRequest
from pgcluster.backup.engine import BackupEngine
from pgcluster.errors import PgClusterError
from pgcluster.models import Backup, BackupDeletionInfo, BackupMetrics, RecoveryWindow

router = APIRouter(prefix="/api/clusters", tags=["backups"])

_engine: BackupEngine | None = None


def init_router(engine: BackupEngine) -> None:
    global _engine  # noqa: PLW0603
    _engine = engine


def _svc() -> BackupEngine:
    assert _engine is not None, "BackupEngine not initialized"
    return _engine


@router.post("/{cluster_id}/backups", response_model=Backup, status_code=202)
def create_backup(
    cluster_id: str,
    body: BackupCreateRequest | None = None,
    owner: Owner = None,
) -> Backup:
    requested = body.backup_type if body else None
    try:
        return _svc().create_backup(cluster_id, requested, owner=owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/backups", response_model=list[Backup])
def list_backups(
    cluster_id: str,
    owner: Owner = None,
    include_deleted: bool = Query(False),
) -> list[Backup]:
    try:
        return _svc().list_backups(cluster_id, owner, include_deleted=include_deleted)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/backups/{backup_id}", response_model=Backup)
def get_backup(cluster_id: str, backup_id: str, owner: Owner = None) -> Backup:
    try:
        return _svc().get_backup(cluster_id, backup_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/backups/{backup_id}/deletion-info", response_model=BackupDeletionInfo)
def deletion_info(cluster_id: str, backup_id: str, owner: Owner = None) -> BackupDeletionInfo:
    try:
        return _svc().deletion_info(cluster_id, backup_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.delete("/{cluster_id}/backups/{backup_id}", response_model=BackupDeletionInfo)
def delete_backup(
    cluster_id: str,
    backup_id: str,
    owner: Owner = None,
    confirm: bool = Query(False, description="Also delete dependent backups"),
) -> BackupDeletionInfo:
    try:
        return _svc().delete_backup(cluster_id, backup_id, confirm=confirm, owner=owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/pitr-window", response_model=RecoveryWindow)
def recovery_window(cluster_id: str, owner: Owner = None) -> RecoveryWindow:
    try:
        return _svc().recovery_window(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/backup-metrics", response_model=BackupMetrics)
def backup_metrics(cluster_id: str, owner: Owner = None) -> BackupMetrics:
    try:
        return _svc().metrics(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e
