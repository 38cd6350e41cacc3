"""Logical export endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Response

from pgcluster.api.deps import Owner, http_error
from pgcluster.backup.export import ExportService
from pgcluster.errors import PgClusterError
from pgcluster.models import Export

router = APIRouter(prefix="/api/clusters", tags=["exports"])

_service: ExportService | None = None


def init_router(service: ExportService) -> None:
    global _service  # noqa: PLW0603
    _service = service


def _svc() -> ExportService:
    assert _service is not None, "ExportService not initialized"
    return _service


@router.post("/{cluster_id}/exports", response_model=Export, status_code=202)
def create_export(cluster_id: str, owner: Owner = None) -> Export:
    try:
        return _svc().create_export(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/exports", response_model=list[Export])
def list_exports(cluster_id: str, owner: Owner = None) -> list[Export]:
    try:
        return _svc().list_exports(cluster_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.get("/{cluster_id}/exports/{export_id}", response_model=Export)
def get_export(cluster_id: str, export_id: str, owner: Owner = None) -> Export:
    try:
        return _svc().get_export(cluster_id, export_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.post("/{cluster_id}/exports/{export_id}/refresh-url", response_model=Export)
def refresh_download_url(cluster_id: str, export_id: str, owner: Owner = None) -> Export:
    try:
        return _svc().refresh_download_url(cluster_id, export_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e


@router.delete("/{cluster_id}/exports/{export_id}", status_code=204)
def delete_export(cluster_id: str, export_id: str, owner: Owner = None) -> Response:
    try:
        _svc().delete_export(cluster_id, export_id, owner)
    except PgClusterError as e:
        raise http_error(e) from e
    return Response(status_code=204)
