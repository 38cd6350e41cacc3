"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from pgcluster.api.schemas import HealthResponse
from pgcluster.runtime import ControlPlane

router = APIRouter(tags=["health"])

_plane: ControlPlane | None = None
_version: str = "0.4.0"


def init_router(plane: ControlPlane, version: str = "0.4.0") -> None:
    global _plane, _version  # noqa: PLW0603
    _plane = plane
    _version = version


@router.get("/api/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    return HealthResponse(
        version=_version,
        workers=_plane.config.worker_count if _plane else 0,
        scheduled_jobs=len(_plane.scheduler.jobs) if _plane else 0,
    )
