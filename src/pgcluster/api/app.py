"""FastAPI application factory for the control-plane API."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from pgcluster import __version__
from pgcluster.api.routers import backups, clusters, exports, health, restores
from pgcluster.config import load_config
from pgcluster.runtime import ControlPlane

logger = logging.getLogger(__name__)


def create_app(plane: ControlPlane | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Services come from *plane* (or a control plane built from the
    discovered config) and are injected into each router via its
    ``init_router()`` function. Background loops are not started here.
    """
    if plane is None:
        plane = ControlPlane(load_config())

    app = FastAPI(
        title="pgcluster control plane",
        version=__version__,
        docs_url="/api/docs",
        openapi_url="/api/openapi.json",
    )

    clusters.init_router(plane.clusters)
    backups.init_router(plane.backups)
    restores.init_router(plane.restores)
    exports.init_router(plane.exports)
    health.init_router(plane, version=__version__)

    app.include_router(clusters.router)
    app.include_router(backups.router)
    app.include_router(restores.router)
    app.include_router(exports.router)
    app.include_router(health.router)

    logger.debug("API initialised for database %s", plane.config.db_path)
    return app
