"""Helpers shared by the API routers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Header, HTTPException

from pgcluster.errors import (
    InfrastructureError,
    InvalidRequestError,
    NotFoundError,
    PgClusterError,
    StateConflictError,
)

# Caller identity. Authentication happens in front of the control plane.
Owner = Annotated[str | None, Header(alias="X-Owner")]


def http_error(exc: PgClusterError) -> HTTPException:
    """Map a service error onto the matching HTTP status."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, InvalidRequestError):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, StateConflictError):
        if exc.dependent_count is not None:
            return HTTPException(
                status_code=409,
                detail={"message": str(exc), "dependent_count": exc.dependent_count},
            )
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, InfrastructureError):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=502, detail=str(exc))
