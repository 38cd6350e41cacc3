"""Error classes shared by the provisioning and data-protection services.

Three families are distinguished:

- ``RemoteCommandError``: a command on a node failed; the captured output
  travels with the exception for diagnosis.
- ``StateConflictError``: the request conflicts with current state (an
  operation is already in flight, the cluster is in the wrong status, the
  backup is the last full one). The caller can correct it; nothing retries it.
- ``InfrastructureError``: the platform did not converge within its budget
  (no quorum, no leader, nodes unreachable). The whole task is aborted.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pgcluster.remote.executor import CommandResult


class PgClusterError(Exception):
    """Base class for control-plane errors."""


class NotFoundError(PgClusterError):
    """Raised when a cluster, backup, restore job or export does not exist."""


class InvalidRequestError(PgClusterError):
    """Raised when caller input is malformed."""


class StateConflictError(PgClusterError):
    """Raised when an operation conflicts with the current persisted state."""

    def __init__(self, message: str, dependent_count: int | None = None) -> None:
        super().__init__(message)
        self.dependent_count = dependent_count


class InfrastructureError(PgClusterError):
    """Raised when cluster infrastructure fails to converge within its budget."""


class RemoteCommandError(PgClusterError):
    """Raised when a command executed on a node fails."""

    def __init__(self, message: str, result: CommandResult | None = None) -> None:
        super().__init__(message)
        self.result = result

    def __str__(self) -> str:
        base = super().__str__()
        if self.result is None:
            return base
        detail = self.result.error_output.strip()
        if not detail:
            return f"{base} (exit {self.result.exit_code})"
        return f"{base} (exit {self.result.exit_code}): {detail}"
