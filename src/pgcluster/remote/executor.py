"""Remote command protocol and result model.

The RemoteExecutor protocol defines the interface every component uses to
run commands on cluster nodes and push files to them. Any object with
``execute()``, ``upload()`` and ``is_reachable()`` satisfies it.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from pgcluster.errors import RemoteCommandError


class CommandResult(BaseModel):
    """Exit code and captured output of a remote command."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def error_output(self) -> str:
        """stderr when present, otherwise stdout."""
        return self.stderr if self.stderr.strip() else self.stdout

    def check(self, description: str) -> CommandResult:
        """Return self, or raise :class:`RemoteCommandError` if the command failed."""
        if not self.success:
            raise RemoteCommandError(f"{description} failed", result=self)
        return self


@runtime_checkable
class RemoteExecutor(Protocol):
    """Protocol for the remote command and file-transfer primitive."""

    def execute(self, host: str, command: str, timeout: float | None = None) -> CommandResult:
        """Run *command* on *host* and return its result.

        Raises :class:`RemoteCommandError` if the host cannot be reached.
        """
        ...

    def upload(self, host: str, content: str, remote_path: str, mode: int | None = None) -> None:
        """Write *content* to *remote_path*, creating parent directories."""
        ...

    def is_reachable(self, host: str) -> bool:
        """Return ``True`` if an authenticated session can be opened."""
        ...
