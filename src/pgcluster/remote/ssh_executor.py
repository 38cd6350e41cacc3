"""SshExecutor: runs commands and uploads files over SSH via paramiko.

Host keys are checked against the trust store on every connection. A
mismatch aborts the connection before authentication and is never retried.
Transient network errors (refused, reset, timed out, unreachable) are
retried a bounded number of times with a linearly growing delay; every
other failure surfaces immediately.
"""

from __future__ import annotations

import logging
import posixpath
import socket
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

import paramiko

from pgcluster.errors import RemoteCommandError
from pgcluster.remote.executor import CommandResult
from pgcluster.trust.store import HostKeyMismatchError, TrustStore, TrustVerdict, fingerprint

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TRANSIENT_MARKERS = (
    "connection refused",
    "connection reset",
    "connection timed out",
    "timed out",
    "timeout",
    "no route to host",
    "network is unreachable",
    "temporarily unavailable",
    "socket exception",
    "broken pipe",
    "unable to connect",
)


class TrustOnFirstUsePolicy(paramiko.MissingHostKeyPolicy):
    """Delegate host-key acceptance to a :class:`TrustStore`.

    The client is created without any known-hosts entries, so paramiko
    consults this policy on every connection.
    """

    def __init__(self, store: TrustStore, host: str) -> None:
        self._store = store
        self._host = host

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        blob = key.asbytes()
        verdict = self._store.verify(self._host, key.get_name(), blob)
        if verdict is TrustVerdict.MISMATCH:
            pinned = self._store.get(self._host)
            raise HostKeyMismatchError(
                self._host,
                expected=pinned.fingerprint if pinned else "unknown",
                presented=fingerprint(blob),
            )


def is_transient(exc: BaseException) -> bool:
    """Return ``True`` for network errors worth retrying."""
    if isinstance(exc, HostKeyMismatchError | paramiko.AuthenticationException):
        return False
    if isinstance(exc, socket.timeout | TimeoutError | ConnectionError):
        return True
    if isinstance(exc, paramiko.ssh_exception.NoValidConnectionsError):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


class SshExecutor:
    """Remote executor backed by paramiko."""

    def __init__(
        self,
        trust_store: TrustStore,
        username: str = "root",
        key_filename: str | None = None,
        port: int = 22,
        default_timeout: float = 30.0,
        connect_timeout: float = 10.0,
        max_attempts: int = 3,
        retry_delay: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
        client_factory: Callable[[], paramiko.SSHClient] = paramiko.SSHClient,
    ) -> None:
        self._trust = trust_store
        self._username = username
        self._key_filename = key_filename
        self._port = port
        self._default_timeout = default_timeout
        self._connect_timeout = connect_timeout
        self._max_attempts = max(1, max_attempts)
        self._retry_delay = retry_delay
        self._sleep = sleep
        self._client_factory = client_factory

    # ------------------------------------------------------------------
    # RemoteExecutor protocol
    # ------------------------------------------------------------------

    def execute(self, host: str, command: str, timeout: float | None = None) -> CommandResult:
        effective = timeout if timeout is not None else self._default_timeout

        def run(client: paramiko.SSHClient) -> CommandResult:
            _, stdout, stderr = client.exec_command(command, timeout=effective)
            try:
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
            except TimeoutError:
                # the command may still be running remotely; never re-run it
                return CommandResult(exit_code=-1, stderr=f"Command timed out after {effective:.0f}s")
            code = stdout.channel.recv_exit_status()
            return CommandResult(exit_code=code, stdout=out, stderr=err)

        result = self._with_retry(host, "command", run)
        logger.debug("SSH %s: %r -> exit %d", host, command, result.exit_code)
        return result

    def upload(self, host: str, content: str, remote_path: str, mode: int | None = None) -> None:
        parent = posixpath.dirname(remote_path)
        if parent:
            self.execute(host, f"mkdir -p '{parent}'").check(f"mkdir {parent} on {host}")

        def put(client: paramiko.SSHClient) -> None:
            sftp = client.open_sftp()
            try:
                with sftp.file(remote_path, "w") as fh:
                    fh.write(content)
                if mode is not None:
                    sftp.chmod(remote_path, mode)
            finally:
                sftp.close()

        self._with_retry(host, f"upload of {remote_path}", put)
        logger.debug("Uploaded %d bytes to %s:%s", len(content), host, remote_path)

    def is_reachable(self, host: str) -> bool:
        """Open and close a session with a short timeout.

        A host-key mismatch is not "unreachable": it propagates so callers
        stop waiting instead of polling an impostor.
        """
        try:
            with self._session(host, connect_timeout=5.0):
                return True
        except HostKeyMismatchError:
            raise
        except (paramiko.SSHException, OSError) as exc:
            logger.debug("Host %s not reachable yet: %s", host, exc)
            return False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, host: str, connect_timeout: float | None = None) -> Iterator[paramiko.SSHClient]:
        client = self._client_factory()
        client.set_missing_host_key_policy(TrustOnFirstUsePolicy(self._trust, host))
        timeout = connect_timeout if connect_timeout is not None else self._connect_timeout
        try:
            client.connect(
                hostname=host,
                port=self._port,
                username=self._username,
                key_filename=self._key_filename,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                allow_agent=False,
                look_for_keys=self._key_filename is None,
            )
            yield client
        finally:
            client.close()

    def _with_retry(self, host: str, what: str, action: Callable[[paramiko.SSHClient], T]) -> T:
        for attempt in range(1, self._max_attempts + 1):
            try:
                with self._session(host) as client:
                    return action(client)
            except HostKeyMismatchError:
                raise
            except (paramiko.SSHException, OSError) as exc:
                if attempt < self._max_attempts and is_transient(exc):
                    delay = self._retry_delay * attempt
                    logger.warning(
                        "SSH %s to %s failed (attempt %d/%d), retrying in %.1fs: %s",
                        what, host, attempt, self._max_attempts, delay, exc,
                    )
                    self._sleep(delay)
                    continue
                raise RemoteCommandError(f"SSH {what} to {host} failed: {exc}") from exc
        msg = f"SSH {what} to {host} failed"
        raise RemoteCommandError(msg)
