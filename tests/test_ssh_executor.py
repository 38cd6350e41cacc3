"""Tests for the paramiko-backed SshExecutor and host-key policy."""

from __future__ import annotations

import socket

import paramiko
import pytest

from fakes import Sleeper
from pgcluster.errors import RemoteCommandError
from pgcluster.remote.executor import CommandResult, RemoteExecutor
from pgcluster.remote.ssh_executor import SshExecutor, TrustOnFirstUsePolicy, is_transient
from pgcluster.trust.store import HostKeyMismatchError, InMemoryTrustStore, TrustVerdict


class FakeKey:
    def __init__(self, blob: bytes = b"host-key-1") -> None:
        self._blob = blob

    def asbytes(self) -> bytes:
        return self._blob

    def get_name(self) -> str:
        return "ssh-ed25519"


class FakeChannel:
    def __init__(self, code: int) -> None:
        self._code = code

    def recv_exit_status(self) -> int:
        return self._code


class FakeStream:
    def __init__(self, data: bytes = b"", code: int = 0, exc: Exception | None = None) -> None:
        self._data = data
        self._exc = exc
        self.channel = FakeChannel(code)

    def read(self) -> bytes:
        if self._exc is not None:
            raise self._exc
        return self._data


class FakeRemoteFile:
    def __init__(self, sftp: FakeSftp, path: str) -> None:
        self._sftp = sftp
        self._path = path

    def __enter__(self) -> FakeRemoteFile:
        return self

    def __exit__(self, *exc) -> None:
        return None

    def write(self, content: str) -> None:
        self._sftp.files[self._path] = content


class FakeSftp:
    def __init__(self) -> None:
        self.files: dict[str, str] = {}
        self.modes: dict[str, int] = {}
        self.closed = False

    def file(self, path: str, mode: str) -> FakeRemoteFile:
        return FakeRemoteFile(self, path)

    def chmod(self, path: str, mode: int) -> None:
        self.modes[path] = mode

    def close(self) -> None:
        self.closed = True


class FakeSshClient:
    """Scripted paramiko.SSHClient; consults the policy on every connect."""

    def __init__(self, world: World) -> None:
        self._world = world
        self._policy: paramiko.MissingHostKeyPolicy | None = None
        self.closed = False

    def set_missing_host_key_policy(self, policy: paramiko.MissingHostKeyPolicy) -> None:
        self._policy = policy

    def connect(self, hostname: str, **kwargs) -> None:
        self._world.connects.append((hostname, kwargs))
        if self._world.connect_errors:
            raise self._world.connect_errors.pop(0)
        self._policy.missing_host_key(self, hostname, self._world.key)

    def exec_command(self, command: str, timeout: float | None = None):
        self._world.commands.append((command, timeout))
        return None, self._world.stdout, self._world.stderr

    def open_sftp(self) -> FakeSftp:
        return self._world.sftp

    def close(self) -> None:
        self.closed = True


class World:
    def __init__(self) -> None:
        self.key = FakeKey()
        self.connect_errors: list[Exception] = []
        self.connects: list[tuple[str, dict]] = []
        self.commands: list[tuple[str, float | None]] = []
        self.stdout = FakeStream(b"ok\n")
        self.stderr = FakeStream(b"")
        self.sftp = FakeSftp()
        self.clients: list[FakeSshClient] = []

    def factory(self) -> FakeSshClient:
        client = FakeSshClient(self)
        self.clients.append(client)
        return client


@pytest.fixture
def world():
    return World()


@pytest.fixture
def trust():
    return InMemoryTrustStore()


@pytest.fixture
def ssh(world, trust, sleeper):
    return SshExecutor(
        trust,
        key_filename="/keys/id_ed25519",
        max_attempts=3,
        retry_delay=2.0,
        sleep=sleeper,
        client_factory=world.factory,
    )


class TestIsTransient:
    @pytest.mark.parametrize(
        "exc",
        [
            socket.timeout("timed out"),
            ConnectionRefusedError("refused"),
            ConnectionResetError("reset"),
            paramiko.SSHException("Error reading SSH protocol banner: Connection reset by peer"),
            OSError("[Errno 113] No route to host"),
        ],
    )
    def test_network_errors_are_transient(self, exc):
        assert is_transient(exc)

    @pytest.mark.parametrize(
        "exc",
        [
            paramiko.AuthenticationException("Authentication failed."),
            HostKeyMismatchError("h", "SHA256:a", "SHA256:b"),
            paramiko.SSHException("Incompatible ssh peer"),
        ],
    )
    def test_other_errors_are_permanent(self, exc):
        assert not is_transient(exc)


class TestTrustOnFirstUsePolicy:
    def test_pins_then_accepts(self, trust):
        policy = TrustOnFirstUsePolicy(trust, "203.0.113.1")
        policy.missing_host_key(None, "203.0.113.1", FakeKey())
        policy.missing_host_key(None, "203.0.113.1", FakeKey())
        assert trust.get("203.0.113.1") is not None

    def test_rejects_changed_key(self, trust):
        policy = TrustOnFirstUsePolicy(trust, "203.0.113.1")
        policy.missing_host_key(None, "203.0.113.1", FakeKey(b"original"))
        with pytest.raises(HostKeyMismatchError) as exc_info:
            policy.missing_host_key(None, "203.0.113.1", FakeKey(b"impostor"))
        assert exc_info.value.expected == trust.get("203.0.113.1").fingerprint


class TestSshExecutor:
    def test_satisfies_protocol(self, ssh):
        assert isinstance(ssh, RemoteExecutor)

    def test_execute_captures_output(self, ssh, world, trust):
        world.stdout = FakeStream(b"hello\n", code=0)
        result = ssh.execute("203.0.113.1", "echo hello", timeout=12)
        assert result == CommandResult(exit_code=0, stdout="hello\n", stderr="")
        assert world.commands == [("echo hello", 12)]
        assert trust.verify("203.0.113.1", "ssh-ed25519", b"host-key-1") is TrustVerdict.VERIFIED

    def test_execute_reports_nonzero_exit(self, ssh, world):
        world.stdout = FakeStream(b"", code=2)
        world.stderr = FakeStream(b"no such file\n")
        result = ssh.execute("203.0.113.1", "cat /missing")
        assert result.exit_code == 2
        assert result.error_output == "no such file\n"

    def test_connect_uses_configured_identity(self, ssh, world):
        ssh.execute("203.0.113.1", "true")
        hostname, kwargs = world.connects[0]
        assert hostname == "203.0.113.1"
        assert kwargs["username"] == "root"
        assert kwargs["key_filename"] == "/keys/id_ed25519"
        assert kwargs["look_for_keys"] is False
        assert all(c.closed for c in world.clients)

    def test_read_timeout_is_not_rerun(self, ssh, world):
        world.stdout = FakeStream(exc=TimeoutError())
        result = ssh.execute("203.0.113.1", "sleep 999", timeout=5)
        assert result.exit_code == -1
        assert "timed out" in result.stderr
        assert len(world.commands) == 1

    def test_transient_failures_are_retried(self, ssh, world, sleeper):
        world.connect_errors = [ConnectionRefusedError("refused"), socket.timeout("timed out")]
        result = ssh.execute("203.0.113.1", "true")
        assert result.success
        assert sleeper.calls == [2.0, 4.0]
        assert len(world.connects) == 3

    def test_retries_are_bounded(self, ssh, world, sleeper):
        world.connect_errors = [ConnectionRefusedError("refused")] * 5
        with pytest.raises(RemoteCommandError, match="refused"):
            ssh.execute("203.0.113.1", "true")
        assert len(world.connects) == 3
        assert sleeper.calls == [2.0, 4.0]

    def test_auth_failure_is_not_retried(self, ssh, world, sleeper):
        world.connect_errors = [paramiko.AuthenticationException("Authentication failed.")]
        with pytest.raises(RemoteCommandError):
            ssh.execute("203.0.113.1", "true")
        assert sleeper.calls == []

    def test_host_key_mismatch_is_never_retried(self, ssh, world, trust, sleeper):
        trust.verify("203.0.113.1", "ssh-ed25519", b"the real key")
        with pytest.raises(HostKeyMismatchError):
            ssh.execute("203.0.113.1", "true")
        assert world.commands == []
        assert sleeper.calls == []

    def test_upload_creates_parent_and_sets_mode(self, ssh, world):
        ssh.upload("203.0.113.1", "secret: x\n", "/etc/pgcluster/patroni.yml", mode=0o600)
        assert world.commands[0][0] == "mkdir -p '/etc/pgcluster'"
        assert world.sftp.files["/etc/pgcluster/patroni.yml"] == "secret: x\n"
        assert world.sftp.modes["/etc/pgcluster/patroni.yml"] == 0o600
        assert world.sftp.closed

    def test_is_reachable(self, ssh, world):
        assert ssh.is_reachable("203.0.113.1") is True
        world.connect_errors = [ConnectionRefusedError("refused")]
        assert ssh.is_reachable("203.0.113.1") is False

    def test_is_reachable_propagates_mismatch(self, ssh, trust):
        trust.verify("203.0.113.1", "ssh-ed25519", b"the real key")
        with pytest.raises(HostKeyMismatchError):
            ssh.is_reachable("203.0.113.1")
