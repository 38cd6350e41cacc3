"""Leader discovery: ask each node's failover controller for its role.

Every node is queried concurrently with a per-node timeout, and one overall
deadline (slightly longer than the per-node timeout) bounds the whole
fan-out. Results that arrive after the deadline are ignored. The first node
that reports itself leader wins; ordering between nodes is not a priority.

Role parsing is structured: the controller's JSON ``role`` value is
normalised and mapped onto :class:`NodeRole`. ``primary``, ``master`` and
``leader`` are treated as the same steady-state role.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import urllib.error
import urllib.request
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed, wait
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from pgcluster.models import Node, NodeHealth, NodeRole
from pgcluster.remote.executor import RemoteExecutor

logger = logging.getLogger(__name__)

CONTROLLER_PATH = "/patroni"
DEFAULT_CONTROLLER_PORT = 8008

LEADER_ROLES = frozenset({"primary", "master", "leader"})
REPLICA_ROLES = frozenset({"replica", "standby", "sync_standby", "standby_leader"})


class AddressError(ValueError):
    """Raised when a node has no usable IP address."""


class ControllerStatus(BaseModel):
    """Parsed response of the failover controller's status endpoint."""

    role: NodeRole = NodeRole.UNKNOWN
    state: str | None = None
    raw_role: str | None = None

    @property
    def is_running_leader(self) -> bool:
        return self.role is NodeRole.LEADER and self.state == "running"


def normalize_role(value: Any) -> NodeRole:
    """Map a controller role label onto :class:`NodeRole`."""
    if not isinstance(value, str):
        return NodeRole.UNKNOWN
    label = value.strip().lower().replace("-", "_").replace(" ", "_")
    if label in LEADER_ROLES:
        return NodeRole.LEADER
    if label in REPLICA_ROLES:
        return NodeRole.REPLICA
    return NodeRole.UNKNOWN


def parse_controller_status(payload: str | bytes | dict[str, Any]) -> ControllerStatus:
    """Parse a status response. Malformed payloads yield an UNKNOWN role."""
    data: Any = payload
    if isinstance(payload, bytes | str):
        try:
            data = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return ControllerStatus()
    if not isinstance(data, dict):
        return ControllerStatus()

    raw_role = data.get("role")
    state = data.get("state")
    return ControllerStatus(
        role=normalize_role(raw_role),
        state=state.strip().lower() if isinstance(state, str) else None,
        raw_role=raw_role if isinstance(raw_role, str) else None,
    )


def node_address(node: Node) -> str:
    """Public IP, else private IP. Raises :class:`AddressError` if neither is valid."""
    candidate = node.public_ip or node.private_ip
    if not candidate:
        raise AddressError(f"Node {node.name} has no IP address")
    try:
        ipaddress.ip_address(candidate)
    except ValueError as exc:
        raise AddressError(f"Node {node.name} has an invalid IP address: {candidate!r}") from exc
    return candidate


@runtime_checkable
class StatusSource(Protocol):
    """Anything that can fetch the raw controller status of a node."""

    def fetch(self, node: Node, timeout: float) -> str: ...


class ControllerStatusClient:
    """Query the controller over HTTP, falling back to curl over SSH.

    The fallback covers nodes whose controller port is firewalled from the
    control plane but reachable locally.
    """

    def __init__(
        self,
        executor: RemoteExecutor | None = None,
        port: int = DEFAULT_CONTROLLER_PORT,
        opener: Callable[..., Any] = urllib.request.urlopen,
    ) -> None:
        self._executor = executor
        self._port = port
        self._open = opener

    def fetch(self, node: Node, timeout: float) -> str:
        address = node_address(node)
        host = f"[{address}]" if ":" in address else address
        url = f"http://{host}:{self._port}{CONTROLLER_PATH}"
        try:
            with self._open(url, timeout=timeout) as resp:
                return resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            # Non-2xx responses still carry the status document
            return exc.read().decode("utf-8", errors="replace")
        except (urllib.error.URLError, OSError) as exc:
            if self._executor is None:
                raise
            logger.debug("Direct status query to %s failed (%s), trying SSH", node.name, exc)

        command = (
            f"curl -s --max-time {max(1, int(timeout))} "
            f"http://localhost:{self._port}{CONTROLLER_PATH}"
        )
        result = self._executor.execute(address, command, timeout=timeout)
        return result.check(f"status query on {node.name}").stdout


class LeaderDiscovery:
    """Concurrent, deadline-bounded role discovery across a set of nodes."""

    def __init__(
        self,
        source: StatusSource,
        timeout: float = 10.0,
        deadline_grace: float = 2.0,
    ) -> None:
        self._source = source
        self._timeout = timeout
        self._deadline = timeout + deadline_grace

    @property
    def deadline(self) -> float:
        return self._deadline

    def status(self, node: Node) -> ControllerStatus:
        """Status of a single node. Unreachable nodes report UNKNOWN."""
        try:
            return parse_controller_status(self._source.fetch(node, self._timeout))
        except Exception as exc:
            logger.debug("Status query for %s failed: %s", node.name, exc)
            return ControllerStatus()

    def find_leader(self, nodes: Sequence[Node]) -> Node | None:
        """Return the first node that reports itself leader, or ``None``."""
        if not nodes:
            return None
        pool = ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix="leader-probe")
        futures = {pool.submit(self.status, node): node for node in nodes}
        try:
            for future in as_completed(futures, timeout=self._deadline):
                if future.result().role is NodeRole.LEADER:
                    return futures[future]
        except TimeoutError:
            logger.warning(
                "Leader discovery hit its %.1fs deadline with %d/%d nodes answered",
                self._deadline, sum(f.done() for f in futures), len(nodes),
            )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return None

    def find_leader_address(self, nodes: Sequence[Node]) -> str | None:
        """Address of the leader, falling back to the first node.

        The fallback is advisory only: it keeps DNS pointed somewhere
        reachable while an election is in progress.
        """
        leader = self.find_leader(nodes)
        if leader is not None:
            return node_address(leader)
        if not nodes:
            return None
        fallback = nodes[0]
        logger.warning("No leader found among %d nodes, falling back to %s", len(nodes), fallback.name)
        return node_address(fallback)

    def probe(self, nodes: Sequence[Node]) -> list[NodeHealth]:
        """Per-node health for every node, in input order."""
        if not nodes:
            return []
        pool = ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix="leader-probe")
        futures = [pool.submit(self.status, node) for node in nodes]
        try:
            wait(futures, timeout=self._deadline)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        health: list[NodeHealth] = []
        for node, future in zip(nodes, futures, strict=True):
            status = future.result() if future.done() and not future.cancelled() else ControllerStatus()
            try:
                address: str | None = node_address(node)
            except AddressError:
                address = None
            health.append(
                NodeHealth(
                    node_id=node.node_id,
                    name=node.name,
                    address=address,
                    role=status.role,
                    state=status.state,
                    reachable=status.raw_role is not None or status.state is not None,
                )
            )
        return health
