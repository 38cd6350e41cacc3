"""Cluster provisioning and teardown.

Provisioning runs a fixed phase sequence inside one background task:

1. create the virtual machines
2. wait until every node accepts remote commands
3. render and push per-node configuration
4. bootstrap the consensus store and wait for quorum
5. start the failover controller, pooler and exporters
6. wait for a leader, then publish DNS and mark the cluster RUNNING

Every bounded wait is ``attempts x interval``. Running out of budget raises
:class:`~pgcluster.errors.InfrastructureError`; the cluster is set to ERROR
with the message and nothing already created is rolled back.

Teardown is best effort per resource and always ends with the cluster
DELETED.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Sequence
from datetime import UTC, datetime

from pgcluster.clients.cloud import CloudProvider, ServerSpec
from pgcluster.clients.dns import DnsProvider, upsert_record
from pgcluster.config import ControlPlaneConfig
from pgcluster.discovery.leader import LeaderDiscovery, node_address
from pgcluster.errors import InfrastructureError, NotFoundError, PgClusterError
from pgcluster.models import (
    TERMINATING_STATUSES,
    Cluster,
    ClusterStatus,
    Node,
    NodeRole,
    NodeStatus,
    OutboxEvent,
    ProvisioningStep,
    RestoreStep,
)
from pgcluster.provisioning import templates
from pgcluster.provisioning.progress import ProgressTracker
from pgcluster.remote.executor import RemoteExecutor
from pgcluster.store.backups import RestoreJobStore
from pgcluster.store.clusters import ClusterStore
from pgcluster.trust.store import TrustStore

logger = logging.getLogger(__name__)

MANAGED_BY = "pgcluster"
QUORUM_PROBE = "docker exec etcd etcdctl endpoint health --cluster"
COMPOSE = f"cd {templates.CONFIG_DIR} && docker compose"

RestoreReporter = Callable[[RestoreStep, int], None]


class ProvisioningAborted(PgClusterError):
    """Raised when the cluster is deleted while it is still being provisioned."""


def _no_report(step: RestoreStep, progress: int) -> None:
    return None


class ClusterOrchestrator:
    """Drives clusters from PENDING to RUNNING, and from DELETING to DELETED."""

    def __init__(
        self,
        clusters: ClusterStore,
        restore_jobs: RestoreJobStore,
        cloud: CloudProvider,
        executor: RemoteExecutor,
        discovery: LeaderDiscovery,
        trust_store: TrustStore,
        config: ControlPlaneConfig,
        dns: DnsProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._clusters = clusters
        self._restore_jobs = restore_jobs
        self._cloud = cloud
        self._executor = executor
        self._discovery = discovery
        self._trust = trust_store
        self._config = config
        self._dns = dns
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Outbox handlers
    # ------------------------------------------------------------------

    def handle_cluster_created(self, event: OutboxEvent) -> None:
        self.provision(event.aggregate_id)

    def handle_delete_requested(self, event: OutboxEvent) -> None:
        self.teardown(event.aggregate_id)

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(
        self,
        cluster_id: str,
        restore: templates.RestoreSource | None = None,
        report: RestoreReporter | None = None,
    ) -> Cluster | None:
        """Provision *cluster_id*. Returns the RUNNING cluster, or ``None`` if aborted.

        With *restore*, the first node bootstraps from a backup instead of
        ``initdb`` and *report* receives restore-job progress.
        """
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        if cluster.status in TERMINATING_STATUSES:
            logger.info("Cluster %s is being deleted, skipping provisioning", cluster.slug)
            return None

        try:
            self._provision(cluster, restore, report or _no_report)
        except ProvisioningAborted as exc:
            logger.warning("Provisioning of %s aborted: %s", cluster.slug, exc)
            return None
        except Exception as exc:
            logger.exception("Provisioning of cluster %s failed", cluster.slug)
            self._mark_error(cluster_id, str(exc))
            raise
        return self._clusters.get(cluster_id)

    def _provision(
        self,
        cluster: Cluster,
        restore: templates.RestoreSource | None,
        report: RestoreReporter,
    ) -> None:
        logger.info("Starting provisioning for cluster %s", cluster.slug)
        self._clusters.update_status(cluster.cluster_id, ClusterStatus.CREATING)
        tracker = ProgressTracker(self._clusters, cluster.cluster_id, cluster.slug)

        tracker.advance(ProvisioningStep.CREATING_SERVERS)
        report(RestoreStep.CREATING_SERVERS, 5)
        nodes = self.create_nodes(cluster)
        self._ensure_not_deleted(cluster)

        tracker.advance(ProvisioningStep.WAITING_SSH)
        report(RestoreStep.WAITING_SSH, 15)
        self.wait_for_reachability(cluster, nodes)

        tracker.advance(ProvisioningStep.BUILDING_CONFIG)
        report(RestoreStep.CONFIGURING_NODES, 20)
        self.push_configuration(cluster, nodes, restore)

        tracker.advance(ProvisioningStep.STARTING_CONTAINERS)
        self.bootstrap_consensus(cluster, nodes)
        self._ensure_not_deleted(cluster)

        if restore is None:
            self.start_services(nodes)
        else:
            report(RestoreStep.RESTORING_DATA, 30)
            first = nodes[0]
            self._compose(first, "up -d patroni node-exporter")
            self.wait_for_restored_leader(first)
            report(RestoreStep.STARTING_REPLICAS, 70)
            self.start_services(nodes)

        tracker.advance(ProvisioningStep.ELECTING_LEADER)
        leader = self.elect_leader(cluster, nodes)
        self._clusters.update_node_roles(cluster.cluster_id, leader.node_id)

        if restore is not None:
            report(RestoreStep.CONFIGURING_BACKUP, 85)
        self.configure_backups(cluster, nodes, leader, restored=restore is not None)

        tracker.advance(ProvisioningStep.CREATING_DNS)
        report(RestoreStep.CREATING_DNS, 95)
        hostname = self.publish_dns(cluster, leader)

        for node in nodes:
            self._clusters.update_node_status(node.node_id, NodeStatus.RUNNING)
        if self._clusters.mark_running(cluster.cluster_id, hostname):
            logger.info("Cluster %s provisioned with %d nodes", cluster.slug, len(nodes))
        else:
            logger.warning("Cluster %s was deleted before it could be marked running", cluster.slug)

    def create_nodes(self, cluster: Cluster) -> list[Node]:
        """Allocate one server per node.

        A failure aborts the batch; nodes created so far stay in place.
        """
        nodes: list[Node] = []
        for index in range(cluster.node_count):
            node = Node(
                node_id=str(uuid.uuid4()),
                cluster_id=cluster.cluster_id,
                name=f"{cluster.slug}-node-{index + 1}",
                server_type=cluster.node_size,
                location=cluster.region_for(index),
                status=NodeStatus.CREATING,
                role=NodeRole.LEADER if index == 0 else NodeRole.REPLICA,
                created_at=datetime.now(tz=UTC),
            )
            self._clusters.add_node(node, index)

            spec = ServerSpec(
                name=node.name,
                server_type=node.server_type,
                image=self._config.image,
                location=node.location,
                ssh_keys=list(self._config.ssh_key_ids),
                labels={"cluster": cluster.slug, "managed-by": MANAGED_BY},
            )
            try:
                server = self._cloud.create_server(spec)
                if not server.public_ip:
                    raise InfrastructureError(f"Server {server.name} has no public address")
            except Exception as exc:
                self._clusters.update_node_status(node.node_id, NodeStatus.ERROR, str(exc))
                raise InfrastructureError(f"Failed to create node {node.name}: {exc}") from exc

            self._clusters.attach_server(
                node.node_id, server.provider_id, server.public_ip, server.private_ip
            )
            node = node.model_copy(
                update={
                    "provider_id": server.provider_id,
                    "public_ip": server.public_ip,
                    "private_ip": server.private_ip,
                    "status": NodeStatus.STARTING,
                }
            )
            # Provider addresses are recycled; a pin from a previous tenant is stale
            self._trust.forget(server.public_ip)
            logger.info("Created node %s with address %s", node.name, node.public_ip)
            nodes.append(node)
        return nodes

    def wait_for_reachability(self, cluster: Cluster, nodes: Sequence[Node]) -> None:
        """Poll each node in turn until it accepts remote commands."""
        attempts = self._config.reachability_attempts
        for node in nodes:
            logger.info("Waiting for %s to accept remote commands", node.name)
            for _ in range(attempts):
                self._ensure_not_deleted(cluster)
                if self._executor.is_reachable(node_address(node)):
                    break
                self._sleep(self._config.reachability_interval)
            else:
                raise InfrastructureError(
                    f"Node {node.name} not reachable after {attempts} attempts"
                )
            logger.info("Node %s is reachable", node.name)

    def push_configuration(
        self,
        cluster: Cluster,
        nodes: Sequence[Node],
        restore: templates.RestoreSource | None = None,
    ) -> None:
        initial_cluster = templates.etcd_initial_cluster(nodes)
        hosts = templates.etcd_hosts(nodes)
        for index, node in enumerate(nodes):
            host = node_address(node)
            node_restore = restore if index == 0 else None
            logger.info("Uploading configuration to %s", node.name)

            self._executor.upload(
                host,
                templates.render_env_file(cluster.postgres_password, cluster.replicator_password),
                f"{templates.CONFIG_DIR}/.env",
                mode=0o600,
            )
            self._executor.upload(
                host,
                templates.render_compose(cluster, node, initial_cluster),
                f"{templates.CONFIG_DIR}/docker-compose.yml",
            )
            self._executor.upload(
                host,
                templates.render_controller_config(cluster, node, hosts, self._config, node_restore),
                f"{templates.CONFIG_DIR}/patroni.yml",
                mode=0o644,
            )
            self._executor.upload(
                host,
                templates.render_pooler_config(cluster.node_size),
                f"{templates.CONFIG_DIR}/pgbouncer.ini",
            )
            self._executor.upload(
                host,
                templates.render_pooler_userlist(cluster.postgres_password),
                f"{templates.CONFIG_DIR}/userlist.txt",
                mode=0o644,
            )
            self._executor.execute(
                host,
                "mkdir -p /data/postgresql /data/etcd && chmod 700 /data/postgresql "
                "&& chown -R 999:999 /data/postgresql",
            ).check(f"data directory setup on {node.name}")

            if restore is not None:
                self.push_backup_tool_config(
                    node, restore.source_slug, restore.source_cluster_id, read_only=True
                )
            elif self._config.storage_configured:
                self.push_backup_tool_config(node, cluster.slug, cluster.cluster_id)

    def push_backup_tool_config(
        self,
        node: Node,
        stanza: str,
        repository_id: str,
        *,
        read_only: bool = False,
    ) -> None:
        host = node_address(node)
        config_dir = templates.BACKUP_TOOL_CONFIG_DIR
        config_path = templates.BACKUP_TOOL_CONFIG_PATH
        self._executor.execute(
            host, f"mkdir -p {config_dir} && chown 999:999 {config_dir} && chmod 750 {config_dir}"
        ).check(f"backup config directory on {node.name}")
        self._executor.upload(
            host,
            templates.render_backup_tool_config(stanza, repository_id, self._config, read_only=read_only),
            config_path,
            mode=0o640,
        )
        self._executor.execute(
            host,
            f"chown 999:999 {config_path} && chown -R 999:999 "
            f"{templates.BACKUP_TOOL_LOG_PATH} {templates.BACKUP_TOOL_SPOOL_PATH} 2>/dev/null || true",
        )

    def bootstrap_consensus(self, cluster: Cluster, nodes: Sequence[Node]) -> None:
        """Start the consensus store everywhere and wait until a majority is healthy."""
        for node in nodes:
            logger.info("Starting consensus store on %s", node.name)
            self._compose(node, "up -d etcd")

        probe_host = node_address(nodes[0])
        quorum = len(nodes) // 2 + 1
        attempts = self._config.quorum_attempts
        for attempt in range(1, attempts + 1):
            self._sleep(self._config.quorum_interval)
            try:
                result = self._executor.execute(probe_host, QUORUM_PROBE, timeout=10)
            except PgClusterError as exc:
                logger.debug("Quorum probe on %s failed: %s", cluster.slug, exc)
                continue
            healthy = sum(1 for line in result.stdout.splitlines() if "is healthy" in line)
            if result.success and healthy >= quorum:
                logger.info("Consensus store for %s has quorum after %d attempts", cluster.slug, attempt)
                return
            logger.debug("Waiting for quorum on %s (%d/%d)", cluster.slug, attempt, attempts)
        raise InfrastructureError(
            f"Consensus store for {cluster.slug} did not reach quorum after {attempts} attempts"
        )

    def start_services(self, nodes: Sequence[Node]) -> None:
        for node in nodes:
            logger.info("Starting services on %s", node.name)
            self._compose(node, "up -d")

    def elect_leader(self, cluster: Cluster, nodes: Sequence[Node]) -> Node:
        """Poll Leader Discovery until a node reports itself leader."""
        attempts = self._config.election_attempts
        for attempt in range(1, attempts + 1):
            self._sleep(self._config.election_interval)
            self._ensure_not_deleted(cluster)
            leader = self._discovery.find_leader(nodes)
            if leader is not None:
                logger.info("Cluster %s elected %s as leader", cluster.slug, leader.name)
                return leader
            logger.debug("Waiting for leader election on %s (%d/%d)", cluster.slug, attempt, attempts)
        raise InfrastructureError(
            f"Cluster {cluster.slug} did not elect a leader after {attempts} attempts"
        )

    def wait_for_restored_leader(self, node: Node) -> None:
        """Wait until *node* has replayed its backup and runs as leader."""
        interval = self._config.restore_poll_interval
        attempts = max(1, int(self._config.restore_timeout // interval))
        for attempt in range(1, attempts + 1):
            self._sleep(interval)
            if self._discovery.status(node).is_running_leader:
                logger.info("Restore on %s completed after %d polls", node.name, attempt)
                return
            if attempt % 12 == 0:
                logger.info("Restore on %s still running (%.0fs elapsed)", node.name, attempt * interval)
        raise InfrastructureError(
            f"Restore on {node.name} did not complete within {self._config.restore_timeout:.0f}s"
        )

    def configure_backups(
        self,
        cluster: Cluster,
        nodes: Sequence[Node],
        leader: Node,
        *,
        restored: bool = False,
    ) -> None:
        """Point the backup tool at this cluster's repository and create its stanza.

        Failures are logged; the cluster runs without backups until fixed.
        """
        if not self._config.storage_configured:
            return
        try:
            if restored:
                for node in nodes:
                    self.push_backup_tool_config(node, cluster.slug, cluster.cluster_id)
            host = node_address(leader)
            self._executor.execute(
                host, f"docker exec patroni pgbackrest --stanza={cluster.slug} stanza-create"
            ).check(f"stanza creation for {cluster.slug}")
            check = self._executor.execute(
                host, f"docker exec patroni pgbackrest --stanza={cluster.slug} check"
            )
            if not check.success:
                logger.warning("Stanza check for %s reported: %s", cluster.slug, check.error_output)
            logger.info("Backups configured for cluster %s", cluster.slug)
        except Exception as exc:
            logger.warning("Failed to configure backups for %s: %s", cluster.slug, exc)

    def publish_dns(self, cluster: Cluster, leader: Node) -> str | None:
        """Point the cluster hostname at *leader*. Returns the hostname, or ``None`` on failure."""
        if self._dns is None:
            logger.warning("No DNS provider configured, %s will have no hostname", cluster.slug)
            return None
        hostname = self.hostname_for(cluster)
        try:
            upsert_record(self._dns, hostname, node_address(leader))
        except Exception as exc:
            logger.warning("Failed to publish DNS for %s: %s", hostname, exc)
            return None
        logger.info("DNS record %s -> %s", hostname, leader.public_ip)
        return hostname

    def hostname_for(self, cluster: Cluster) -> str:
        return f"{cluster.slug}.{self._config.base_domain}"

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def teardown(self, cluster_id: str) -> None:
        """Release every resource of the cluster and mark it DELETED."""
        cluster = self._clusters.get(cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        logger.info("Deleting cluster %s", cluster.slug)

        try:
            cancelled = self._restore_jobs.cancel_active(cluster_id, "Cluster was deleted")
            if cancelled:
                logger.info("Cancelled %d restore jobs for %s", cancelled, cluster.slug)
        except Exception as exc:
            logger.warning("Failed to cancel restore jobs for %s: %s", cluster.slug, exc)

        deleted: set[int] = set()
        for node in cluster.nodes:
            if node.provider_id is None:
                continue
            try:
                self._cloud.delete_server(node.provider_id)
                deleted.add(node.provider_id)
            except Exception as exc:
                logger.warning("Failed to delete server %s for %s: %s", node.provider_id, node.name, exc)

        # Servers whose id was never recorded are still labelled
        try:
            for server in self._cloud.list_servers(f"cluster={cluster.slug}"):
                if server.provider_id in deleted:
                    continue
                try:
                    self._cloud.delete_server(server.provider_id)
                    logger.info("Deleted orphan server %s (%d)", server.name, server.provider_id)
                except Exception as exc:
                    logger.warning("Failed to delete orphan server %s: %s", server.provider_id, exc)
        except Exception as exc:
            logger.warning("Failed to list servers for %s: %s", cluster.slug, exc)

        if self._dns is not None:
            hostname = cluster.hostname or self.hostname_for(cluster)
            try:
                record = self._dns.find_record(hostname)
                if record is not None:
                    self._dns.delete_record(record.record_id)
            except Exception as exc:
                logger.warning("Failed to delete DNS record %s: %s", hostname, exc)

        for node in cluster.nodes:
            for address in {node.public_ip, node.private_ip} - {None}:
                try:
                    self._trust.forget(address)
                except Exception as exc:
                    logger.warning("Failed to release trust for %s: %s", address, exc)

        self._clusters.mark_deleted(cluster_id)
        logger.info("Cluster %s deleted", cluster.slug)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _compose(self, node: Node, args: str) -> None:
        self._executor.execute(node_address(node), f"{COMPOSE} {args}", timeout=300).check(
            f"docker compose {args} on {node.name}"
        )

    def _ensure_not_deleted(self, cluster: Cluster) -> None:
        status = self._clusters.status_of(cluster.cluster_id)
        if status is None or status in TERMINATING_STATUSES:
            raise ProvisioningAborted(f"Cluster {cluster.slug} was deleted during provisioning")

    def _mark_error(self, cluster_id: str, message: str) -> None:
        try:
            self._clusters.update_status(cluster_id, ClusterStatus.ERROR, message)
        except Exception:
            logger.exception("Failed to record error for cluster %s", cluster_id)
