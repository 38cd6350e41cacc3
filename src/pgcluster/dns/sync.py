"""Keeps each cluster's hostname pointed at its current leader.

The control plane runs as several identical replicas. Only the replica
whose own database is currently the primary runs the sweep, which keeps
the DNS provider from seeing N copies of every update.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from pgcluster.clients.dns import DnsProvider
from pgcluster.discovery.leader import LeaderDiscovery, node_address
from pgcluster.models import Cluster, ClusterStatus
from pgcluster.store.clusters import ClusterStore

logger = logging.getLogger(__name__)

LeaderGuard = Callable[[], bool]


def always_leader() -> bool:
    """Guard for single-replica deployments."""
    return True


class RecoveryStateGuard:
    """True when the local PostgreSQL instance is not in recovery.

    Requires ``psycopg``. Any connection or query error counts as "not
    leader", so an unhealthy replica never runs the sweep.
    """

    def __init__(self, database_url: str, connect_timeout: int = 5) -> None:
        self._database_url = database_url
        self._connect_timeout = connect_timeout

    def __call__(self) -> bool:
        import psycopg

        try:
            with psycopg.connect(self._database_url, connect_timeout=self._connect_timeout) as conn:
                row = conn.execute("SELECT pg_is_in_recovery()").fetchone()
        except psycopg.Error as exc:
            logger.debug("Recovery-state probe failed: %s", exc)
            return False
        return row is not None and row[0] is False


@dataclass
class SyncReport:
    """Outcome of one sweep."""

    skipped: bool = False
    checked: int = 0
    updated: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


class DnsFailoverSynchronizer:
    """Compares each RUNNING cluster's A record with its discovered leader."""

    def __init__(
        self,
        clusters: ClusterStore,
        discovery: LeaderDiscovery,
        dns: DnsProvider,
        is_leader: LeaderGuard = always_leader,
    ) -> None:
        self._clusters = clusters
        self._discovery = discovery
        self._dns = dns
        self._is_leader = is_leader

    def sync_all(self) -> SyncReport:
        report = SyncReport()
        if not self._is_leader():
            logger.debug("Not the primary control-plane replica, skipping DNS sync")
            report.skipped = True
            return report

        for cluster in self._clusters.list_clusters(statuses=(ClusterStatus.RUNNING,)):
            if not cluster.hostname or not cluster.nodes:
                continue
            report.checked += 1
            try:
                if self.sync_cluster(cluster):
                    report.updated.append(cluster.slug)
            except Exception:
                logger.exception("DNS sync failed for cluster %s", cluster.slug)
                report.failed.append(cluster.slug)

        if report.updated:
            logger.info("DNS sync updated %d of %d clusters", len(report.updated), report.checked)
        return report

    def sync_cluster(self, cluster: Cluster) -> bool:
        """Repair the record if it drifted. Returns ``True`` when it was updated."""
        if not cluster.hostname:
            return False
        leader = self._discovery.find_leader(cluster.nodes)
        if leader is None:
            # Mid-election; the fallback address is only advisory
            logger.warning("No leader found for %s, leaving DNS unchanged", cluster.slug)
            return False
        address = node_address(leader)

        record = self._dns.find_record(cluster.hostname)
        if record is None:
            logger.warning("DNS record %s missing, recreating -> %s", cluster.hostname, address)
            self._dns.create_record(cluster.hostname, address)
        elif record.content == address:
            return False
        else:
            logger.info(
                "Leader of %s moved: %s -> %s (%s)",
                cluster.slug, record.content, address, leader.name,
            )
            self._dns.update_record(record.record_id, cluster.hostname, address)

        self._clusters.update_node_roles(cluster.cluster_id, leader.node_id)
        return True
