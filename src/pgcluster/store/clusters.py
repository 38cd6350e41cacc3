"""Persistence for clusters and their nodes."""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any

from pgcluster.db.connection import Database
from pgcluster.db.timestamps import from_db, to_db
from pgcluster.models import (
    Cluster,
    ClusterStatus,
    Node,
    NodeRole,
    NodeStatus,
    ProvisioningStep,
    TERMINATING_STATUSES,
)

_TERMINATING = tuple(s.value for s in TERMINATING_STATUSES)


class ClusterStore:
    """Reads and writes ``clusters`` and ``nodes`` rows.

    Status and progress writes are single, independently committed
    statements so observers see live progress while a long task runs.
    """

    def __init__(self, db: Database) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Clusters
    # ------------------------------------------------------------------

    @staticmethod
    def insert(conn: sqlite3.Connection, cluster: Cluster) -> None:
        """Insert *cluster* using the caller's transaction."""
        conn.execute(
            """INSERT INTO clusters
               (cluster_id, owner, name, slug, plan, status, postgres_version,
                node_count, node_size, region, node_regions, hostname, port,
                postgres_password, replicator_password, error_message,
                provisioning_step, provisioning_progress, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                cluster.cluster_id,
                cluster.owner,
                cluster.name,
                cluster.slug,
                cluster.plan,
                cluster.status.value,
                cluster.postgres_version,
                cluster.node_count,
                cluster.node_size,
                cluster.region,
                json.dumps(cluster.node_regions),
                cluster.hostname,
                cluster.port,
                cluster.postgres_password,
                cluster.replicator_password,
                cluster.error_message,
                cluster.provisioning_step.value if cluster.provisioning_step else None,
                cluster.provisioning_progress,
                to_db(cluster.created_at),
                to_db(cluster.updated_at),
            ),
        )

    def get(self, cluster_id: str) -> Cluster | None:
        row = self._db.fetchone("SELECT * FROM clusters WHERE cluster_id = ?", (cluster_id,))
        if row is None:
            return None
        return self._row_to_cluster(row, self.list_nodes(cluster_id))

    def slug_exists(self, slug: str) -> bool:
        row = self._db.fetchone("SELECT 1 FROM clusters WHERE slug = ?", (slug,))
        return row is not None

    def list_clusters(
        self,
        owner: str | None = None,
        statuses: tuple[ClusterStatus, ...] | None = None,
        include_deleted: bool = False,
    ) -> list[Cluster]:
        clauses: list[str] = []
        params: list[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if statuses:
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        elif not include_deleted:
            clauses.append("status != 'deleted'")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._db.fetchall(
            f"SELECT * FROM clusters {where} ORDER BY created_at DESC", tuple(params)
        )
        return [self._row_to_cluster(r, self.list_nodes(r["cluster_id"])) for r in rows]

    def update_status(
        self,
        cluster_id: str,
        status: ClusterStatus,
        error_message: str | None = None,
    ) -> bool:
        """Set *status* unless the cluster is already being torn down.

        Returns ``False`` when the row was left untouched.
        """
        if error_message is None:
            count = self._db.write(
                """UPDATE clusters SET status = ?, updated_at = ?
                   WHERE cluster_id = ? AND status NOT IN (?, ?)""",
                (status.value, self._now(), cluster_id, *_TERMINATING),
            )
        else:
            count = self._db.write(
                """UPDATE clusters SET status = ?, error_message = ?, updated_at = ?
                   WHERE cluster_id = ? AND status NOT IN (?, ?)""",
                (status.value, error_message, self._now(), cluster_id, *_TERMINATING),
            )
        return count > 0

    def update_progress(self, cluster_id: str, step: ProvisioningStep, progress: int) -> bool:
        """Record provisioning progress; never moves backwards."""
        count = self._db.write(
            """UPDATE clusters
               SET provisioning_step = ?, provisioning_progress = ?, updated_at = ?
               WHERE cluster_id = ? AND status NOT IN (?, ?)
                 AND (provisioning_progress IS NULL OR provisioning_progress <= ?)""",
            (step.value, progress, self._now(), cluster_id, *_TERMINATING, progress),
        )
        return count > 0

    def mark_running(self, cluster_id: str, hostname: str | None) -> bool:
        count = self._db.write(
            """UPDATE clusters SET status = ?, hostname = ?, error_message = NULL, updated_at = ?
               WHERE cluster_id = ? AND status NOT IN (?, ?)""",
            (ClusterStatus.RUNNING.value, hostname, self._now(), cluster_id, *_TERMINATING),
        )
        return count > 0

    @staticmethod
    def mark_deleting(conn: sqlite3.Connection, cluster_id: str) -> bool:
        """Flip a cluster to DELETING inside the caller's transaction."""
        cursor = conn.execute(
            """UPDATE clusters SET status = ?, updated_at = ?
               WHERE cluster_id = ? AND status NOT IN (?, ?)""",
            (
                ClusterStatus.DELETING.value,
                ClusterStore._now(),
                cluster_id,
                *_TERMINATING,
            ),
        )
        return cursor.rowcount > 0

    def mark_deleted(self, cluster_id: str) -> None:
        self._db.write(
            "UPDATE clusters SET status = ?, updated_at = ? WHERE cluster_id = ?",
            (ClusterStatus.DELETED.value, self._now(), cluster_id),
        )

    def status_of(self, cluster_id: str) -> ClusterStatus | None:
        row = self._db.fetchone("SELECT status FROM clusters WHERE cluster_id = ?", (cluster_id,))
        return ClusterStatus(row["status"]) if row else None

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    def add_node(self, node: Node, position: int) -> None:
        self._db.write(
            """INSERT INTO nodes
               (node_id, cluster_id, name, provider_id, public_ip, private_ip,
                server_type, location, status, role, error_message, position, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                node.node_id,
                node.cluster_id,
                node.name,
                node.provider_id,
                node.public_ip,
                node.private_ip,
                node.server_type,
                node.location,
                node.status.value,
                node.role.value,
                node.error_message,
                position,
                to_db(node.created_at),
            ),
        )

    def list_nodes(self, cluster_id: str) -> list[Node]:
        rows = self._db.fetchall(
            "SELECT * FROM nodes WHERE cluster_id = ? ORDER BY position, created_at",
            (cluster_id,),
        )
        return [self._row_to_node(r) for r in rows]

    def attach_server(
        self,
        node_id: str,
        provider_id: int,
        public_ip: str | None,
        private_ip: str | None,
    ) -> None:
        """Record the provider's server for a node and move it to STARTING."""
        self._db.write(
            """UPDATE nodes SET provider_id = ?, public_ip = ?, private_ip = ?, status = ?
               WHERE node_id = ?""",
            (provider_id, public_ip, private_ip, NodeStatus.STARTING.value, node_id),
        )

    def update_node_status(
        self,
        node_id: str,
        status: NodeStatus,
        error_message: str | None = None,
    ) -> None:
        self._db.write(
            "UPDATE nodes SET status = ?, error_message = ? WHERE node_id = ?",
            (status.value, error_message, node_id),
        )

    def update_node_roles(self, cluster_id: str, leader_node_id: str) -> None:
        """Refresh the informational role hints after an election."""
        with self._db.transaction() as conn:
            conn.execute(
                "UPDATE nodes SET role = ? WHERE cluster_id = ?",
                (NodeRole.REPLICA.value, cluster_id),
            )
            conn.execute(
                "UPDATE nodes SET role = ? WHERE node_id = ?",
                (NodeRole.LEADER.value, leader_node_id),
            )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _now() -> str:
        return to_db(datetime.now(tz=UTC))

    @staticmethod
    def _row_to_cluster(row: sqlite3.Row, nodes: list[Node]) -> Cluster:
        return Cluster(
            cluster_id=row["cluster_id"],
            owner=row["owner"],
            name=row["name"],
            slug=row["slug"],
            plan=row["plan"],
            status=ClusterStatus(row["status"]),
            postgres_version=row["postgres_version"],
            node_count=row["node_count"],
            node_size=row["node_size"],
            region=row["region"],
            node_regions=json.loads(row["node_regions"] or "[]"),
            hostname=row["hostname"],
            port=row["port"],
            postgres_password=row["postgres_password"],
            replicator_password=row["replicator_password"],
            error_message=row["error_message"],
            provisioning_step=(
                ProvisioningStep(row["provisioning_step"]) if row["provisioning_step"] else None
            ),
            provisioning_progress=row["provisioning_progress"],
            nodes=nodes,
            created_at=from_db(row["created_at"]),
            updated_at=from_db(row["updated_at"]),
        )

    @staticmethod
    def _row_to_node(row: sqlite3.Row) -> Node:
        return Node(
            node_id=row["node_id"],
            cluster_id=row["cluster_id"],
            name=row["name"],
            provider_id=row["provider_id"],
            public_ip=row["public_ip"],
            private_ip=row["private_ip"],
            server_type=row["server_type"],
            location=row["location"],
            status=NodeStatus(row["status"]),
            role=NodeRole(row["role"]),
            error_message=row["error_message"],
            created_at=from_db(row["created_at"]),
        )
