"""Cluster lifecycle requests: create, delete, inspect.

Creation and deletion only write state. The cluster row (or its status
flip) and the matching outbox event are committed together; provisioning
and teardown run later on a worker.
"""

from __future__ import annotations

import logging
import re
import secrets
import sqlite3
import string
import uuid
from datetime import UTC, datetime

from pgcluster.db.connection import Database
from pgcluster.discovery.leader import LeaderDiscovery
from pgcluster.errors import InvalidRequestError, NotFoundError, StateConflictError
from pgcluster.models import (
    TERMINATING_STATUSES,
    Cluster,
    ClusterHealth,
    ClusterStatus,
    EventKind,
    NodeRole,
    ProvisioningStep,
)
from pgcluster.store.clusters import ClusterStore
from pgcluster.tasks.outbox import OutboxStore

logger = logging.getLogger(__name__)

VALID_NODE_COUNTS = (1, 3)
SLUG_MAX_BASE = 50
SLUG_SUFFIX_LENGTH = 6
SLUG_ATTEMPTS = 10
PASSWORD_LENGTH = 24

_SLUG_ALPHABET = string.ascii_lowercase + string.digits
_PASSWORD_ALPHABET = string.ascii_letters + string.digits
_SLUG_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_PASSWORD_ALPHABET) for _ in range(length))


def slug_base(name: str) -> str:
    """Lowercase *name*, collapse non-alphanumerics to ``-`` and cap the length."""
    base = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    base = base[:SLUG_MAX_BASE].rstrip("-")
    return base or "cluster"


def random_suffix(length: int = SLUG_SUFFIX_LENGTH) -> str:
    return "".join(secrets.choice(_SLUG_ALPHABET) for _ in range(length))


def unique_slug(clusters: ClusterStore, name: str) -> str:
    """``<base>-<suffix>`` that no cluster uses yet."""
    base = slug_base(name)
    for _ in range(SLUG_ATTEMPTS):
        candidate = f"{base}-{random_suffix()}"
        if not clusters.slug_exists(candidate):
            return candidate
    raise StateConflictError(f"Could not generate a unique slug for {name!r}")


class ClusterService:
    """Entry point for cluster lifecycle requests."""

    def __init__(
        self,
        db: Database,
        clusters: ClusterStore,
        discovery: LeaderDiscovery,
    ) -> None:
        self._db = db
        self._clusters = clusters
        self._discovery = discovery

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def create_cluster(
        self,
        owner: str,
        name: str,
        node_regions: list[str],
        node_size: str = "cx23",
        postgres_version: str = "16",
        slug: str | None = None,
        plan: str = "dedicated",
    ) -> Cluster:
        """Persist a PENDING cluster and queue its provisioning."""
        if not name.strip():
            raise InvalidRequestError("Cluster name is required")
        if len(node_regions) not in VALID_NODE_COUNTS:
            raise InvalidRequestError(
                f"A cluster has 1 or 3 nodes, got {len(node_regions)} regions"
            )
        if not postgres_version.isdigit():
            raise InvalidRequestError(f"Invalid PostgreSQL version: {postgres_version!r}")

        if slug:
            if not _SLUG_PATTERN.match(slug):
                raise InvalidRequestError(f"Invalid slug: {slug!r}")
            if self._clusters.slug_exists(slug):
                raise StateConflictError(f"Cluster slug already exists: {slug}")
        else:
            slug = unique_slug(self._clusters, name)

        now = datetime.now(tz=UTC)
        cluster = Cluster(
            cluster_id=str(uuid.uuid4()),
            owner=owner,
            name=name.strip(),
            slug=slug,
            plan=plan,
            status=ClusterStatus.PENDING,
            postgres_version=postgres_version,
            node_count=len(node_regions),
            node_size=node_size,
            region=node_regions[0],
            node_regions=list(node_regions),
            postgres_password=generate_password(),
            replicator_password=generate_password(),
            provisioning_step=ProvisioningStep.CREATING_SERVERS,
            provisioning_progress=1,
            created_at=now,
            updated_at=now,
        )
        try:
            with self._db.transaction() as conn:
                ClusterStore.insert(conn, cluster)
                OutboxStore.enqueue(conn, EventKind.CLUSTER_CREATED, cluster.cluster_id)
        except sqlite3.IntegrityError as exc:
            raise StateConflictError(f"Cluster slug already exists: {slug}") from exc

        logger.info("Cluster %s (%s) requested by %s", cluster.slug, cluster.cluster_id, owner)
        return cluster

    def delete_cluster(self, cluster_id: str, owner: str | None = None) -> Cluster:
        """Flip the cluster to DELETING and queue its teardown."""
        cluster = self.get_cluster(cluster_id, owner)
        if cluster.status in TERMINATING_STATUSES:
            raise StateConflictError(f"Cluster {cluster.slug} is already being deleted")

        with self._db.transaction() as conn:
            if not ClusterStore.mark_deleting(conn, cluster_id):
                raise StateConflictError(f"Cluster {cluster.slug} is already being deleted")
            OutboxStore.enqueue(conn, EventKind.CLUSTER_DELETE_REQUESTED, cluster_id)

        logger.info("Cluster %s marked for deletion", cluster.slug)
        return self.get_cluster(cluster_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_cluster(self, cluster_id: str, owner: str | None = None) -> Cluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None or (owner is not None and cluster.owner != owner):
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        return cluster

    def list_clusters(self, owner: str | None = None) -> list[Cluster]:
        return self._clusters.list_clusters(owner=owner)

    def cluster_health(self, cluster_id: str, owner: str | None = None) -> ClusterHealth:
        """Live role and state of every node, straight from Leader Discovery."""
        cluster = self.get_cluster(cluster_id, owner)
        nodes = self._discovery.probe(cluster.nodes)
        leader = next((n.name for n in nodes if n.role is NodeRole.LEADER), None)
        return ClusterHealth(
            cluster_id=cluster.cluster_id,
            status=cluster.status,
            leader=leader,
            nodes=nodes,
        )
