"""Restores from a completed backup, in place or into a new cluster.

A request validates the backup and the optional point-in-time target,
then commits the restore job (and, for a new cluster, its PENDING cluster
row) together with a ``restore.requested`` outbox event.

An in-place restore stops PostgreSQL on the source leader, restores over
its data directory and starts it again. A restore into a new cluster is a
normal provisioning run whose first node bootstraps from the source
cluster's repository instead of ``initdb``.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from pgcluster.backup import chain
from pgcluster.backup.pgbackrest import BackupTool
from pgcluster.db.connection import Database
from pgcluster.discovery.leader import LeaderDiscovery, node_address
from pgcluster.errors import InfrastructureError, NotFoundError, StateConflictError
from pgcluster.models import (
    TERMINATING_STATUSES,
    Backup,
    BackupStatus,
    Cluster,
    ClusterStatus,
    EventKind,
    Node,
    OutboxEvent,
    ProvisioningStep,
    RestoreJob,
    RestoreStatus,
    RestoreStep,
    RestoreType,
)
from pgcluster.provisioning.orchestrator import ClusterOrchestrator
from pgcluster.provisioning.service import generate_password, unique_slug
from pgcluster.provisioning.templates import RestoreSource
from pgcluster.store.backups import BackupStore, RestoreJobStore
from pgcluster.store.clusters import ClusterStore
from pgcluster.tasks.outbox import OutboxStore

logger = logging.getLogger(__name__)

READY_ATTEMPTS = 15
READY_POLL_INTERVAL = 2.0


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class RestoreService:
    """Accepts restore requests and runs restore jobs."""

    def __init__(
        self,
        db: Database,
        clusters: ClusterStore,
        backups: BackupStore,
        restore_jobs: RestoreJobStore,
        tool: BackupTool,
        discovery: LeaderDiscovery,
        orchestrator: ClusterOrchestrator,
        ready_attempts: int = READY_ATTEMPTS,
        ready_interval: float = READY_POLL_INTERVAL,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._clusters = clusters
        self._backups = backups
        self._jobs = restore_jobs
        self._tool = tool
        self._discovery = discovery
        self._orchestrator = orchestrator
        self._ready_attempts = ready_attempts
        self._ready_interval = ready_interval
        self._clock = clock
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Outbox handlers
    # ------------------------------------------------------------------

    def handle_restore_requested(self, event: OutboxEvent) -> None:
        self.execute_restore(event.aggregate_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_restore(
        self,
        cluster_id: str,
        backup_id: str,
        target_time: datetime | None = None,
        create_new_cluster: bool = True,
        new_cluster_name: str | None = None,
        owner: str | None = None,
    ) -> RestoreJob:
        """Validate and queue a restore of *backup_id*."""
        source = self._get_cluster(cluster_id, owner)
        backup = self._backups.get(backup_id)
        if backup is None or backup.cluster_id != cluster_id:
            raise NotFoundError(f"Backup not found: {backup_id}")
        if backup.status is not BackupStatus.COMPLETED:
            raise StateConflictError("Cannot restore from a backup that is not completed")
        if source.status in TERMINATING_STATUSES:
            raise StateConflictError(f"Cluster {source.slug} is being deleted")
        if not create_new_cluster and source.status is not ClusterStatus.RUNNING:
            raise StateConflictError("Cluster must be running for an in-place restore")

        if self._jobs.has_active(cluster_id):
            raise StateConflictError(
                "A restore operation is already in progress for this cluster. Please wait for it to complete."
            )
        if self._backups.has_active(cluster_id):
            raise StateConflictError(
                "A backup is in progress for this cluster. Please wait for it to complete."
            )

        restore_type = RestoreType.FULL
        if target_time is not None:
            if target_time.tzinfo is None:
                target_time = target_time.replace(tzinfo=UTC)
            chain.check_target_time(backup, target_time)
            restore_type = RestoreType.PITR

        now = self._clock()
        target = None
        if create_new_cluster:
            target = self._target_cluster(source, new_cluster_name, now)

        job = RestoreJob(
            job_id=str(uuid.uuid4()),
            source_cluster_id=cluster_id,
            target_cluster_id=target.cluster_id if target else None,
            backup_id=backup_id,
            restore_type=restore_type,
            target_time=target_time,
            status=RestoreStatus.PENDING,
            progress=0,
            created_at=now,
        )
        try:
            with self._db.transaction() as conn:
                if target is not None:
                    ClusterStore.insert(conn, target)
                RestoreJobStore.insert(conn, job)
                OutboxStore.enqueue(
                    conn,
                    EventKind.RESTORE_REQUESTED,
                    job.job_id,
                    {"create_new_cluster": create_new_cluster},
                )
        except sqlite3.IntegrityError as exc:
            raise StateConflictError(
                "A restore operation is already in progress for this cluster. Please wait for it to complete."
            ) from exc

        logger.info(
            "Created restore job %s for backup %s (type: %s, new cluster: %s)",
            job.job_id, backup_id, restore_type.value, target.slug if target else None,
        )
        return job

    def _target_cluster(self, source: Cluster, name: str | None, now: datetime) -> Cluster:
        """PENDING cluster with the same shape as *source*."""
        if not name or not name.strip():
            name = f"{source.slug}-restored-{now:%Y%m%d}"
        return Cluster(
            cluster_id=str(uuid.uuid4()),
            owner=source.owner,
            name=name.strip(),
            slug=unique_slug(self._clusters, name),
            plan=source.plan,
            status=ClusterStatus.PENDING,
            postgres_version=source.postgres_version,
            node_count=source.node_count,
            node_size=source.node_size,
            region=source.region,
            node_regions=list(source.node_regions),
            postgres_password=generate_password(),
            replicator_password=generate_password(),
            provisioning_step=ProvisioningStep.CREATING_SERVERS,
            provisioning_progress=1,
            created_at=now,
            updated_at=now,
        )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_restore(self, job_id: str) -> RestoreJob | None:
        """Run a PENDING restore job. Returns ``None`` if it was no longer pending."""
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Restore job not found: {job_id}")
        if not self._jobs.start(job_id):
            logger.warning("Restore job %s is %s, not pending; skipping", job_id, job.status.value)
            return None

        try:
            backup = self._backups.get(job.backup_id)
            source = self._clusters.get(job.source_cluster_id)
            if backup is None or source is None:
                raise NotFoundError(f"Backup or source cluster of restore job {job_id} is gone")
            if job.target_cluster_id is None:
                self._restore_in_place(job, source, backup)
            else:
                self._restore_to_new_cluster(job, source, backup)
        except Exception as exc:
            logger.exception("Restore job %s failed", job_id)
            self._mark_failed(job_id, str(exc))
            raise

        self._jobs.complete(job_id, self._clock())
        logger.info("Restore job %s completed", job_id)
        return self._jobs.get(job_id)

    def _restore_in_place(self, job: RestoreJob, source: Cluster, backup: Backup) -> None:
        logger.info("Starting in-place restore of %s from backup %s", source.slug, backup.backup_id)
        self._report(job.job_id, RestoreStep.CREATING_CLUSTER, 10)
        leader = self._discovery.find_leader(source.nodes)
        if leader is None:
            raise InfrastructureError(f"No leader node found for cluster {source.slug}")

        self._report(job.job_id, RestoreStep.PREPARING_RESTORE, 20)
        self._report(job.job_id, RestoreStep.RESTORING_DATA, 40)
        self._tool.restore(node_address(leader), source.slug, backup.label, job.target_time)

        self._report(job.job_id, RestoreStep.VERIFYING_RESTORE, 80)
        self.wait_until_ready(leader)

    def _restore_to_new_cluster(self, job: RestoreJob, source: Cluster, backup: Backup) -> None:
        logger.info(
            "Starting restore of %s into new cluster %s (job %s)",
            source.slug, job.target_cluster_id, job.job_id,
        )
        restore = RestoreSource(
            source_cluster_id=source.cluster_id,
            source_slug=source.slug,
            label=backup.label,
            target_time=job.target_time,
        )
        result = self._orchestrator.provision(
            job.target_cluster_id,
            restore=restore,
            report=lambda step, progress: self._report(job.job_id, step, progress),
        )
        if result is None:
            raise StateConflictError("Restore target cluster was deleted during provisioning")

    def wait_until_ready(self, node: Node) -> None:
        """Poll until *node* runs as leader.

        Raises ``InfrastructureError`` once ``ready_attempts`` polls have failed.
        """
        for attempt in range(self._ready_attempts):
            if self._discovery.status(node).is_running_leader:
                logger.info(
                    "PostgreSQL on %s is ready after %.0fs", node.name, attempt * self._ready_interval
                )
                return
            self._sleep(self._ready_interval)
        raise InfrastructureError(
            f"PostgreSQL on {node.name} did not become ready after {self._ready_attempts} attempts"
        )

    def _report(self, job_id: str, step: RestoreStep, progress: int) -> None:
        self._jobs.update_progress(job_id, step, progress)

    def _mark_failed(self, job_id: str, message: str) -> None:
        try:
            self._jobs.mark_failed(job_id, message)
        except Exception:
            logger.exception("Failed to record failure of restore job %s", job_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_job(self, job_id: str, owner: str | None = None) -> RestoreJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Restore job not found: {job_id}")
        if owner is not None:
            self._get_cluster(job.source_cluster_id, owner)
        return job

    def list_jobs(self, cluster_id: str, owner: str | None = None) -> list[RestoreJob]:
        self._get_cluster(cluster_id, owner)
        return self._jobs.list_for_cluster(cluster_id)

    def _get_cluster(self, cluster_id: str, owner: str | None) -> Cluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None or (owner is not None and cluster.owner != owner):
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        return cluster
