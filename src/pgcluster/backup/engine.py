"""Physical backups: request, execution, deletion, expiry and schedules.

Requests only write state: the PENDING backup row and its
``backup.created`` outbox event are committed together, and a partial
unique index keeps a cluster to one active backup even when two requests
race. Execution runs later on a worker and walks the backup through its
steps, persisting ``(step, progress)`` at every boundary.
"""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import UTC, datetime

from pgcluster.backup import chain
from pgcluster.backup.pgbackrest import BackupTool
from pgcluster.clients.storage import ObjectStorage
from pgcluster.config import ControlPlaneConfig
from pgcluster.db.connection import Database
from pgcluster.discovery.leader import LeaderDiscovery, node_address
from pgcluster.errors import InfrastructureError, NotFoundError, StateConflictError
from pgcluster.models import (
    Backup,
    BackupDeletionInfo,
    BackupKind,
    BackupMetrics,
    BackupStatus,
    BackupStep,
    BackupType,
    Cluster,
    ClusterStatus,
    EventKind,
    Node,
    OutboxEvent,
    RecoveryWindow,
)
from pgcluster.store.backups import BackupStore, RestoreJobStore
from pgcluster.store.clusters import ClusterStore
from pgcluster.tasks.outbox import OutboxStore

logger = logging.getLogger(__name__)

TREND_DAYS = 30

STEP_PROGRESS: dict[BackupStep, int] = {
    BackupStep.PREPARING: 10,
    BackupStep.BACKING_UP: 30,
    BackupStep.UPLOADING: 70,
    BackupStep.VERIFYING: 90,
    BackupStep.COMPLETED: 100,
}


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def repository_path(cluster: Cluster) -> str:
    return f"pgbackrest/{cluster.cluster_id}"


def archive_path(cluster: Cluster) -> str:
    return f"pgbackrest/{cluster.cluster_id}/archive/{cluster.slug}"


class BackupEngine:
    """Creates, runs and retires the physical backups of every cluster."""

    def __init__(
        self,
        db: Database,
        clusters: ClusterStore,
        backups: BackupStore,
        restore_jobs: RestoreJobStore,
        tool: BackupTool,
        discovery: LeaderDiscovery,
        config: ControlPlaneConfig,
        storage: ObjectStorage | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._db = db
        self._clusters = clusters
        self._backups = backups
        self._restore_jobs = restore_jobs
        self._tool = tool
        self._discovery = discovery
        self._config = config
        self._storage = storage
        self._clock = clock
        self._retention = chain.RetentionPolicy(
            daily_days=config.retention_daily,
            weekly_weeks=config.retention_weekly,
            monthly_months=config.retention_monthly,
        )

    @property
    def retention(self) -> chain.RetentionPolicy:
        return self._retention

    # ------------------------------------------------------------------
    # Outbox handlers
    # ------------------------------------------------------------------

    def handle_backup_created(self, event: OutboxEvent) -> None:
        self.execute_backup(event.aggregate_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_backup(
        self,
        cluster_id: str,
        requested_type: str | BackupType | None = None,
        owner: str | None = None,
    ) -> Backup:
        """Queue a manual backup of a RUNNING cluster."""
        if not self._config.storage_configured:
            raise StateConflictError(
                "Backup functionality is not configured. Please configure object storage."
            )
        backup_type = chain.normalize_backup_type(requested_type)
        cluster = self._get_cluster(cluster_id, owner)
        if cluster.status is not ClusterStatus.RUNNING:
            raise StateConflictError("Cluster must be running to create a backup")
        if self._backups.has_active(cluster_id):
            raise StateConflictError(
                "A backup is already in progress for this cluster. Please wait for it to complete."
            )
        if self._restore_jobs.has_active(cluster_id):
            raise StateConflictError(
                "A restore operation is in progress for this cluster. Please wait for it to complete."
            )

        backup = self._enqueue(cluster, BackupKind.MANUAL, backup_type)
        logger.info(
            "Created manual %s backup %s for cluster %s",
            (backup_type or BackupType.INCR).value, backup.backup_id, cluster.slug,
        )
        return backup

    def create_scheduled_backups(self, kind: BackupKind) -> list[Backup]:
        """Queue a *kind* backup for every RUNNING cluster without an active one."""
        if kind is BackupKind.MANUAL:
            raise ValueError("Scheduled backups need a scheduled kind")
        if not self._config.storage_configured:
            logger.debug("Object storage not configured, skipping %s backups", kind.value)
            return []

        logger.info("Starting %s backups", kind.value)
        created: list[Backup] = []
        for cluster in self._clusters.list_clusters(statuses=(ClusterStatus.RUNNING,)):
            if self._backups.has_active(cluster.cluster_id):
                logger.warning("Skipping %s backup of %s: a backup is already active", kind.value, cluster.slug)
                continue
            if self._restore_jobs.has_active(cluster.cluster_id):
                logger.warning("Skipping %s backup of %s: a restore is in progress", kind.value, cluster.slug)
                continue
            try:
                created.append(self._enqueue(cluster, kind, None))
            except StateConflictError:
                logger.warning("Skipping %s backup of %s: a backup is already active", kind.value, cluster.slug)
            except Exception:
                logger.exception("Failed to create %s backup for %s", kind.value, cluster.slug)
        logger.info("Queued %d %s backups", len(created), kind.value)
        return created

    def _enqueue(self, cluster: Cluster, kind: BackupKind, requested: BackupType | None) -> Backup:
        backup = Backup(
            backup_id=str(uuid.uuid4()),
            cluster_id=cluster.cluster_id,
            kind=kind,
            status=BackupStatus.PENDING,
            requested_backup_type=requested,
            retention=chain.retention_for(kind),
            current_step=BackupStep.PENDING,
            progress_percent=0,
            created_at=self._clock(),
        )
        try:
            with self._db.transaction() as conn:
                BackupStore.insert(conn, backup)
                OutboxStore.enqueue(conn, EventKind.BACKUP_CREATED, backup.backup_id)
        except sqlite3.IntegrityError as exc:
            raise StateConflictError(
                "A backup is already in progress for this cluster. Please wait for it to complete."
            ) from exc
        return backup

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_backup(self, backup_id: str) -> Backup | None:
        """Run a PENDING backup to completion.

        Returns the completed backup, or ``None`` if it was no longer pending.
        On failure the backup is marked FAILED and the error re-raised.
        """
        backup = self._backups.get(backup_id)
        if backup is None:
            raise NotFoundError(f"Backup not found: {backup_id}")
        cluster = self._clusters.get(backup.cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {backup.cluster_id}")

        if not self._backups.start(backup_id, repository_path(cluster), archive_path(cluster), self._clock()):
            logger.warning("Backup %s is %s, not pending; skipping", backup_id, backup.status.value)
            return None
        logger.info("Starting backup %s of cluster %s", backup_id, cluster.slug)

        try:
            self._step(backup_id, BackupStep.PREPARING)
            if cluster.status is not ClusterStatus.RUNNING:
                raise StateConflictError(f"Cluster {cluster.slug} is {cluster.status.value}, not running")
            leader = self._leader(cluster)

            self._step(backup_id, BackupStep.BACKING_UP)
            backup_type = chain.resolve_backup_type(backup.requested_backup_type, backup.kind)
            result = self._tool.backup(node_address(leader), cluster.slug, backup_type)

            self._step(backup_id, BackupStep.UPLOADING)
            self._step(backup_id, BackupStep.VERIFYING)

            now = self._clock()
            started = self._backups.get(backup_id) or backup
            completed = started.model_copy(
                update={
                    "status": BackupStatus.COMPLETED,
                    "backup_type": result.backup_type,
                    "label": result.label,
                    "size_bytes": result.size_bytes or 0,
                    "wal_start": result.wal_start,
                    "wal_stop": result.wal_stop,
                    "earliest_recovery_time": result.started_at or started.started_at,
                    "latest_recovery_time": result.stopped_at or now,
                    "expires_at": self._retention.expires_at(backup.retention, now),
                    "current_step": BackupStep.COMPLETED,
                    "progress_percent": STEP_PROGRESS[BackupStep.COMPLETED],
                    "completed_at": now,
                }
            )
            self._backups.complete(completed)
        except Exception as exc:
            logger.exception("Backup %s of cluster %s failed", backup_id, cluster.slug)
            self._mark_failed(backup_id, str(exc))
            raise

        logger.info(
            "Backup %s of %s completed: %s %s, %d bytes",
            backup_id, cluster.slug, completed.backup_type, completed.label, completed.size_bytes or 0,
        )
        return completed

    def _step(self, backup_id: str, step: BackupStep) -> None:
        self._backups.update_step(backup_id, step, STEP_PROGRESS[step])

    def _mark_failed(self, backup_id: str, message: str) -> None:
        try:
            self._backups.mark_failed(backup_id, message)
        except Exception:
            logger.exception("Failed to record failure of backup %s", backup_id)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def deletion_info(self, cluster_id: str, backup_id: str, owner: str | None = None) -> BackupDeletionInfo:
        """What deleting *backup_id* would remove."""
        self._get_cluster(cluster_id, owner)
        backup = self.get_backup(cluster_id, backup_id)
        if backup.status is BackupStatus.DELETED:
            raise StateConflictError("This backup is already deleted")
        dependents = chain.find_dependents(backup, self._backups.list_for_cluster(cluster_id))
        return chain.deletion_info(backup, dependents)

    def delete_backup(
        self,
        cluster_id: str,
        backup_id: str,
        confirm: bool = False,
        owner: str | None = None,
    ) -> BackupDeletionInfo:
        """Expire a backup and its chain in the repository and mark them DELETED."""
        cluster = self._get_cluster(cluster_id, owner)
        backup = self.get_backup(cluster_id, backup_id)
        if backup.status is BackupStatus.DELETED:
            raise StateConflictError("This backup is already deleted")
        if cluster.status is not ClusterStatus.RUNNING:
            raise StateConflictError(
                f"Cluster must be running to delete backups. Current status: {cluster.status.value}"
            )

        backups = self._backups.list_for_cluster(cluster_id)
        if chain.is_only_full(backup, backups):
            raise StateConflictError(
                "Cannot delete the only full backup. The backup tool requires at least one full "
                "backup in the repository. Create a new full backup first, then delete this one."
            )

        dependents = chain.find_dependents(backup, backups)
        if dependents and not confirm:
            raise StateConflictError(
                f"This backup has {len(dependents)} dependent backup(s). "
                "Use confirm=true to delete all, or check the deletion info first.",
                dependent_count=len(dependents),
            )

        if backup.label:
            leader = self._leader(cluster)
            self._tool.expire_set(node_address(leader), cluster.slug, backup.label)

        self._backups.set_status(
            [backup.backup_id, *(d.backup_id for d in dependents)], BackupStatus.DELETED
        )
        logger.info(
            "Deleted backup %s of %s with %d dependents", backup_id, cluster.slug, len(dependents)
        )
        return chain.deletion_info(backup, dependents)

    def expire_sweep(self) -> int:
        """Retire every completed backup past its ``expires_at``.

        Returns the number marked EXPIRED. A failure for one backup is
        logged and the sweep moves on.
        """
        if self._storage is None:
            logger.debug("No object storage configured, skipping backup expiry")
            return 0

        expired = self._backups.list_expired(self._clock())
        count = 0
        for backup in expired:
            try:
                prefix = self._backup_prefix(backup)
                if prefix is not None:
                    self._storage.delete_prefix(prefix)
                self._backups.set_status([backup.backup_id], BackupStatus.EXPIRED)
                count += 1
                logger.info("Expired backup %s", backup.backup_id)
            except Exception as exc:
                logger.error("Failed to expire backup %s: %s", backup.backup_id, exc)
        logger.info("Backup expiry processed %d of %d expired backups", count, len(expired))
        return count

    def _backup_prefix(self, backup: Backup) -> str | None:
        """Object prefix of one backup set inside its cluster's repository."""
        if not backup.base_path or not backup.label:
            return None
        cluster = self._clusters.get(backup.cluster_id)
        if cluster is None:
            return None
        return f"{backup.base_path}/backup/{cluster.slug}/{backup.label}/"

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_backup(self, cluster_id: str, backup_id: str, owner: str | None = None) -> Backup:
        if owner is not None:
            self._get_cluster(cluster_id, owner)
        backup = self._backups.get(backup_id)
        if backup is None or backup.cluster_id != cluster_id:
            raise NotFoundError(f"Backup not found: {backup_id}")
        return backup

    def list_backups(
        self,
        cluster_id: str,
        owner: str | None = None,
        include_deleted: bool = False,
    ) -> list[Backup]:
        """Backups of a cluster, newest first."""
        self._get_cluster(cluster_id, owner)
        backups = self._backups.list_for_cluster(cluster_id)
        if not include_deleted:
            backups = [b for b in backups if b.status is not BackupStatus.DELETED]
        return list(reversed(backups))

    def recovery_window(self, cluster_id: str, owner: str | None = None) -> RecoveryWindow:
        self._get_cluster(cluster_id, owner)
        return chain.recovery_window(
            cluster_id, self._backups.list_for_cluster(cluster_id, (BackupStatus.COMPLETED,))
        )

    def metrics(self, cluster_id: str, owner: str | None = None) -> BackupMetrics:
        self._get_cluster(cluster_id, owner)
        completed = self._backups.list_for_cluster(cluster_id, (BackupStatus.COMPLETED,))
        return BackupMetrics(
            cluster_id=cluster_id,
            total_size_bytes=sum(b.size_bytes or 0 for b in completed),
            backup_count=len(completed),
            oldest_backup=completed[0].created_at if completed else None,
            newest_backup=completed[-1].created_at if completed else None,
            recovery_window=chain.recovery_window(cluster_id, completed),
            storage_trend=chain.storage_trend(completed, self._clock().date(), TREND_DAYS),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get_cluster(self, cluster_id: str, owner: str | None) -> Cluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None or (owner is not None and cluster.owner != owner):
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        return cluster

    def _leader(self, cluster: Cluster) -> Node:
        leader = self._discovery.find_leader(cluster.nodes)
        if leader is None:
            raise InfrastructureError(f"No leader node found for cluster {cluster.slug}")
        return leader
