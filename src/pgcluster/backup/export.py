"""Logical exports: ``pg_dump`` of a cluster's database to object storage.

The dump is written and compressed on the leader node and uploaded from
there with a presigned PUT URL, so the dump never passes through the
control plane. This is the only background path that retries on its own:
a failed attempt resets the record to PENDING, waits a fixed delay and
starts over.
"""

from __future__ import annotations

import logging
import shlex
import sqlite3
import time
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from pgcluster.clients.storage import ObjectStorage
from pgcluster.config import ControlPlaneConfig
from pgcluster.db.connection import Database
from pgcluster.discovery.leader import LeaderDiscovery, node_address
from pgcluster.errors import (
    InfrastructureError,
    NotFoundError,
    PgClusterError,
    RemoteCommandError,
    StateConflictError,
)
from pgcluster.models import Cluster, ClusterStatus, EventKind, Export, ExportStatus, OutboxEvent
from pgcluster.remote.executor import RemoteExecutor
from pgcluster.store.clusters import ClusterStore
from pgcluster.store.exports import ExportStore
from pgcluster.tasks.outbox import OutboxStore

logger = logging.getLogger(__name__)

DUMP_PATH = "/tmp/export.sql.gz"
DUMP_ERROR_LOG = "/tmp/pg_dump_err.log"
UPLOAD_URL_EXPIRY = 3600

# --no-owner/--no-privileges keep the dump loadable on other providers
DUMP_COMMAND = (
    "docker exec patroni bash -c 'set -o pipefail; "
    "pg_dump -U postgres -h localhost -Fp --no-owner --no-privileges postgres "
    f"2>{DUMP_ERROR_LOG} | gzip > {DUMP_PATH} || {{ cat {DUMP_ERROR_LOG}; exit 1; }}'"
)
SIZE_COMMAND = f"docker exec patroni sh -c 'wc -c < {DUMP_PATH}'"


class ExportError(PgClusterError):
    """Raised when a dump could not be produced or uploaded."""


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


def export_key(cluster: Cluster, now: datetime) -> str:
    return f"exports/{cluster.cluster_id}/{cluster.slug}_{now:%Y-%m-%dT%H-%M-%S}.sql.gz"


class ExportService:
    """Creates and runs logical exports."""

    def __init__(
        self,
        db: Database,
        clusters: ClusterStore,
        exports: ExportStore,
        executor: RemoteExecutor,
        discovery: LeaderDiscovery,
        config: ControlPlaneConfig,
        storage: ObjectStorage | None = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._db = db
        self._clusters = clusters
        self._exports = exports
        self._executor = executor
        self._discovery = discovery
        self._config = config
        self._storage = storage
        self._clock = clock
        self._sleep = sleep

    @property
    def download_expiry(self) -> timedelta:
        return timedelta(hours=self._config.export_download_expiry_hours)

    # ------------------------------------------------------------------
    # Outbox handlers
    # ------------------------------------------------------------------

    def handle_export_created(self, event: OutboxEvent) -> None:
        self.execute_export(event.aggregate_id)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def create_export(self, cluster_id: str, owner: str | None = None) -> Export:
        if self._storage is None:
            raise StateConflictError(
                "Export functionality is not configured. Please configure object storage."
            )
        cluster = self._get_cluster(cluster_id, owner)
        if cluster.status is not ClusterStatus.RUNNING:
            raise StateConflictError("Cluster must be running to create an export")
        if self._exports.has_active(cluster_id):
            raise StateConflictError(
                "An export is already in progress for this cluster. Please wait for it to complete."
            )

        export = Export(
            export_id=str(uuid.uuid4()),
            cluster_id=cluster_id,
            status=ExportStatus.PENDING,
            created_at=self._clock(),
        )
        try:
            with self._db.transaction() as conn:
                ExportStore.insert(conn, export)
                OutboxStore.enqueue(conn, EventKind.EXPORT_CREATED, export.export_id)
        except sqlite3.IntegrityError as exc:
            raise StateConflictError(
                "An export is already in progress for this cluster. Please wait for it to complete."
            ) from exc

        logger.info("Created export %s for cluster %s", export.export_id, cluster.slug)
        return export

    def refresh_download_url(self, cluster_id: str, export_id: str, owner: str | None = None) -> Export:
        export = self.get_export(cluster_id, export_id, owner)
        if export.status is not ExportStatus.COMPLETED:
            raise StateConflictError("Can only refresh download URL for completed exports")
        if not export.object_key or self._storage is None:
            raise StateConflictError("Export has no stored object")
        url = self._storage.presigned_get_url(export.object_key, int(self.download_expiry.total_seconds()))
        self._exports.set_download_url(export_id, url, self._clock() + self.download_expiry)
        return self.get_export(cluster_id, export_id)

    def delete_export(self, cluster_id: str, export_id: str, owner: str | None = None) -> None:
        """Delete an export record; removal of the stored object is best effort."""
        export = self.get_export(cluster_id, export_id, owner)
        if export.status is ExportStatus.IN_PROGRESS:
            raise StateConflictError("Cannot delete an export that is in progress")
        if export.object_key and self._storage is not None:
            try:
                self._storage.delete_prefix(export.object_key)
            except Exception as exc:
                logger.warning("Failed to delete export object %s: %s", export.object_key, exc)
        self._exports.delete(export_id)
        logger.info("Deleted export %s of cluster %s", export_id, cluster_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute_export(self, export_id: str) -> Export:
        """Run an export with up to ``export_max_retries`` extra attempts.

        The final failure is persisted and re-raised.
        """
        if self._exports.get(export_id) is None:
            raise NotFoundError(f"Export not found: {export_id}")

        attempts = self._config.export_max_retries + 1
        delay = self._config.export_retry_delay
        attempt = 1
        while True:
            try:
                return self._run(export_id)
            except Exception as exc:
                if attempt >= attempts:
                    logger.error("Export %s failed after %d attempts: %s", export_id, attempt, exc)
                    self._mark_failed(export_id, str(exc))
                    raise
                logger.warning(
                    "Export %s failed on attempt %d/%d, retrying in %.0fs: %s",
                    export_id, attempt, attempts, delay, exc,
                )
                if not self._reset_for_retry(export_id):
                    self._mark_failed(export_id, str(exc))
                    raise
                self._sleep(delay)
                attempt += 1

    def _run(self, export_id: str) -> Export:
        export = self._exports.get(export_id)
        if export is None:
            raise NotFoundError(f"Export not found: {export_id}")
        cluster = self._clusters.get(export.cluster_id)
        if cluster is None:
            raise NotFoundError(f"Cluster not found: {export.cluster_id}")
        if self._storage is None:
            raise ExportError("Object storage is not configured")

        now = self._clock()
        self._exports.start_attempt(export_id, now)
        logger.info("Starting export %s of cluster %s", export_id, cluster.slug)

        leader = self._discovery.find_leader(cluster.nodes)
        if leader is None:
            raise InfrastructureError(f"No leader node found for cluster {cluster.slug}")
        host = node_address(leader)

        key = export_key(cluster, now)
        self._exports.set_object_key(export_id, key)

        result = self._executor.execute(host, DUMP_COMMAND, timeout=self._config.export_timeout)
        if not result.success:
            raise RemoteCommandError("pg_dump failed", result=result)

        if self._dump_size(host) <= 0:
            detail = self._executor.execute(
                host, f"docker exec patroni sh -c 'cat {DUMP_ERROR_LOG} 2>/dev/null'", timeout=10
            ).stdout.strip()
            raise ExportError(f"Export file is empty. pg_dump error: {detail or 'none reported'}")

        logger.info("Uploading export %s to %s", export_id, key)
        upload_url = self._storage.presigned_put_url(key, UPLOAD_URL_EXPIRY)
        self._executor.execute(
            host,
            f"docker exec patroni curl -sf -X PUT -T {DUMP_PATH} {shlex.quote(upload_url)}",
            timeout=self._config.export_timeout,
        ).check("export upload")

        size = self._storage.head_size(key)
        if not size:
            raise ExportError("Export upload verification failed: object not found in storage")

        download_url = self._storage.presigned_get_url(key, int(self.download_expiry.total_seconds()))
        finished = self._clock()
        self._executor.execute(host, f"docker exec patroni rm -f {DUMP_PATH} {DUMP_ERROR_LOG}", timeout=10)
        self._exports.complete(export_id, size, download_url, finished + self.download_expiry, finished)
        logger.info("Export %s completed: %d bytes", export_id, size)
        return self._exports.get(export_id) or export

    def _dump_size(self, host: str) -> int:
        result = self._executor.execute(host, SIZE_COMMAND, timeout=30)
        if not result.success:
            return 0
        try:
            return int(result.stdout.strip() or 0)
        except ValueError:
            logger.warning("Could not parse dump size: %r", result.stdout)
            return 0

    def _reset_for_retry(self, export_id: str) -> bool:
        try:
            self._exports.reset_for_retry(export_id)
        except Exception:
            logger.exception("Failed to reset export %s for retry", export_id)
            return False
        return True

    def _mark_failed(self, export_id: str, message: str) -> None:
        try:
            self._exports.mark_failed(export_id, message)
        except Exception:
            logger.exception("Failed to record failure of export %s", export_id)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_export(self, cluster_id: str, export_id: str, owner: str | None = None) -> Export:
        self._get_cluster(cluster_id, owner)
        export = self._exports.get(export_id)
        if export is None or export.cluster_id != cluster_id:
            raise NotFoundError(f"Export not found: {export_id}")
        return export

    def list_exports(self, cluster_id: str, owner: str | None = None) -> list[Export]:
        self._get_cluster(cluster_id, owner)
        return self._exports.list_for_cluster(cluster_id)

    def _get_cluster(self, cluster_id: str, owner: str | None) -> Cluster:
        cluster = self._clusters.get(cluster_id)
        if cluster is None or (owner is not None and cluster.owner != owner):
            raise NotFoundError(f"Cluster not found: {cluster_id}")
        return cluster
