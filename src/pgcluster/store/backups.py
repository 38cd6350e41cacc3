"""Persistence for backups and restore jobs."""

from __future__ import annotations

import sqlite3
from collections.abc import Iterable
from datetime import UTC, datetime

from pgcluster.db.connection import Database
from pgcluster.db.timestamps import from_db, to_db
from pgcluster.models import (
    Backup,
    BackupKind,
    BackupStatus,
    BackupStep,
    BackupType,
    RestoreJob,
    RestoreStatus,
    RestoreStep,
    RestoreType,
    RetentionClass,
)


class BackupStore:
    """Reads and writes ``backups`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def insert(conn: sqlite3.Connection, backup: Backup) -> None:
        """Insert *backup* using the caller's transaction.

        Raises ``sqlite3.IntegrityError`` if the cluster already has an
        active backup.
        """
        conn.execute(
            """INSERT INTO backups
               (backup_id, cluster_id, kind, status, requested_backup_type,
                retention, current_step, progress_percent, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                backup.backup_id,
                backup.cluster_id,
                backup.kind.value,
                backup.status.value,
                backup.requested_backup_type.value if backup.requested_backup_type else None,
                backup.retention.value,
                backup.current_step.value,
                backup.progress_percent,
                to_db(backup.created_at),
            ),
        )

    def get(self, backup_id: str) -> Backup | None:
        row = self._db.fetchone("SELECT * FROM backups WHERE backup_id = ?", (backup_id,))
        return self._row_to_backup(row) if row else None

    def list_for_cluster(
        self,
        cluster_id: str,
        statuses: Iterable[BackupStatus] | None = None,
    ) -> list[Backup]:
        """Backups of a cluster, oldest first."""
        if statuses is None:
            rows = self._db.fetchall(
                "SELECT * FROM backups WHERE cluster_id = ? ORDER BY created_at",
                (cluster_id,),
            )
        else:
            wanted = [s.value for s in statuses]
            rows = self._db.fetchall(
                f"""SELECT * FROM backups
                    WHERE cluster_id = ? AND status IN ({', '.join('?' for _ in wanted)})
                    ORDER BY created_at""",
                (cluster_id, *wanted),
            )
        return [self._row_to_backup(r) for r in rows]

    def has_active(self, cluster_id: str) -> bool:
        row = self._db.fetchone(
            """SELECT 1 FROM backups
               WHERE cluster_id = ? AND status IN ('pending', 'in_progress')""",
            (cluster_id,),
        )
        return row is not None

    def start(self, backup_id: str, base_path: str, wal_path: str, now: datetime) -> bool:
        """Move a PENDING backup to IN_PROGRESS. Returns ``False`` if it wasn't pending."""
        count = self._db.write(
            """UPDATE backups
               SET status = 'in_progress', base_path = ?, wal_path = ?, started_at = ?
               WHERE backup_id = ? AND status = 'pending'""",
            (base_path, wal_path, to_db(now), backup_id),
        )
        return count > 0

    def update_step(self, backup_id: str, step: BackupStep, progress: int) -> None:
        self._db.write(
            "UPDATE backups SET current_step = ?, progress_percent = ? WHERE backup_id = ?",
            (step.value, progress, backup_id),
        )

    def complete(self, backup: Backup) -> None:
        """Persist the tool-reported result of a finished backup."""
        self._db.write(
            """UPDATE backups
               SET status = ?, backup_type = ?, label = ?, size_bytes = ?,
                   wal_start = ?, wal_stop = ?, earliest_recovery_time = ?,
                   latest_recovery_time = ?, expires_at = ?, current_step = ?,
                   progress_percent = ?, completed_at = ?, error_message = NULL
               WHERE backup_id = ?""",
            (
                BackupStatus.COMPLETED.value,
                backup.backup_type.value if backup.backup_type else None,
                backup.label,
                backup.size_bytes,
                backup.wal_start,
                backup.wal_stop,
                to_db(backup.earliest_recovery_time),
                to_db(backup.latest_recovery_time),
                to_db(backup.expires_at),
                BackupStep.COMPLETED.value,
                100,
                to_db(backup.completed_at),
                backup.backup_id,
            ),
        )

    def mark_failed(self, backup_id: str, message: str) -> None:
        self._db.write(
            """UPDATE backups SET status = ?, current_step = ?, error_message = ?
               WHERE backup_id = ?""",
            (BackupStatus.FAILED.value, BackupStep.FAILED.value, message, backup_id),
        )

    def fail_interrupted(self, message: str) -> int:
        """Fail every IN_PROGRESS backup. Returns how many were failed."""
        return self._db.write(
            """UPDATE backups SET status = ?, current_step = ?, error_message = ?
               WHERE status = 'in_progress'""",
            (BackupStatus.FAILED.value, BackupStep.FAILED.value, message),
        )

    def set_status(self, backup_ids: Iterable[str], status: BackupStatus) -> None:
        """Set *status* on several backups in one commit."""
        ids = list(backup_ids)
        if not ids:
            return
        with self._db.transaction() as conn:
            conn.executemany(
                "UPDATE backups SET status = ? WHERE backup_id = ?",
                [(status.value, backup_id) for backup_id in ids],
            )

    def list_expired(self, now: datetime) -> list[Backup]:
        rows = self._db.fetchall(
            """SELECT * FROM backups
               WHERE status = 'completed' AND expires_at IS NOT NULL AND expires_at < ?
               ORDER BY expires_at""",
            (to_db(now),),
        )
        return [self._row_to_backup(r) for r in rows]

    @staticmethod
    def _row_to_backup(row: sqlite3.Row) -> Backup:
        return Backup(
            backup_id=row["backup_id"],
            cluster_id=row["cluster_id"],
            kind=BackupKind(row["kind"]),
            status=BackupStatus(row["status"]),
            requested_backup_type=(
                BackupType(row["requested_backup_type"]) if row["requested_backup_type"] else None
            ),
            backup_type=BackupType(row["backup_type"]) if row["backup_type"] else None,
            label=row["label"],
            size_bytes=row["size_bytes"],
            base_path=row["base_path"],
            wal_path=row["wal_path"],
            wal_start=row["wal_start"],
            wal_stop=row["wal_stop"],
            earliest_recovery_time=from_db(row["earliest_recovery_time"]),
            latest_recovery_time=from_db(row["latest_recovery_time"]),
            retention=RetentionClass(row["retention"]),
            expires_at=from_db(row["expires_at"]),
            current_step=BackupStep(row["current_step"]),
            progress_percent=row["progress_percent"],
            error_message=row["error_message"],
            started_at=from_db(row["started_at"]),
            completed_at=from_db(row["completed_at"]),
            created_at=from_db(row["created_at"]),
        )


class RestoreJobStore:
    """Reads and writes ``restore_jobs`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def insert(conn: sqlite3.Connection, job: RestoreJob) -> None:
        """Insert *job* using the caller's transaction.

        Raises ``sqlite3.IntegrityError`` if the source cluster already has
        an active restore.
        """
        conn.execute(
            """INSERT INTO restore_jobs
               (job_id, source_cluster_id, target_cluster_id, backup_id, restore_type,
                target_time, status, current_step, progress, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                job.job_id,
                job.source_cluster_id,
                job.target_cluster_id,
                job.backup_id,
                job.restore_type.value,
                to_db(job.target_time),
                job.status.value,
                job.current_step.value if job.current_step else None,
                job.progress,
                to_db(job.created_at),
            ),
        )

    def get(self, job_id: str) -> RestoreJob | None:
        row = self._db.fetchone("SELECT * FROM restore_jobs WHERE job_id = ?", (job_id,))
        return self._row_to_job(row) if row else None

    def list_for_cluster(self, source_cluster_id: str) -> list[RestoreJob]:
        rows = self._db.fetchall(
            """SELECT * FROM restore_jobs WHERE source_cluster_id = ?
               ORDER BY created_at DESC""",
            (source_cluster_id,),
        )
        return [self._row_to_job(r) for r in rows]

    def has_active(self, source_cluster_id: str) -> bool:
        row = self._db.fetchone(
            """SELECT 1 FROM restore_jobs
               WHERE source_cluster_id = ? AND status IN ('pending', 'in_progress')""",
            (source_cluster_id,),
        )
        return row is not None

    def start(self, job_id: str) -> bool:
        count = self._db.write(
            """UPDATE restore_jobs SET status = 'in_progress'
               WHERE job_id = ? AND status = 'pending'""",
            (job_id,),
        )
        return count > 0

    def update_progress(self, job_id: str, step: RestoreStep, progress: int) -> None:
        self._db.write(
            """UPDATE restore_jobs SET current_step = ?, progress = ?
               WHERE job_id = ? AND status = 'in_progress'""",
            (step.value, progress, job_id),
        )

    def complete(self, job_id: str, now: datetime) -> None:
        self._db.write(
            """UPDATE restore_jobs
               SET status = ?, current_step = ?, progress = 100, completed_at = ?
               WHERE job_id = ?""",
            (RestoreStatus.COMPLETED.value, RestoreStep.COMPLETED.value, to_db(now), job_id),
        )

    def mark_failed(self, job_id: str, message: str) -> None:
        self._db.write(
            """UPDATE restore_jobs SET status = ?, current_step = ?, error_message = ?
               WHERE job_id = ? AND status IN ('pending', 'in_progress')""",
            (RestoreStatus.FAILED.value, RestoreStep.FAILED.value, message, job_id),
        )

    def fail_interrupted(self, message: str) -> int:
        """Fail every IN_PROGRESS restore job. Returns how many were failed."""
        return self._db.write(
            """UPDATE restore_jobs SET status = ?, current_step = ?, error_message = ?
               WHERE status = 'in_progress'""",
            (RestoreStatus.FAILED.value, RestoreStep.FAILED.value, message),
        )

    def cancel_active(self, cluster_id: str, reason: str) -> int:
        """Cancel pending/in-progress jobs that read from or write to *cluster_id*."""
        return self._db.write(
            """UPDATE restore_jobs
               SET status = ?, error_message = ?, completed_at = ?
               WHERE (source_cluster_id = ? OR target_cluster_id = ?)
                 AND status IN ('pending', 'in_progress')""",
            (
                RestoreStatus.CANCELLED.value,
                reason,
                to_db(datetime.now(tz=UTC)),
                cluster_id,
                cluster_id,
            ),
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> RestoreJob:
        return RestoreJob(
            job_id=row["job_id"],
            source_cluster_id=row["source_cluster_id"],
            target_cluster_id=row["target_cluster_id"],
            backup_id=row["backup_id"],
            restore_type=RestoreType(row["restore_type"]),
            target_time=from_db(row["target_time"]),
            status=RestoreStatus(row["status"]),
            current_step=RestoreStep(row["current_step"]) if row["current_step"] else None,
            progress=row["progress"],
            error_message=row["error_message"],
            created_at=from_db(row["created_at"]),
            completed_at=from_db(row["completed_at"]),
        )
