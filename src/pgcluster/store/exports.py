"""Persistence for logical exports."""

from __future__ import annotations

import sqlite3
from datetime import datetime

from pgcluster.db.connection import Database
from pgcluster.db.timestamps import from_db, to_db
from pgcluster.models import Export, ExportStatus


class ExportStore:
    """Reads and writes ``exports`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def insert(conn: sqlite3.Connection, export: Export) -> None:
        conn.execute(
            """INSERT INTO exports (export_id, cluster_id, status, created_at)
               VALUES (?, ?, ?, ?)""",
            (export.export_id, export.cluster_id, export.status.value, to_db(export.created_at)),
        )

    def get(self, export_id: str) -> Export | None:
        row = self._db.fetchone("SELECT * FROM exports WHERE export_id = ?", (export_id,))
        return self._row_to_export(row) if row else None

    def list_for_cluster(self, cluster_id: str) -> list[Export]:
        rows = self._db.fetchall(
            "SELECT * FROM exports WHERE cluster_id = ? ORDER BY created_at DESC",
            (cluster_id,),
        )
        return [self._row_to_export(r) for r in rows]

    def has_active(self, cluster_id: str) -> bool:
        row = self._db.fetchone(
            """SELECT 1 FROM exports
               WHERE cluster_id = ? AND status IN ('pending', 'in_progress')""",
            (cluster_id,),
        )
        return row is not None

    def start_attempt(self, export_id: str, now: datetime) -> None:
        self._db.write(
            """UPDATE exports
               SET status = 'in_progress', started_at = ?, attempts = attempts + 1
               WHERE export_id = ?""",
            (to_db(now), export_id),
        )

    def reset_for_retry(self, export_id: str) -> None:
        self._db.write(
            """UPDATE exports
               SET status = 'pending', error_message = NULL, started_at = NULL
               WHERE export_id = ?""",
            (export_id,),
        )

    def set_object_key(self, export_id: str, object_key: str) -> None:
        self._db.write(
            "UPDATE exports SET object_key = ? WHERE export_id = ?", (object_key, export_id)
        )

    def complete(
        self,
        export_id: str,
        size_bytes: int,
        download_url: str,
        download_expires_at: datetime,
        now: datetime,
    ) -> None:
        self._db.write(
            """UPDATE exports
               SET status = ?, size_bytes = ?, download_url = ?, download_expires_at = ?,
                   completed_at = ?, error_message = NULL
               WHERE export_id = ?""",
            (
                ExportStatus.COMPLETED.value,
                size_bytes,
                download_url,
                to_db(download_expires_at),
                to_db(now),
                export_id,
            ),
        )

    def set_download_url(self, export_id: str, download_url: str, expires_at: datetime) -> None:
        self._db.write(
            "UPDATE exports SET download_url = ?, download_expires_at = ? WHERE export_id = ?",
            (download_url, to_db(expires_at), export_id),
        )

    def delete(self, export_id: str) -> bool:
        return self._db.write("DELETE FROM exports WHERE export_id = ?", (export_id,)) > 0

    def mark_failed(self, export_id: str, message: str) -> None:
        self._db.write(
            "UPDATE exports SET status = ?, error_message = ? WHERE export_id = ?",
            (ExportStatus.FAILED.value, message, export_id),
        )

    @staticmethod
    def _row_to_export(row: sqlite3.Row) -> Export:
        return Export(
            export_id=row["export_id"],
            cluster_id=row["cluster_id"],
            status=ExportStatus(row["status"]),
            object_key=row["object_key"],
            size_bytes=row["size_bytes"],
            download_url=row["download_url"],
            download_expires_at=from_db(row["download_expires_at"]),
            error_message=row["error_message"],
            attempts=row["attempts"],
            started_at=from_db(row["started_at"]),
            completed_at=from_db(row["completed_at"]),
            created_at=from_db(row["created_at"]),
        )
