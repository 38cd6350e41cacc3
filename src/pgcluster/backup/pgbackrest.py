"""Thin wrapper around the backup tool running inside the controller container.

Every call goes through the remote command primitive against one node
(normally the leader). Results come back from ``info --output=json``; the
last entry of the stanza's backup list is the most recent backup.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel

from pgcluster.errors import RemoteCommandError
from pgcluster.models import BackupType
from pgcluster.provisioning.templates import PG_DATA_PATH
from pgcluster.remote.executor import RemoteExecutor

logger = logging.getLogger(__name__)

CONTAINER = "patroni"
INFO_TIMEOUT = 15.0
SERVICE_TIMEOUT = 120.0


class BackupToolError(RemoteCommandError):
    """Raised when the backup tool fails or reports nothing usable."""


class ToolBackupInfo(BaseModel):
    """One backup as reported by ``info --output=json``."""

    label: str
    backup_type: BackupType = BackupType.FULL
    size_bytes: int = 0
    repo_size_bytes: int | None = None
    wal_start: str | None = None
    wal_stop: str | None = None
    started_at: datetime | None = None
    stopped_at: datetime | None = None
    prior: str | None = None


def tool_backup_type(value: Any) -> BackupType:
    """Map the tool's type label; unknown or missing labels mean a full backup."""
    if isinstance(value, str):
        try:
            return BackupType(value.strip().lower())
        except ValueError:
            pass
    return BackupType.FULL


def _epoch(value: Any) -> datetime | None:
    if isinstance(value, int | float) and value > 0:
        return datetime.fromtimestamp(value, tz=UTC)
    return None


def _int(value: Any) -> int | None:
    return int(value) if isinstance(value, int | float) else None


def parse_info(payload: str) -> list[ToolBackupInfo]:
    """Parse ``info --output=json`` into backups, oldest first.

    Only the first stanza is read. Entries without a label are skipped.
    """
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise BackupToolError(f"Unparseable backup info: {exc}") from exc
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return []

    backups: list[ToolBackupInfo] = []
    for entry in data[0].get("backup") or []:
        if not isinstance(entry, dict) or not entry.get("label"):
            continue
        info = entry.get("info") or {}
        archive = entry.get("archive") or {}
        timestamp = entry.get("timestamp") or {}
        database = entry.get("database") or {}
        repository = info.get("repository") or {}
        backups.append(
            ToolBackupInfo(
                label=entry["label"],
                backup_type=tool_backup_type(entry.get("type")),
                size_bytes=_int(info.get("size")) or _int(database.get("repo-size")) or 0,
                repo_size_bytes=_int(repository.get("size")),
                wal_start=archive.get("start"),
                wal_stop=archive.get("stop"),
                started_at=_epoch(timestamp.get("start")),
                stopped_at=_epoch(timestamp.get("stop")),
                prior=entry.get("prior"),
            )
        )
    return backups


def restore_target(value: datetime) -> str:
    """Recovery target in the tool's ``YYYY-MM-DD HH:MM:SS`` form, UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S")


class BackupTool:
    """Runs backup-tool commands for one stanza on a given host."""

    def __init__(
        self,
        executor: RemoteExecutor,
        backup_timeout: float = 3600.0,
        restore_timeout: float = 7200.0,
    ) -> None:
        self._executor = executor
        self._backup_timeout = backup_timeout
        self._restore_timeout = restore_timeout

    def backup(self, host: str, stanza: str, backup_type: BackupType) -> ToolBackupInfo:
        """Take a backup and return what the tool recorded for it."""
        logger.info("Running %s backup of stanza %s on %s", backup_type.value, stanza, host)
        result = self._executor.execute(
            host,
            f"docker exec {CONTAINER} pgbackrest --stanza={stanza} --type={backup_type.value} backup",
            timeout=self._backup_timeout,
        )
        if not result.success:
            raise BackupToolError("Backup failed", result=result)

        latest = self.latest(host, stanza)
        if latest is None:
            raise BackupToolError("Backup completed but no backup info found")
        if latest.backup_type is not backup_type:
            logger.info(
                "Backup tool produced %s instead of requested %s for %s",
                latest.backup_type.value, backup_type.value, stanza,
            )
        return latest

    def info(self, host: str, stanza: str) -> list[ToolBackupInfo]:
        result = self._executor.execute(
            host,
            f"docker exec {CONTAINER} pgbackrest --stanza={stanza} info --output=json",
            timeout=INFO_TIMEOUT,
        )
        if not result.success:
            raise BackupToolError("Backup info failed", result=result)
        return parse_info(result.stdout)

    def latest(self, host: str, stanza: str) -> ToolBackupInfo | None:
        backups = self.info(host, stanza)
        return backups[-1] if backups else None

    def expire_set(self, host: str, stanza: str, label: str) -> None:
        """Expire one backup set; the tool also drops the sets depending on it."""
        logger.info("Expiring backup set %s of stanza %s", label, stanza)
        self._executor.execute(
            host,
            f"docker exec {CONTAINER} pgbackrest --stanza={stanza} --set={label} expire",
            timeout=self._backup_timeout,
        ).check(f"expire of backup set {label}")

    def restore(
        self,
        host: str,
        stanza: str,
        label: str | None = None,
        target_time: datetime | None = None,
    ) -> None:
        """Stop PostgreSQL, restore over its data directory, start it again."""
        logger.info("Stopping PostgreSQL on %s for restore", host)
        self._executor.execute(
            host,
            f"docker exec {CONTAINER} pg_ctl stop -D {PG_DATA_PATH} -m fast",
            timeout=SERVICE_TIMEOUT,
        ).check("PostgreSQL stop")

        command = f"docker exec {CONTAINER} pgbackrest --stanza={stanza} --delta"
        if label:
            command += f" --set={label}"
        if target_time is not None:
            command += f' --type=time --target="{restore_target(target_time)}"'
        command += " restore"
        logger.info("Restoring stanza %s on %s (set=%s, target=%s)", stanza, host, label, target_time)
        result = self._executor.execute(host, command, timeout=self._restore_timeout)
        if not result.success:
            raise BackupToolError("Restore failed", result=result)

        self._executor.execute(
            host,
            f"docker exec {CONTAINER} pg_ctl start -D {PG_DATA_PATH}",
            timeout=SERVICE_TIMEOUT,
        ).check("PostgreSQL start")
