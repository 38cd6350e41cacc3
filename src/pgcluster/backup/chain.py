"""Backup chain rules: type resolution, retention and dependents.

A differential or incremental backup can only be restored together with
the full backup it was taken after. The chain of a full backup therefore
runs from its creation time up to (not including) the next full backup,
and expiring the full backup drops the whole chain.

Everything here is pure so the engine and the tests share one set of rules.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime, timedelta

from pydantic import BaseModel, Field

from pgcluster.errors import InvalidRequestError
from pgcluster.models import (
    Backup,
    BackupDeletionInfo,
    BackupKind,
    BackupStatus,
    BackupType,
    RecoveryWindow,
    RetentionClass,
    StorageTrendPoint,
)

_TYPE_ALIASES = {
    "full": BackupType.FULL,
    "diff": BackupType.DIFF,
    "differential": BackupType.DIFF,
    "incr": BackupType.INCR,
    "incremental": BackupType.INCR,
}

_SCHEDULE_TYPES = {
    BackupKind.SCHEDULED_DAILY: BackupType.DIFF,
    BackupKind.SCHEDULED_WEEKLY: BackupType.FULL,
    BackupKind.SCHEDULED_MONTHLY: BackupType.FULL,
}

_RETENTION_CLASSES = {
    BackupKind.MANUAL: RetentionClass.MANUAL,
    BackupKind.SCHEDULED_DAILY: RetentionClass.DAILY,
    BackupKind.SCHEDULED_WEEKLY: RetentionClass.WEEKLY,
    BackupKind.SCHEDULED_MONTHLY: RetentionClass.MONTHLY,
}


def normalize_backup_type(value: str | BackupType | None) -> BackupType | None:
    """Parse a caller-supplied type label. ``None`` and blank stay ``None``."""
    if value is None:
        return None
    if isinstance(value, BackupType):
        return value
    label = value.strip().lower()
    if not label:
        return None
    try:
        return _TYPE_ALIASES[label]
    except KeyError:
        raise InvalidRequestError(
            f"Invalid backup type {value!r}: use full, diff or incr"
        ) from None


def resolve_backup_type(requested: BackupType | None, kind: BackupKind) -> BackupType:
    """Type to ask the tool for.

    An explicit request wins, then the schedule (weekly and monthly take a
    full backup, daily a differential one), then incremental.
    """
    if requested is not None:
        return requested
    return _SCHEDULE_TYPES.get(kind, BackupType.INCR)


def retention_for(kind: BackupKind) -> RetentionClass:
    return _RETENTION_CLASSES[kind]


class RetentionPolicy(BaseModel):
    """How long each retention class keeps its backups."""

    daily_days: int = Field(7, ge=1)
    """Days a daily backup is kept."""

    weekly_weeks: int = Field(4, ge=1)
    """Weeks a weekly backup is kept."""

    monthly_months: int = Field(12, ge=1)
    """Months (of 30 days) a monthly backup is kept."""

    def lifetime(self, retention: RetentionClass) -> timedelta | None:
        """Lifetime for *retention*; ``None`` means the backup never expires."""
        if retention is RetentionClass.DAILY:
            return timedelta(days=self.daily_days)
        if retention is RetentionClass.WEEKLY:
            return timedelta(days=self.weekly_weeks * 7)
        if retention is RetentionClass.MONTHLY:
            return timedelta(days=self.monthly_months * 30)
        return None

    def expires_at(self, retention: RetentionClass, now: datetime) -> datetime | None:
        lifetime = self.lifetime(retention)
        return now + lifetime if lifetime is not None else None


# ------------------------------------------------------------------
# Chains
# ------------------------------------------------------------------


def _completed_full(backups: Iterable[Backup]) -> list[Backup]:
    return [
        b for b in backups
        if b.status is BackupStatus.COMPLETED and b.backup_type is BackupType.FULL
    ]


def is_only_full(backup: Backup, backups: Sequence[Backup]) -> bool:
    """True when *backup* is a full backup and no other completed full one exists."""
    if backup.backup_type is not BackupType.FULL:
        return False
    others = [b for b in _completed_full(backups) if b.backup_id != backup.backup_id]
    return not others


def find_dependents(backup: Backup, backups: Sequence[Backup]) -> list[Backup]:
    """Completed non-full backups that the tool drops together with *backup*.

    Those are the ones created strictly after *backup* and strictly before
    the next later full backup. A backup the tool never labelled has no
    chain in the repository.
    """
    if not backup.label:
        return []
    start = backup.created_at
    later_full = [b.created_at for b in _completed_full(backups) if b.created_at > start]
    end = min(later_full) if later_full else None

    return [
        b for b in backups
        if b.backup_id != backup.backup_id
        and b.status is BackupStatus.COMPLETED
        and b.backup_type is not BackupType.FULL
        and b.created_at > start
        and (end is None or b.created_at < end)
    ]


def deletion_info(backup: Backup, dependents: Sequence[Backup]) -> BackupDeletionInfo:
    total = (backup.size_bytes or 0) + sum(d.size_bytes or 0 for d in dependents)
    warning = None
    if dependents:
        kind = backup.backup_type.value if backup.backup_type else "backup"
        warning = (
            f"This {kind} backup has {len(dependents)} dependent backup(s) that will also "
            "be deleted. After deletion, the next backup will automatically be a full backup."
        )
    return BackupDeletionInfo(
        backup=backup,
        dependents=list(dependents),
        total_count=1 + len(dependents),
        total_size_bytes=total,
        requires_confirmation=bool(dependents),
        warning_message=warning,
    )


# ------------------------------------------------------------------
# Recovery window and metrics
# ------------------------------------------------------------------


def check_target_time(backup: Backup, target_time: datetime) -> None:
    """Reject a point-in-time target outside the backup's recovery window."""
    if backup.earliest_recovery_time and target_time < backup.earliest_recovery_time:
        raise InvalidRequestError(
            f"Target time is before the earliest recovery time ({backup.earliest_recovery_time.isoformat()})"
        )
    if backup.latest_recovery_time and target_time > backup.latest_recovery_time:
        raise InvalidRequestError(
            f"Target time is after the latest recovery time ({backup.latest_recovery_time.isoformat()})"
        )


def recovery_window(cluster_id: str, backups: Iterable[Backup]) -> RecoveryWindow:
    """Earliest and latest reachable timestamps over the completed backups."""
    completed = [b for b in backups if b.status is BackupStatus.COMPLETED]
    earliest = [b.earliest_recovery_time for b in completed if b.earliest_recovery_time]
    latest = [b.latest_recovery_time for b in completed if b.latest_recovery_time]
    return RecoveryWindow(
        cluster_id=cluster_id,
        available=bool(earliest and latest),
        earliest=min(earliest) if earliest else None,
        latest=max(latest) if latest else None,
        backup_count=len(completed),
    )


def storage_trend(backups: Sequence[Backup], today: date, days: int = 30) -> list[StorageTrendPoint]:
    """Total size of the backups that existed at the end of each of the last *days* days."""
    points: list[StorageTrendPoint] = []
    for offset in range(days - 1, -1, -1):
        day = today - timedelta(days=offset)
        size = sum(
            b.size_bytes or 0 for b in backups
            if b.created_at.date() <= day
        )
        points.append(StorageTrendPoint(day=day.isoformat(), size_bytes=size))
    return points
