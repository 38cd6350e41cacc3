"""Tests for backup chain rules: types, retention, dependents and windows."""

from __future__ import annotations

from datetime import timedelta

import pytest

from fakes import T0
from pgcluster.backup import chain
from pgcluster.errors import InvalidRequestError
from pgcluster.models import Backup, BackupKind, BackupStatus, BackupType, RetentionClass


def backup(
    backup_id: str,
    hours: float,
    backup_type: BackupType | None = BackupType.FULL,
    status: BackupStatus = BackupStatus.COMPLETED,
    size: int = 100,
    label: str | None = "label",
) -> Backup:
    created = T0 + timedelta(hours=hours)
    return Backup(
        backup_id=backup_id,
        cluster_id="c-1",
        status=status,
        backup_type=backup_type,
        label=label,
        size_bytes=size,
        earliest_recovery_time=created,
        latest_recovery_time=created + timedelta(minutes=10),
        created_at=created,
    )


class TestBackupTypes:
    @pytest.mark.parametrize(
        "label, expected",
        [
            ("full", BackupType.FULL),
            ("FULL", BackupType.FULL),
            ("diff", BackupType.DIFF),
            ("differential", BackupType.DIFF),
            ("incr", BackupType.INCR),
            (" Incremental ", BackupType.INCR),
            (None, None),
            ("", None),
        ],
    )
    def test_normalize(self, label, expected):
        assert chain.normalize_backup_type(label) is expected

    def test_normalize_rejects_unknown(self):
        with pytest.raises(InvalidRequestError, match="Invalid backup type"):
            chain.normalize_backup_type("snapshot")

    def test_explicit_request_wins(self):
        assert chain.resolve_backup_type(BackupType.INCR, BackupKind.SCHEDULED_WEEKLY) is BackupType.INCR

    @pytest.mark.parametrize(
        "kind, expected",
        [
            (BackupKind.SCHEDULED_DAILY, BackupType.DIFF),
            (BackupKind.SCHEDULED_WEEKLY, BackupType.FULL),
            (BackupKind.SCHEDULED_MONTHLY, BackupType.FULL),
            (BackupKind.MANUAL, BackupType.INCR),
        ],
    )
    def test_schedule_defaults(self, kind, expected):
        assert chain.resolve_backup_type(None, kind) is expected

    def test_retention_classes(self):
        assert chain.retention_for(BackupKind.MANUAL) is RetentionClass.MANUAL
        assert chain.retention_for(BackupKind.SCHEDULED_WEEKLY) is RetentionClass.WEEKLY


class TestRetentionPolicy:
    def test_lifetimes(self):
        policy = chain.RetentionPolicy(daily_days=7, weekly_weeks=4, monthly_months=12)
        assert policy.lifetime(RetentionClass.DAILY) == timedelta(days=7)
        assert policy.lifetime(RetentionClass.WEEKLY) == timedelta(days=28)
        assert policy.lifetime(RetentionClass.MONTHLY) == timedelta(days=360)

    def test_manual_never_expires(self):
        assert chain.RetentionPolicy().expires_at(RetentionClass.MANUAL, T0) is None

    def test_expires_at(self):
        policy = chain.RetentionPolicy(daily_days=3)
        assert policy.expires_at(RetentionClass.DAILY, T0) == T0 + timedelta(days=3)


class TestFindDependents:
    def test_chain_runs_until_next_full(self):
        full_1 = backup("f1", 0)
        diff = backup("d1", 1, BackupType.DIFF)
        incr = backup("i1", 2, BackupType.INCR)
        full_2 = backup("f2", 3)
        after = backup("i2", 4, BackupType.INCR)
        backups = [full_1, diff, incr, full_2, after]

        assert [b.backup_id for b in chain.find_dependents(full_1, backups)] == ["d1", "i1"]
        assert [b.backup_id for b in chain.find_dependents(full_2, backups)] == ["i2"]

    def test_chain_without_later_full_runs_to_the_end(self):
        full = backup("f1", 0)
        rest = [backup(f"i{i}", i, BackupType.INCR) for i in range(1, 4)]
        assert len(chain.find_dependents(full, [full, *rest])) == 3

    def test_only_completed_backups_count(self):
        full = backup("f1", 0)
        failed = backup("x", 1, BackupType.INCR, status=BackupStatus.FAILED)
        deleted = backup("y", 2, BackupType.INCR, status=BackupStatus.DELETED)
        assert chain.find_dependents(full, [full, failed, deleted]) == []

    def test_failed_full_does_not_end_the_chain(self):
        full = backup("f1", 0)
        broken_full = backup("f2", 1, status=BackupStatus.FAILED)
        incr = backup("i1", 2, BackupType.INCR)
        assert [b.backup_id for b in chain.find_dependents(full, [full, broken_full, incr])] == ["i1"]

    def test_diff_has_its_later_incrementals_as_dependents(self):
        full = backup("f1", 0)
        diff = backup("d1", 1, BackupType.DIFF)
        incr = backup("i1", 2, BackupType.INCR)
        assert [b.backup_id for b in chain.find_dependents(diff, [full, diff, incr])] == ["i1"]

    def test_unlabelled_backup_has_no_chain(self):
        full = backup("f1", 0, label=None)
        incr = backup("i1", 1, BackupType.INCR)
        assert chain.find_dependents(full, [full, incr]) == []


class TestOnlyFull:
    def test_single_full(self):
        full = backup("f1", 0)
        assert chain.is_only_full(full, [full, backup("i1", 1, BackupType.INCR)])

    def test_another_completed_full_exists(self):
        full = backup("f1", 0)
        assert not chain.is_only_full(full, [full, backup("f2", 2)])

    def test_failed_other_full_does_not_count(self):
        full = backup("f1", 0)
        assert chain.is_only_full(full, [full, backup("f2", 2, status=BackupStatus.FAILED)])

    def test_non_full_is_never_only_full(self):
        incr = backup("i1", 1, BackupType.INCR)
        assert not chain.is_only_full(incr, [incr])


class TestDeletionInfo:
    def test_without_dependents(self):
        info = chain.deletion_info(backup("f1", 0, size=500), [])
        assert info.total_count == 1
        assert info.total_size_bytes == 500
        assert info.requires_confirmation is False
        assert info.warning_message is None

    def test_with_dependents(self):
        full = backup("f1", 0, size=500)
        deps = [backup("d1", 1, BackupType.DIFF, size=50), backup("i1", 2, BackupType.INCR, size=5)]
        info = chain.deletion_info(full, deps)
        assert info.total_count == 3
        assert info.total_size_bytes == 555
        assert info.requires_confirmation is True
        assert "2 dependent backup(s)" in info.warning_message
        assert "full backup" in info.warning_message


class TestRecoveryWindow:
    def test_spans_completed_backups(self):
        backups = [
            backup("f1", 0),
            backup("i1", 5, BackupType.INCR),
            backup("x", 9, status=BackupStatus.FAILED),
        ]
        window = chain.recovery_window("c-1", backups)
        assert window.available
        assert window.earliest == T0
        assert window.latest == T0 + timedelta(hours=5, minutes=10)
        assert window.backup_count == 2

    def test_empty(self):
        window = chain.recovery_window("c-1", [])
        assert not window.available
        assert window.earliest is None

    def test_check_target_time(self):
        full = backup("f1", 0)
        chain.check_target_time(full, T0 + timedelta(minutes=5))
        with pytest.raises(InvalidRequestError, match="before the earliest"):
            chain.check_target_time(full, T0 - timedelta(seconds=1))
        with pytest.raises(InvalidRequestError, match="after the latest"):
            chain.check_target_time(full, T0 + timedelta(hours=1))


class TestStorageTrend:
    def test_running_total_per_day(self):
        backups = [backup("f1", 0, size=100), backup("i1", 48, BackupType.INCR, size=10)]
        points = chain.storage_trend(backups, today=(T0 + timedelta(days=3)).date(), days=5)
        assert [p.day for p in points][0] == "2025-02-28"
        assert [p.size_bytes for p in points] == [0, 100, 100, 110, 110]
