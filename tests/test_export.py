"""Tests for logical exports."""

from __future__ import annotations

import sqlite3
from datetime import timedelta

import pytest

from fakes import T0, FakeStorage, make_cluster
from pgcluster.backup.export import DUMP_COMMAND, SIZE_COMMAND, ExportError, ExportService, export_key
from pgcluster.discovery.leader import LeaderDiscovery
from pgcluster.errors import NotFoundError, RemoteCommandError, StateConflictError
from pgcluster.models import ClusterStatus, EventKind, ExportStatus, OutboxEvent
from pgcluster.remote.executor import CommandResult
from pgcluster.store.clusters import ClusterStore
from pgcluster.store.exports import ExportStore
from pgcluster.tasks.outbox import OutboxStore


@pytest.fixture
def make_service(db, config, executor, statuses, clock, sleeper):
    def build(storage):
        return ExportService(
            db,
            ClusterStore(db),
            ExportStore(db),
            executor,
            LeaderDiscovery(statuses, timeout=1.0),
            config,
            storage=storage,
            clock=clock,
            sleep=sleeper,
        )

    return build


@pytest.fixture
def service(make_service, storage):
    return make_service(storage)


@pytest.fixture
def cluster(db, statuses, executor):
    cluster = make_cluster(db, slug="orders-abc123")
    statuses.set("orders-abc123-node-1", "primary")
    executor.on(SIZE_COMMAND, exit_code=0, stdout="2048\n")
    return cluster


class TestCreateExport:
    def test_queues_export(self, db, service, cluster):
        export = service.create_export(cluster.cluster_id, owner="alice")
        assert export.status is ExportStatus.PENDING
        assert export.created_at == T0
        [event] = OutboxStore(db).list_events()
        assert (event.kind, event.aggregate_id) == (EventKind.EXPORT_CREATED, export.export_id)

    def test_requires_storage(self, make_service, cluster):
        with pytest.raises(StateConflictError, match="not configured"):
            make_service(None).create_export(cluster.cluster_id)

    def test_requires_running_cluster(self, db, service, cluster):
        ClusterStore(db).update_status(cluster.cluster_id, ClusterStatus.ERROR, "broken")
        with pytest.raises(StateConflictError, match="must be running"):
            service.create_export(cluster.cluster_id)

    def test_one_active_export(self, service, cluster):
        service.create_export(cluster.cluster_id)
        with pytest.raises(StateConflictError, match="already in progress"):
            service.create_export(cluster.cluster_id)

    def test_other_owner(self, service, cluster):
        with pytest.raises(NotFoundError):
            service.create_export(cluster.cluster_id, owner="mallory")


class TestExecuteExport:
    def test_dump_upload_and_verify(self, service, cluster, executor, storage):
        export = service.create_export(cluster.cluster_id)
        done = service.execute_export(export.export_id)

        key = f"exports/{cluster.cluster_id}/orders-abc123_2025-03-01T12-00-00.sql.gz"
        assert done.status is ExportStatus.COMPLETED
        assert done.object_key == key
        assert done.size_bytes == 2048
        assert done.download_url == f"https://s3.test/get/{key}?expires=86400"
        assert done.download_expires_at == T0 + timedelta(hours=24)
        assert done.attempts == 1

        assert executor.ran(DUMP_COMMAND, "203.0.113.1")
        [upload] = executor.ran("curl -sf -X PUT", "203.0.113.1")
        assert f"'https://s3.test/put/{key}?expires=3600'" in upload
        assert executor.ran("rm -f /tmp/export.sql.gz", "203.0.113.1")
        assert key in storage.objects

    def test_runs_on_current_leader(self, service, cluster, statuses, executor):
        statuses.set("orders-abc123-node-1", "replica")
        statuses.set("orders-abc123-node-3", "master")
        service.execute_export(service.create_export(cluster.cluster_id).export_id)
        assert executor.ran(DUMP_COMMAND, "203.0.113.3")

    def test_retries_then_succeeds(self, service, cluster, executor, sleeper):
        failures = []

        def flaky_dump(host, command):
            if len(failures) < 2:
                failures.append(command)
                return CommandResult(exit_code=1, stderr="connection refused")
            return CommandResult(exit_code=0)

        executor.on(DUMP_COMMAND, flaky_dump)
        done = service.execute_export(service.create_export(cluster.cluster_id).export_id)
        assert done.status is ExportStatus.COMPLETED
        assert done.attempts == 3
        assert sleeper.calls == [0, 0]

    def test_gives_up_after_max_retries(self, db, service, cluster, executor, sleeper):
        executor.on(DUMP_COMMAND, exit_code=1, stderr="database is locked")
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(RemoteCommandError, match="database is locked"):
            service.execute_export(export.export_id)

        failed = ExportStore(db).get(export.export_id)
        assert failed.status is ExportStatus.FAILED
        assert failed.attempts == 3
        assert "pg_dump failed" in failed.error_message
        assert len(executor.ran(DUMP_COMMAND)) == 3
        assert len(sleeper.calls) == 2

    def test_retry_reset_failure_keeps_original_error(
        self, db, service, cluster, executor, sleeper, monkeypatch
    ):
        def locked(self, export_id):
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(ExportStore, "reset_for_retry", locked)
        executor.on(DUMP_COMMAND, exit_code=1, stderr="connection refused")
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(RemoteCommandError, match="pg_dump failed"):
            service.execute_export(export.export_id)

        failed = ExportStore(db).get(export.export_id)
        assert failed.status is ExportStatus.FAILED
        assert failed.attempts == 1
        assert "pg_dump failed" in failed.error_message
        assert sleeper.calls == []

    def test_empty_dump(self, db, service, cluster, executor):
        executor.on(SIZE_COMMAND, exit_code=0, stdout="0\n")
        executor.on("cat /tmp/pg_dump_err.log", exit_code=0, stdout="permission denied\n")
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(ExportError, match="empty. pg_dump error: permission denied"):
            service.execute_export(export.export_id)

    def test_upload_not_found_in_storage(self, make_service, cluster):
        service = make_service(FakeStorage(upload_size=None))
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(ExportError, match="verification failed"):
            service.execute_export(export.export_id)

    def test_no_leader(self, db, service, cluster, statuses):
        for i in (1, 2, 3):
            statuses.fail(f"orders-abc123-node-{i}")
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(Exception, match="No leader node"):
            service.execute_export(export.export_id)
        assert ExportStore(db).get(export.export_id).status is ExportStatus.FAILED

    def test_unknown_export(self, service):
        with pytest.raises(NotFoundError):
            service.execute_export("missing")

    def test_outbox_handler(self, db, service, cluster):
        export = service.create_export(cluster.cluster_id)
        event = OutboxEvent(event_id=1, kind=EventKind.EXPORT_CREATED, aggregate_id=export.export_id, created_at=T0)
        service.handle_export_created(event)
        assert ExportStore(db).get(export.export_id).status is ExportStatus.COMPLETED


class TestManageExports:
    @pytest.fixture
    def completed(self, service, cluster):
        return service.execute_export(service.create_export(cluster.cluster_id).export_id)

    def test_refresh_download_url(self, service, cluster, completed, clock):
        clock.advance(hours=30)
        refreshed = service.refresh_download_url(cluster.cluster_id, completed.export_id)
        assert refreshed.download_expires_at == T0 + timedelta(hours=54)

    def test_refresh_requires_completed(self, db, service, cluster):
        export = service.create_export(cluster.cluster_id)
        with pytest.raises(StateConflictError, match="completed exports"):
            service.refresh_download_url(cluster.cluster_id, export.export_id)

    def test_delete_removes_object(self, db, service, cluster, completed, storage):
        service.delete_export(cluster.cluster_id, completed.export_id)
        assert storage.deleted_prefixes == [completed.object_key]
        assert storage.objects == {}
        assert ExportStore(db).get(completed.export_id) is None

    def test_delete_in_progress_rejected(self, db, service, cluster):
        export = service.create_export(cluster.cluster_id)
        ExportStore(db).start_attempt(export.export_id, T0)
        with pytest.raises(StateConflictError, match="in progress"):
            service.delete_export(cluster.cluster_id, export.export_id)

    def test_list_and_get(self, service, cluster, completed):
        assert [e.export_id for e in service.list_exports(cluster.cluster_id)] == [completed.export_id]
        assert service.get_export(cluster.cluster_id, completed.export_id, owner="alice").export_id == (
            completed.export_id
        )
        with pytest.raises(NotFoundError):
            service.get_export(cluster.cluster_id, completed.export_id, owner="mallory")

    def test_export_of_another_cluster_is_hidden(self, db, service, cluster, completed):
        other = make_cluster(db, name="billing")
        with pytest.raises(NotFoundError):
            service.get_export(other.cluster_id, completed.export_id)


def test_export_key(db):
    cluster = make_cluster(db, slug="orders-abc123")
    assert export_key(cluster, T0) == f"exports/{cluster.cluster_id}/orders-abc123_2025-03-01T12-00-00.sql.gz"
