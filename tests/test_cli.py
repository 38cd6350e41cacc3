"""Tests for the pgcluster CLI."""

from __future__ import annotations

import json
from datetime import timedelta
from pathlib import Path

import pytest
from click.testing import CliRunner

from fakes import T0, make_backup, make_cluster
from pgcluster.cli.main import cli
from pgcluster.db.connection import Database
from pgcluster.db.migrations import MIGRATIONS, run_migrations
from pgcluster.models import BackupStatus, BackupType, ClusterStatus
from pgcluster.trust.store import SqliteTrustStore, fingerprint


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch) -> Path:
    for var in ("PGCLUSTER_DB_PATH", "PGCLUSTER_LOG_LEVEL"):
        monkeypatch.delenv(var, raising=False)
    cfg = tmp_path / "pgcluster.yaml"
    cfg.write_text("db_path: state.db\nlog_level: WARNING\n", encoding="utf-8")
    return cfg


@pytest.fixture
def state(config_file: Path):
    db = Database(config_file.parent / "state.db")
    run_migrations(db)
    yield db
    db.close()


def invoke(config_file: Path, *args: str, input: str | None = None):
    return CliRunner().invoke(cli, ["--config", str(config_file), *args], input=input)


# --- root ---


class TestRoot:
    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.4.0" in result.output

    def test_bad_config(self, tmp_path: Path):
        cfg = tmp_path / "pgcluster.yaml"
        cfg.write_text("no_such_key: 1\n", encoding="utf-8")
        result = CliRunner().invoke(cli, ["--config", str(cfg), "cluster", "list"])
        assert result.exit_code == 1
        assert "Unknown config keys" in result.output

    def test_init_db(self, config_file: Path):
        result = invoke(config_file, "init-db")
        assert result.exit_code == 0
        assert f"schema version {MIGRATIONS[-1][0]}" in result.output
        assert (config_file.parent / "state.db").exists()


# --- trust ---


class TestTrust:
    def test_empty(self, config_file: Path, state):
        result = invoke(config_file, "trust", "list")
        assert result.exit_code == 0
        assert "No trusted hosts." in result.output

    def test_list_show_forget(self, config_file: Path, state):
        SqliteTrustStore(state).verify("203.0.113.1", "ssh-ed25519", b"key-1")
        expected = fingerprint(b"key-1")

        result = invoke(config_file, "trust", "list")
        assert "203.0.113.1" in result.output
        assert expected in result.output
        assert "1 trusted host(s)." in result.output

        data = json.loads(invoke(config_file, "trust", "show", "203.0.113.1", "--json-output").output)
        assert data["fingerprint"] == expected
        assert data["key_type"] == "ssh-ed25519"

        result = invoke(config_file, "trust", "forget", "203.0.113.1", "--yes")
        assert result.exit_code == 0
        assert SqliteTrustStore(state).get("203.0.113.1") is None

    def test_forget_asks_first(self, config_file: Path, state):
        SqliteTrustStore(state).verify("203.0.113.1", "ssh-ed25519", b"key-1")
        result = invoke(config_file, "trust", "forget", "203.0.113.1", input="n\n")
        assert result.exit_code == 1
        assert SqliteTrustStore(state).get("203.0.113.1") is not None

    def test_unknown_host(self, config_file: Path, state):
        assert invoke(config_file, "trust", "show", "198.51.100.9").exit_code == 1
        assert invoke(config_file, "trust", "forget", "198.51.100.9", "--yes").exit_code == 1


# --- cluster ---


class TestCluster:
    def test_list(self, config_file: Path, state):
        make_cluster(state, owner="alice", slug="orders-abc123")
        make_cluster(state, owner="bob", slug="billing-def456")
        make_cluster(state, owner="alice", slug="old-aaaaaa", status=ClusterStatus.DELETED)

        result = invoke(config_file, "cluster", "list", "--owner", "alice")
        assert result.exit_code == 0
        assert "orders-abc123" in result.output
        assert "billing-def456" not in result.output
        assert "old-aaaaaa" not in result.output

        data = json.loads(invoke(config_file, "cluster", "list", "--all", "--json-output").output)
        assert len(data) == 3
        assert all("postgres_password" not in c for c in data)

    def test_show_by_slug(self, config_file: Path, state):
        make_cluster(state, slug="orders-abc123", hostname="orders-abc123.db.test")
        result = invoke(config_file, "cluster", "show", "orders-abc123")
        assert result.exit_code == 0
        assert "orders-abc123.db.test:5432" in result.output
        assert "orders-abc123-node-3" in result.output

    def test_show_missing(self, config_file: Path, state):
        result = invoke(config_file, "cluster", "show", "nope")
        assert result.exit_code == 1
        assert "Cluster not found: nope" in result.output


# --- backup ---


class TestBackup:
    def test_list(self, config_file: Path, state):
        cluster = make_cluster(state, slug="orders-abc123")
        make_backup(state, cluster, created_at=T0)
        make_backup(state, cluster, created_at=T0 + timedelta(hours=1), status=BackupStatus.DELETED)

        result = invoke(config_file, "backup", "list", "orders-abc123")
        assert result.exit_code == 0
        assert "20250301-120000F" in result.output
        assert "1 backup(s)." in result.output

        data = json.loads(invoke(config_file, "backup", "list", "orders-abc123", "--all", "--json-output").output)
        assert len(data) == 2

    def test_deletion_info(self, config_file: Path, state):
        cluster = make_cluster(state, slug="orders-abc123")
        full = make_backup(state, cluster, created_at=T0)
        incr = make_backup(state, cluster, created_at=T0 + timedelta(hours=1), backup_type=BackupType.INCR)

        data = json.loads(
            invoke(config_file, "backup", "deletion-info", "orders-abc123", full.backup_id, "--json-output").output
        )
        assert data["total_count"] == 2
        assert [d["backup_id"] for d in data["dependents"]] == [incr.backup_id]
        assert data["only_full_backup"] is True

        result = invoke(config_file, "backup", "deletion-info", "orders-abc123", full.backup_id)
        assert "cannot be deleted" in result.output

    def test_deletion_info_unknown_backup(self, config_file: Path, state):
        make_cluster(state, slug="orders-abc123")
        result = invoke(config_file, "backup", "deletion-info", "orders-abc123", "missing")
        assert result.exit_code == 1
