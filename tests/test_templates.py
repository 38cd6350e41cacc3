"""Tests for the per-node configuration renderers."""

from __future__ import annotations

import hashlib
from datetime import UTC, datetime

import pytest
import yaml

from fakes import T0
from pgcluster.config import ControlPlaneConfig
from pgcluster.models import Cluster, Node
from pgcluster.provisioning import templates


@pytest.fixture
def cluster():
    return Cluster(
        cluster_id="c-1",
        owner="alice",
        name="orders",
        slug="orders-abc123",
        postgres_version="16",
        node_size="cx33",
        postgres_password="pg-secret",
        replicator_password="repl-secret",
        created_at=T0,
        updated_at=T0,
    )


@pytest.fixture
def nodes():
    return [
        Node(node_id=f"n{i}", cluster_id="c-1", name=f"orders-abc123-node-{i}",
             public_ip=f"203.0.113.{i}", created_at=T0)
        for i in (1, 2, 3)
    ]


@pytest.fixture
def storage_config():
    return ControlPlaneConfig(
        storage_endpoint="https://fsn1.objects.example.com",
        storage_bucket="backups",
        storage_region="eu-central",
        storage_access_key="AK",
        storage_secret_key="SK",
        retention_full_cycles=3,
        retention_diff_cycles=9,
    )


class TestPeerLists:
    def test_initial_cluster(self, nodes):
        assert templates.etcd_initial_cluster(nodes[:2]) == (
            "orders-abc123-node-1=http://203.0.113.1:2380,orders-abc123-node-2=http://203.0.113.2:2380"
        )

    def test_hosts(self, nodes):
        assert templates.etcd_hosts(nodes) == "203.0.113.1:2379,203.0.113.2:2379,203.0.113.3:2379"


class TestCompose:
    def test_services_and_peer_urls(self, cluster, nodes):
        doc = yaml.safe_load(templates.render_compose(cluster, nodes[1], "peers"))
        services = doc["services"]
        assert list(services) == ["etcd", "patroni", "node-exporter", "postgres-exporter", "pgbouncer"]
        etcd_env = services["etcd"]["environment"]
        assert "ETCD_NAME=orders-abc123-node-2" in etcd_env
        assert "ETCD_INITIAL_CLUSTER=peers" in etcd_env
        assert "ETCD_INITIAL_CLUSTER_TOKEN=orders-abc123-etcd" in etcd_env
        assert services["patroni"]["image"] == "denysd1/patroni:16"
        assert "PATRONI_RESTAPI_CONNECT_ADDRESS=203.0.113.2:8008" in services["patroni"]["environment"]


class TestControllerConfig:
    def test_fresh_cluster_uses_initdb(self, cluster, nodes):
        doc = yaml.safe_load(templates.render_controller_config(
            cluster, nodes[0], "hosts", ControlPlaneConfig()
        ))
        assert doc["scope"] == "orders-abc123"
        assert doc["name"] == "orders-abc123-node-1"
        assert doc["etcd3"] == {"hosts": "hosts"}
        assert doc["bootstrap"]["initdb"] == [{"encoding": "UTF8"}, "data-checksums"]
        params = doc["bootstrap"]["dcs"]["postgresql"]["parameters"]
        assert params["shared_buffers"] == "2GB"
        assert "archive_mode" not in params
        assert "recovery_conf" not in doc["postgresql"]
        assert doc["bootstrap"]["users"]["postgres"]["password"] == "pg-secret"

    def test_archiving_when_storage_configured(self, cluster, nodes, storage_config):
        doc = yaml.safe_load(templates.render_controller_config(cluster, nodes[0], "h", storage_config))
        params = doc["bootstrap"]["dcs"]["postgresql"]["parameters"]
        assert params["archive_mode"] == "on"
        assert params["archive_command"] == "pgbackrest --stanza=orders-abc123 archive-push %p"
        assert doc["postgresql"]["recovery_conf"]["restore_command"] == (
            "pgbackrest --stanza=orders-abc123 archive-get %f %p"
        )

    def test_restore_bootstraps_from_source_repository(self, cluster, nodes):
        restore = templates.RestoreSource(
            source_cluster_id="src-1",
            source_slug="orders-old",
            label="20250301-120000F",
            target_time=datetime(2025, 3, 1, 12, 3, tzinfo=UTC),
        )
        doc = yaml.safe_load(templates.render_controller_config(
            cluster, nodes[0], "h", ControlPlaneConfig(), restore
        ))
        bootstrap = doc["bootstrap"]
        assert "initdb" not in bootstrap
        assert bootstrap["method"] == "pgbackrest"
        assert bootstrap["pgbackrest"]["command"] == (
            "pgbackrest --stanza=orders-old --set=20250301-120000F --delta restore"
        )
        recovery = bootstrap["pgbackrest"]["recovery_conf"]
        assert recovery["recovery_target_time"] == "2025-03-01 12:03:00+00"
        assert recovery["recovery_target_action"] == "promote"
        assert recovery["restore_command"] == "pgbackrest --stanza=orders-old archive-get %f %p"
        # archiving for the new cluster's own stanza
        assert bootstrap["dcs"]["postgresql"]["parameters"]["archive_mode"] == "on"

    def test_restore_without_target_replays_everything(self, cluster, nodes):
        restore = templates.RestoreSource(source_cluster_id="src-1", source_slug="orders-old")
        doc = yaml.safe_load(templates.render_controller_config(
            cluster, nodes[0], "h", ControlPlaneConfig(), restore
        ))
        assert doc["bootstrap"]["pgbackrest"]["command"] == "pgbackrest --stanza=orders-old --delta restore"
        assert "recovery_target_time" not in doc["bootstrap"]["pgbackrest"]["recovery_conf"]


class TestPooler:
    def test_profile_sizes(self):
        ini = templates.render_pooler_config("cx43")
        assert "default_pool_size = 80\n" in ini
        assert "max_client_conn = 1000\n" in ini
        assert "listen_port = 6432\n" in ini

    def test_unknown_size_falls_back(self):
        assert templates.size_profile("cx99") is templates.DEFAULT_PROFILE

    def test_userlist_md5(self):
        digest = hashlib.md5(b"pg-secretpostgres").hexdigest()
        assert templates.render_pooler_userlist("pg-secret") == f'"postgres" "md5{digest}"\n'


class TestBackupToolConfig:
    def test_read_write_repository(self, storage_config):
        conf = templates.render_backup_tool_config("orders-abc123", "c-1", storage_config)
        lines = conf.splitlines()
        assert "repo1-s3-endpoint=fsn1.objects.example.com" in lines
        assert "repo1-path=/pgbackrest/c-1" in lines
        assert "repo1-retention-full=3" in lines
        assert "repo1-retention-diff=9" in lines
        assert "archive-async=y" in lines
        assert "[orders-abc123]" in lines

    def test_read_only_repository(self, storage_config):
        conf = templates.render_backup_tool_config("orders-old", "src-1", storage_config, read_only=True)
        assert "repo1-path=/pgbackrest/src-1" in conf
        assert "retention" not in conf
        assert "archive-async" not in conf

    def test_env_file(self):
        assert templates.render_env_file("a", "b") == (
            "# PostgreSQL cluster credentials\nPOSTGRES_PASSWORD=a\nREPLICATOR_PASSWORD=b\n"
        )
