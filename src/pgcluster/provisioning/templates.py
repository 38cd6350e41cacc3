"""Rendering of the files pushed to every cluster node.

Everything here is a pure function of the cluster, the node and the
control-plane config, so the output can be asserted on directly in tests.
YAML documents are built as dicts and dumped with ``yaml.safe_dump``;
INI-style files are plain text.
"""

from __future__ import annotations

import hashlib
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime

import yaml

from pgcluster.config import ControlPlaneConfig
from pgcluster.models import Cluster, Node

CONFIG_DIR = "/opt/pgcluster"
BACKUP_TOOL_CONFIG_DIR = "/etc/pgbackrest"
BACKUP_TOOL_CONFIG_PATH = f"{BACKUP_TOOL_CONFIG_DIR}/pgbackrest.conf"
BACKUP_TOOL_LOG_PATH = "/var/log/pgbackrest"
BACKUP_TOOL_SPOOL_PATH = "/var/spool/pgbackrest"
PG_DATA_PATH = "/var/lib/postgresql/data"
PG_SOCKET_PATH = "/var/run/postgresql"

ETCD_IMAGE = "quay.io/coreos/etcd:v3.5.11"
CONTROLLER_IMAGE = "denysd1/patroni:{version}"
NODE_EXPORTER_IMAGE = "prom/node-exporter:v1.7.0"
POSTGRES_EXPORTER_IMAGE = "prometheuscommunity/postgres-exporter:v0.15.0"
POOLER_IMAGE = "edoburu/pgbouncer:v1.23.1-p3"

POOLER_PORT = 6432


@dataclass(frozen=True)
class SizeProfile:
    """PostgreSQL memory and connection-pool tuning for one server type."""

    shared_buffers: str
    effective_cache_size: str
    default_pool_size: int
    max_client_conn: int
    reserve_pool_size: int


SIZE_PROFILES: dict[str, SizeProfile] = {
    "cx23": SizeProfile("512MB", "1536MB", 20, 400, 5),
    "cx33": SizeProfile("2GB", "6GB", 40, 600, 10),
    "cx43": SizeProfile("4GB", "12GB", 80, 1000, 20),
    "cx53": SizeProfile("8GB", "24GB", 150, 2000, 40),
}
DEFAULT_PROFILE = SizeProfile("256MB", "768MB", 15, 300, 3)


def size_profile(node_size: str) -> SizeProfile:
    return SIZE_PROFILES.get(node_size, DEFAULT_PROFILE)


@dataclass(frozen=True)
class RestoreSource:
    """Where a new cluster's first node bootstraps its data from."""

    source_cluster_id: str
    source_slug: str
    label: str | None = None
    target_time: datetime | None = None


# ---------------------------------------------------------------------------
# Consensus peer lists
# ---------------------------------------------------------------------------


def etcd_initial_cluster(nodes: Sequence[Node]) -> str:
    return ",".join(f"{n.name}=http://{n.public_ip}:2380" for n in nodes)


def etcd_hosts(nodes: Sequence[Node]) -> str:
    return ",".join(f"{n.public_ip}:2379" for n in nodes)


# ---------------------------------------------------------------------------
# Per-node files
# ---------------------------------------------------------------------------


def render_env_file(postgres_password: str, replicator_password: str) -> str:
    return (
        "# PostgreSQL cluster credentials\n"
        f"POSTGRES_PASSWORD={postgres_password}\n"
        f"REPLICATOR_PASSWORD={replicator_password}\n"
    )


def render_compose(cluster: Cluster, node: Node, initial_cluster: str) -> str:
    """docker-compose.yml running the consensus store, controller, pooler and exporters."""
    ip = node.public_ip
    services = {
        "etcd": {
            "image": ETCD_IMAGE,
            "container_name": "etcd",
            "restart": "unless-stopped",
            "network_mode": "host",
            "volumes": ["/data/etcd:/etcd-data"],
            "environment": [
                f"ETCD_NAME={node.name}",
                "ETCD_DATA_DIR=/etcd-data",
                f"ETCD_LISTEN_PEER_URLS=http://{ip}:2380",
                f"ETCD_LISTEN_CLIENT_URLS=http://{ip}:2379,http://127.0.0.1:2379",
                f"ETCD_INITIAL_ADVERTISE_PEER_URLS=http://{ip}:2380",
                f"ETCD_ADVERTISE_CLIENT_URLS=http://{ip}:2379",
                f"ETCD_INITIAL_CLUSTER={initial_cluster}",
                "ETCD_INITIAL_CLUSTER_STATE=new",
                f"ETCD_INITIAL_CLUSTER_TOKEN={cluster.slug}-etcd",
            ],
            "healthcheck": _healthcheck(["CMD", "etcdctl", "endpoint", "health"]),
        },
        "patroni": {
            "image": CONTROLLER_IMAGE.format(version=cluster.postgres_version),
            "container_name": "patroni",
            "restart": "unless-stopped",
            "network_mode": "host",
            "depends_on": {"etcd": {"condition": "service_healthy"}},
            "volumes": [
                "/data/postgresql:/var/lib/postgresql/data",
                f"{CONFIG_DIR}/patroni.yml:/etc/patroni/patroni.yml:ro",
                f"{BACKUP_TOOL_CONFIG_PATH}:{BACKUP_TOOL_CONFIG_PATH}:ro",
                f"{BACKUP_TOOL_LOG_PATH}:{BACKUP_TOOL_LOG_PATH}",
                f"{BACKUP_TOOL_SPOOL_PATH}:{BACKUP_TOOL_SPOOL_PATH}",
            ],
            "environment": [
                f"PATRONI_NAME={node.name}",
                f"PATRONI_RESTAPI_CONNECT_ADDRESS={ip}:8008",
                f"PATRONI_POSTGRESQL_CONNECT_ADDRESS={ip}:5432",
            ],
            "healthcheck": _healthcheck(["CMD", "curl", "-f", "http://localhost:8008/health"]),
        },
        "node-exporter": {
            "image": NODE_EXPORTER_IMAGE,
            "container_name": "node-exporter",
            "restart": "unless-stopped",
            "network_mode": "host",
            "pid": "host",
            "volumes": ["/:/host:ro,rslave"],
            "command": ["--path.rootfs=/host", "--web.listen-address=:9100"],
        },
        "postgres-exporter": {
            "image": POSTGRES_EXPORTER_IMAGE,
            "container_name": "postgres-exporter",
            "restart": "unless-stopped",
            "network_mode": "host",
            "env_file": [".env"],
            "depends_on": {"patroni": {"condition": "service_healthy"}},
            "environment": [
                "DATA_SOURCE_NAME=postgresql://postgres:${POSTGRES_PASSWORD}"
                "@127.0.0.1:5432/postgres?sslmode=disable",
            ],
            "command": ["--web.listen-address=:9187"],
        },
        "pgbouncer": {
            "image": POOLER_IMAGE,
            "container_name": "pgbouncer",
            "restart": "unless-stopped",
            "network_mode": "host",
            "depends_on": {"patroni": {"condition": "service_healthy"}},
            "volumes": [
                f"{CONFIG_DIR}/pgbouncer.ini:/etc/pgbouncer/pgbouncer.ini:ro",
                f"{CONFIG_DIR}/userlist.txt:/etc/pgbouncer/userlist.txt:ro",
            ],
            "healthcheck": _healthcheck(
                ["CMD", "pg_isready", "-h", "127.0.0.1", "-p", str(POOLER_PORT)]
            ),
        },
    }
    return yaml.safe_dump({"services": services}, sort_keys=False)


def render_controller_config(
    cluster: Cluster,
    node: Node,
    hosts: str,
    config: ControlPlaneConfig,
    restore: RestoreSource | None = None,
) -> str:
    """patroni.yml for *node*.

    With *restore*, the node bootstraps from the source cluster's backup
    repository instead of ``initdb``.
    """
    profile = size_profile(cluster.node_size)
    parameters: dict[str, object] = {
        "max_connections": 100,
        "shared_buffers": profile.shared_buffers,
        "effective_cache_size": profile.effective_cache_size,
        "work_mem": "4MB",
        "maintenance_work_mem": "64MB",
        "wal_level": "replica",
        "hot_standby": "on",
        "max_wal_senders": 10,
        "max_replication_slots": 10,
        "wal_keep_size": "128MB",
        "logging_collector": "off",
        "log_destination": "stderr",
    }
    archiving = config.storage_configured or restore is not None
    if archiving:
        parameters["archive_mode"] = "on"
        parameters["archive_timeout"] = 60
        parameters["archive_command"] = f"pgbackrest --stanza={cluster.slug} archive-push %p"

    bootstrap: dict[str, object] = {
        "dcs": {
            "ttl": 30,
            "loop_wait": 10,
            "retry_timeout": 10,
            "maximum_lag_on_failover": 1048576,
            "postgresql": {
                "use_pg_rewind": True,
                "use_slots": True,
                "parameters": parameters,
            },
        },
    }
    if restore is None:
        bootstrap["initdb"] = [{"encoding": "UTF8"}, "data-checksums"]
    else:
        bootstrap["method"] = "pgbackrest"
        bootstrap["pgbackrest"] = _restore_bootstrap(restore)
    bootstrap["pg_hba"] = [
        "host replication replicator 0.0.0.0/0 md5",
        "host all all 0.0.0.0/0 md5",
    ]
    bootstrap["users"] = {
        "postgres": {"password": cluster.postgres_password, "options": ["superuser"]},
        "replicator": {"password": cluster.replicator_password, "options": ["replication"]},
    }

    postgresql: dict[str, object] = {
        "listen": "0.0.0.0:5432",
        "connect_address": f"{node.public_ip}:5432",
        "data_dir": PG_DATA_PATH,
        "bin_dir": f"/usr/lib/postgresql/{cluster.postgres_version}/bin",
        "pgpass": "/tmp/pgpass",
        "authentication": {
            "superuser": {"username": "postgres", "password": cluster.postgres_password},
            "replication": {"username": "replicator", "password": cluster.replicator_password},
            "rewind": {"username": "postgres", "password": cluster.postgres_password},
        },
        "parameters": {"unix_socket_directories": PG_SOCKET_PATH},
    }
    if archiving and restore is None:
        postgresql["recovery_conf"] = {
            "restore_command": f"pgbackrest --stanza={cluster.slug} archive-get %f %p",
        }

    document = {
        "scope": cluster.slug,
        "namespace": "/pgcluster/",
        "name": node.name,
        "restapi": {"listen": "0.0.0.0:8008", "connect_address": f"{node.public_ip}:8008"},
        "etcd3": {"hosts": hosts},
        "bootstrap": bootstrap,
        "postgresql": postgresql,
        "tags": {"nofailover": False, "noloadbalance": False, "clonefrom": False, "nosync": False},
    }
    return yaml.safe_dump(document, sort_keys=False)


def _restore_bootstrap(restore: RestoreSource) -> dict[str, object]:
    command = f"pgbackrest --stanza={restore.source_slug}"
    if restore.label:
        command += f" --set={restore.label}"
    command += " --delta restore"

    recovery_conf: dict[str, object] = {
        "restore_command": f"pgbackrest --stanza={restore.source_slug} archive-get %f %p",
    }
    if restore.target_time is not None:
        recovery_conf["recovery_target_time"] = format_target_time(restore.target_time)
        recovery_conf["recovery_target_action"] = "promote"
    return {
        "command": command,
        "keep_existing_recovery_conf": False,
        "no_params": True,
        "recovery_conf": recovery_conf,
    }


def format_target_time(target: datetime) -> str:
    """Recovery target in the form PostgreSQL expects (UTC, explicit offset)."""
    if target.tzinfo is None:
        target = target.replace(tzinfo=UTC)
    return target.astimezone(UTC).strftime("%Y-%m-%d %H:%M:%S+00")


def render_pooler_config(node_size: str) -> str:
    profile = size_profile(node_size)
    return (
        "[databases]\n"
        "* = host=127.0.0.1 port=5432\n"
        "\n"
        "[pgbouncer]\n"
        "listen_addr = 0.0.0.0\n"
        f"listen_port = {POOLER_PORT}\n"
        "auth_type = md5\n"
        "auth_file = /etc/pgbouncer/userlist.txt\n"
        "admin_users = postgres\n"
        "pool_mode = transaction\n"
        f"default_pool_size = {profile.default_pool_size}\n"
        f"max_client_conn = {profile.max_client_conn}\n"
        f"reserve_pool_size = {profile.reserve_pool_size}\n"
        "reserve_pool_timeout = 5\n"
        "server_reset_query = DISCARD ALL\n"
        "ignore_startup_parameters = extra_float_digits\n"
    )


def render_pooler_userlist(postgres_password: str) -> str:
    # md5 auth format: "md5" + md5(password + username)
    digest = hashlib.md5((postgres_password + "postgres").encode("utf-8")).hexdigest()
    return f'"postgres" "md5{digest}"\n'


def render_backup_tool_config(
    stanza: str,
    repository_id: str,
    config: ControlPlaneConfig,
    *,
    read_only: bool = False,
) -> str:
    """pgbackrest.conf pointing at ``/pgbackrest/<repository_id>``.

    *read_only* drops retention and async archiving; it is used while a new
    cluster restores from another cluster's repository.
    """
    endpoint = (config.storage_endpoint or "").replace("https://", "").replace("http://", "")
    lines = [
        "[global]",
        "repo1-type=s3",
        f"repo1-s3-endpoint={endpoint}",
        f"repo1-s3-bucket={config.storage_bucket}",
        f"repo1-s3-region={config.storage_region}",
        f"repo1-s3-key={config.storage_access_key or ''}",
        f"repo1-s3-key-secret={config.storage_secret_key or ''}",
        f"repo1-path=/pgbackrest/{repository_id}",
    ]
    if not read_only:
        lines += [
            f"repo1-retention-full={config.retention_full_cycles}",
            f"repo1-retention-diff={config.retention_diff_cycles}",
        ]
    lines += [
        "repo1-s3-uri-style=path",
        "process-max=2",
        "compress-type=lz4",
    ]
    if not read_only:
        lines += ["archive-async=y", f"spool-path={BACKUP_TOOL_SPOOL_PATH}"]
    lines += [
        f"log-path={BACKUP_TOOL_LOG_PATH}",
        "",
        f"[{stanza}]",
        f"pg1-path={PG_DATA_PATH}",
        "pg1-port=5432",
        f"pg1-socket-path={PG_SOCKET_PATH}",
    ]
    return "\n".join(lines) + "\n"


def _healthcheck(test: list[str]) -> dict[str, object]:
    return {"test": test, "interval": "10s", "timeout": "5s", "retries": 3}
