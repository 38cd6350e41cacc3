"""Control-plane wiring: every store, service and background loop in one place.

Usage::

    from pgcluster.config import load_config
    from pgcluster.runtime import ControlPlane

    plane = ControlPlane(load_config())
    plane.start()           # outbox workers + periodic jobs
    cluster = plane.clusters.create_cluster("alice", "orders", ["fsn1", "nbg1", "hel1"])
    ...
    plane.stop()
"""

from __future__ import annotations

import logging

from pgcluster.backup.engine import BackupEngine
from pgcluster.backup.export import ExportService
from pgcluster.backup.pgbackrest import BackupTool
from pgcluster.backup.restore import RestoreService
from pgcluster.clients.cloud import CloudProvider, HetznerCloudClient
from pgcluster.clients.dns import CloudflareDnsClient, DnsProvider
from pgcluster.clients.storage import ObjectStorage, S3ObjectStorage
from pgcluster.config import ConfigError, ControlPlaneConfig
from pgcluster.db.connection import Database
from pgcluster.db.migrations import run_migrations
from pgcluster.discovery.leader import ControllerStatusClient, LeaderDiscovery
from pgcluster.dns.sync import DnsFailoverSynchronizer, LeaderGuard, RecoveryStateGuard, always_leader
from pgcluster.models import BackupKind, EventKind
from pgcluster.provisioning.orchestrator import ClusterOrchestrator
from pgcluster.provisioning.service import ClusterService
from pgcluster.remote.executor import RemoteExecutor
from pgcluster.remote.ssh_executor import SshExecutor
from pgcluster.store.backups import BackupStore, RestoreJobStore
from pgcluster.store.clusters import ClusterStore
from pgcluster.store.exports import ExportStore
from pgcluster.tasks.outbox import OutboxStore
from pgcluster.tasks.scheduler import Scheduler
from pgcluster.tasks.worker import TaskDispatcher
from pgcluster.trust.store import SqliteTrustStore, TrustStore

logger = logging.getLogger(__name__)

# UTC
DAILY_BACKUP_CRON = "0 2 * * *"
WEEKLY_BACKUP_CRON = "0 3 * * 0"
MONTHLY_BACKUP_CRON = "0 4 1 * *"
EXPIRY_CRON = "0 5 * * *"

INTERRUPTED = "interrupted by control-plane restart"


def build_cloud(config: ControlPlaneConfig) -> CloudProvider:
    if not config.cloud_token:
        raise ConfigError("cloud_token is required (set PGCLUSTER_CLOUD_TOKEN)")
    return HetznerCloudClient(config.cloud_token, base_url=config.cloud_api_url)


def build_dns(config: ControlPlaneConfig) -> DnsProvider | None:
    if not config.dns_token or not config.dns_zone_id:
        logger.warning("DNS provider not configured, clusters will have no hostname")
        return None
    return CloudflareDnsClient(config.dns_token, config.dns_zone_id, base_url=config.dns_api_url)


def build_storage(config: ControlPlaneConfig) -> ObjectStorage | None:
    if not config.storage_configured:
        return None
    return S3ObjectStorage(
        bucket=config.storage_bucket,
        endpoint_url=config.storage_endpoint,
        region=config.storage_region,
        access_key=config.storage_access_key,
        secret_key=config.storage_secret_key,
    )


class ControlPlane:
    """Owns the database, the services and the background loops."""

    def __init__(
        self,
        config: ControlPlaneConfig,
        *,
        db: Database | None = None,
        cloud: CloudProvider | None = None,
        dns: DnsProvider | None = None,
        storage: ObjectStorage | None = None,
        executor: RemoteExecutor | None = None,
        trust_store: TrustStore | None = None,
        leader_guard: LeaderGuard | None = None,
        discovery: LeaderDiscovery | None = None,
    ) -> None:
        """Build the control plane.

        Args:
            config: Parsed configuration.
            db: Database to use (default: ``config.db_path``). Migrations
                are applied on construction.
            cloud: Cloud VM provider (default: Hetzner client from config).
            dns: DNS provider (default: Cloudflare client from config, or
                none when unconfigured).
            storage: Object storage (default: S3 client when configured).
            executor: Remote command primitive (default: SSH with the
                persisted trust store).
            trust_store: Host-key trust store (default: SQLite-backed).
            leader_guard: Gate for the DNS sweep (default: recovery-state
                probe of ``leader_guard_url``, or always run).
            discovery: Leader Discovery (default: controller status over HTTP
                with an SSH fallback through *executor*).
        """
        self.config = config
        self.db = db or Database(config.db_path)
        run_migrations(self.db)

        self.cluster_store = ClusterStore(self.db)
        self.backup_store = BackupStore(self.db)
        self.restore_job_store = RestoreJobStore(self.db)
        self.export_store = ExportStore(self.db)
        self.outbox = OutboxStore(self.db)
        self.trust_store: TrustStore = trust_store or SqliteTrustStore(self.db)

        self.executor: RemoteExecutor = executor or SshExecutor(
            self.trust_store,
            username=config.ssh_user,
            key_filename=config.ssh_key_path,
            port=config.ssh_port,
            default_timeout=config.ssh_timeout,
            max_attempts=config.ssh_max_attempts,
            retry_delay=config.ssh_retry_delay,
        )
        self.dns = dns if dns is not None else build_dns(config)
        self.storage = storage if storage is not None else build_storage(config)
        cloud = cloud or build_cloud(config)

        self.discovery = discovery or LeaderDiscovery(
            ControllerStatusClient(self.executor, port=config.controller_port),
            timeout=config.controller_timeout,
        )
        tool = BackupTool(
            self.executor,
            backup_timeout=config.backup_timeout,
            restore_timeout=config.tool_restore_timeout,
        )

        self.clusters = ClusterService(self.db, self.cluster_store, self.discovery)
        self.orchestrator = ClusterOrchestrator(
            self.cluster_store,
            self.restore_job_store,
            cloud,
            self.executor,
            self.discovery,
            self.trust_store,
            config,
            dns=self.dns,
        )
        self.backups = BackupEngine(
            self.db,
            self.cluster_store,
            self.backup_store,
            self.restore_job_store,
            tool,
            self.discovery,
            config,
            storage=self.storage,
        )
        self.restores = RestoreService(
            self.db,
            self.cluster_store,
            self.backup_store,
            self.restore_job_store,
            tool,
            self.discovery,
            self.orchestrator,
            ready_attempts=config.restore_ready_attempts,
            ready_interval=config.restore_ready_interval,
        )
        self.exports = ExportService(
            self.db,
            self.cluster_store,
            self.export_store,
            self.executor,
            self.discovery,
            config,
            storage=self.storage,
        )

        if leader_guard is None:
            leader_guard = (
                RecoveryStateGuard(config.leader_guard_url) if config.leader_guard_url else always_leader
            )
        self.dns_sync = (
            DnsFailoverSynchronizer(self.cluster_store, self.discovery, self.dns, is_leader=leader_guard)
            if self.dns is not None
            else None
        )

        self.dispatcher = TaskDispatcher(
            self.outbox,
            max_workers=config.worker_count,
            poll_interval=config.outbox_poll_interval,
        )
        self.scheduler = Scheduler()
        self._register_handlers()
        self._register_jobs()

    def _register_handlers(self) -> None:
        self.dispatcher.register(EventKind.CLUSTER_CREATED, self.orchestrator.handle_cluster_created)
        self.dispatcher.register(EventKind.CLUSTER_DELETE_REQUESTED, self.orchestrator.handle_delete_requested)
        self.dispatcher.register(EventKind.BACKUP_CREATED, self.backups.handle_backup_created)
        self.dispatcher.register(EventKind.RESTORE_REQUESTED, self.restores.handle_restore_requested)
        self.dispatcher.register(EventKind.EXPORT_CREATED, self.exports.handle_export_created)
        self.dispatcher.on_start(self.fail_interrupted_work)

    def _register_jobs(self) -> None:
        if self.dns_sync is not None:
            self.scheduler.add_interval("dns-sync", self.dns_sync.sync_all, self.config.dns_sync_interval)
        self.scheduler.add_cron(
            "backup-daily",
            lambda: self.backups.create_scheduled_backups(BackupKind.SCHEDULED_DAILY),
            DAILY_BACKUP_CRON,
        )
        self.scheduler.add_cron(
            "backup-weekly",
            lambda: self.backups.create_scheduled_backups(BackupKind.SCHEDULED_WEEKLY),
            WEEKLY_BACKUP_CRON,
        )
        self.scheduler.add_cron(
            "backup-monthly",
            lambda: self.backups.create_scheduled_backups(BackupKind.SCHEDULED_MONTHLY),
            MONTHLY_BACKUP_CRON,
        )
        self.scheduler.add_cron("backup-expiry", self.backups.expire_sweep, EXPIRY_CRON)

    def fail_interrupted_work(self) -> None:
        """Fail backups and restore jobs a previous process left IN_PROGRESS."""
        backups = self.backup_store.fail_interrupted(INTERRUPTED)
        restores = self.restore_job_store.fail_interrupted(INTERRUPTED)
        if backups or restores:
            logger.warning(
                "Failed %d backups and %d restore jobs left in progress by a previous run", backups, restores
            )

    def start(self) -> None:
        self.dispatcher.start()
        self.scheduler.start()
        logger.info("Control plane started (%d workers)", self.config.worker_count)

    def stop(self) -> None:
        self.scheduler.stop()
        self.dispatcher.stop()
        logger.info("Control plane stopped")
