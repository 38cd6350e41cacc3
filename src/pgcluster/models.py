"""Core data models for the pgcluster control plane.

Defines the schemas for:
- Clusters and their nodes (what is provisioned)
- Backups, restore jobs and exports (how data is protected)
- Trusted host keys (who remote commands may talk to)
- Outbox events (what background work has been requested)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# --- Enums ---


class ClusterStatus(enum.StrEnum):
    PENDING = "pending"
    CREATING = "creating"
    RUNNING = "running"
    ERROR = "error"
    DELETING = "deleting"
    DELETED = "deleted"


TERMINATING_STATUSES = (ClusterStatus.DELETING, ClusterStatus.DELETED)


class ProvisioningStep(enum.StrEnum):
    CREATING_SERVERS = "creating_servers"
    WAITING_SSH = "waiting_ssh"
    BUILDING_CONFIG = "building_config"
    STARTING_CONTAINERS = "starting_containers"
    ELECTING_LEADER = "electing_leader"
    CREATING_DNS = "creating_dns"


TOTAL_PROVISIONING_STEPS = 6

PROVISIONING_STEP_ORDER: dict[ProvisioningStep, int] = {
    step: index + 1 for index, step in enumerate(ProvisioningStep)
}


class NodeStatus(enum.StrEnum):
    CREATING = "creating"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"
    DELETING = "deleting"


class NodeRole(enum.StrEnum):
    """Replication role of a node as reported by its failover controller."""

    LEADER = "leader"
    REPLICA = "replica"
    UNKNOWN = "unknown"


class BackupKind(enum.StrEnum):
    MANUAL = "manual"
    SCHEDULED_DAILY = "scheduled_daily"
    SCHEDULED_WEEKLY = "scheduled_weekly"
    SCHEDULED_MONTHLY = "scheduled_monthly"


class BackupStatus(enum.StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"
    DELETED = "deleted"


ACTIVE_BACKUP_STATUSES = (BackupStatus.PENDING, BackupStatus.IN_PROGRESS)


class BackupStep(enum.StrEnum):
    PENDING = "pending"
    PREPARING = "preparing"
    BACKING_UP = "backing_up"
    UPLOADING = "uploading"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


class BackupType(enum.StrEnum):
    """Physical backup method used by the backup tool."""

    FULL = "full"
    DIFF = "diff"
    INCR = "incr"


class RetentionClass(enum.StrEnum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    MANUAL = "manual"


class RestoreType(enum.StrEnum):
    FULL = "full"
    PITR = "pitr"


class RestoreStatus(enum.StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_RESTORE_STATUSES = (RestoreStatus.PENDING, RestoreStatus.IN_PROGRESS)


class RestoreStep(enum.StrEnum):
    CREATING_CLUSTER = "creating_cluster"
    CREATING_SERVERS = "creating_servers"
    WAITING_SSH = "waiting_ssh"
    CONFIGURING_NODES = "configuring_nodes"
    PREPARING_RESTORE = "preparing_restore"
    RESTORING_DATA = "restoring_data"
    STARTING_REPLICAS = "starting_replicas"
    CONFIGURING_BACKUP = "configuring_backup"
    VERIFYING_RESTORE = "verifying_restore"
    CREATING_DNS = "creating_dns"
    COMPLETED = "completed"
    FAILED = "failed"


class ExportStatus(enum.StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class EventKind(enum.StrEnum):
    CLUSTER_CREATED = "cluster.created"
    CLUSTER_DELETE_REQUESTED = "cluster.delete_requested"
    BACKUP_CREATED = "backup.created"
    RESTORE_REQUESTED = "restore.requested"
    EXPORT_CREATED = "export.created"


class OutboxStatus(enum.StrEnum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    DONE = "done"
    FAILED = "failed"


# --- Clusters ---


class Node(BaseModel):
    """A virtual machine that is a member of exactly one cluster.

    ``role`` is the hint recorded at creation time; the authoritative role
    always comes from leader discovery.
    """

    node_id: str
    cluster_id: str
    name: str
    provider_id: int | None = None
    public_ip: str | None = None
    private_ip: str | None = None
    server_type: str = "cx23"
    location: str = "fsn1"
    status: NodeStatus = NodeStatus.CREATING
    role: NodeRole = NodeRole.REPLICA
    error_message: str | None = None
    created_at: datetime


class Cluster(BaseModel):
    """A multi-node PostgreSQL HA cluster owned by one principal."""

    cluster_id: str
    owner: str
    name: str
    slug: str
    plan: str = "dedicated"
    status: ClusterStatus = ClusterStatus.PENDING
    postgres_version: str = "16"
    node_count: int = 3
    node_size: str = "cx23"
    region: str = "fsn1"
    node_regions: list[str] = Field(default_factory=list)
    hostname: str | None = None
    port: int = 5432
    postgres_password: str = Field("", repr=False)
    replicator_password: str = Field("", repr=False)
    error_message: str | None = None
    provisioning_step: ProvisioningStep | None = None
    provisioning_progress: int | None = None
    nodes: list[Node] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime

    def region_for(self, index: int) -> str:
        """Region for the node at *index*, falling back to the cluster region."""
        if index < len(self.node_regions) and self.node_regions[index]:
            return self.node_regions[index]
        return self.region


class ClusterHealth(BaseModel):
    """Live per-node view of a cluster."""

    cluster_id: str
    status: ClusterStatus
    leader: str | None = None
    nodes: list[NodeHealth] = Field(default_factory=list)


class NodeHealth(BaseModel):
    """Controller-reported status of a single node."""

    node_id: str
    name: str
    address: str | None = None
    role: NodeRole = NodeRole.UNKNOWN
    state: str | None = None
    reachable: bool = False


# --- Backups ---


class Backup(BaseModel):
    """A physical backup taken by the backup tool.

    ``requested_backup_type`` is what the caller (or schedule) asked for;
    ``backup_type`` is what the tool actually produced.
    """

    backup_id: str
    cluster_id: str
    kind: BackupKind = BackupKind.MANUAL
    status: BackupStatus = BackupStatus.PENDING
    requested_backup_type: BackupType | None = None
    backup_type: BackupType | None = None
    label: str | None = None
    size_bytes: int | None = None
    base_path: str | None = None
    wal_path: str | None = None
    wal_start: str | None = None
    wal_stop: str | None = None
    earliest_recovery_time: datetime | None = None
    latest_recovery_time: datetime | None = None
    retention: RetentionClass = RetentionClass.MANUAL
    expires_at: datetime | None = None
    current_step: BackupStep = BackupStep.PENDING
    progress_percent: int = 0
    error_message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


class BackupDeletionInfo(BaseModel):
    """Impact summary shown before deleting a backup."""

    backup: Backup
    dependents: list[Backup] = Field(default_factory=list)
    total_count: int = 1
    total_size_bytes: int = 0
    requires_confirmation: bool = False
    warning_message: str | None = None


class RecoveryWindow(BaseModel):
    """Range of timestamps a point-in-time restore can target."""

    cluster_id: str
    available: bool = False
    earliest: datetime | None = None
    latest: datetime | None = None
    backup_count: int = 0


class StorageTrendPoint(BaseModel):
    day: str
    size_bytes: int


class BackupMetrics(BaseModel):
    cluster_id: str
    total_size_bytes: int = 0
    backup_count: int = 0
    oldest_backup: datetime | None = None
    newest_backup: datetime | None = None
    recovery_window: RecoveryWindow
    storage_trend: list[StorageTrendPoint] = Field(default_factory=list)


class RestoreJob(BaseModel):
    """A restore of a source cluster's backup, in place or into a new cluster."""

    job_id: str
    source_cluster_id: str
    target_cluster_id: str | None = None
    backup_id: str
    restore_type: RestoreType = RestoreType.FULL
    target_time: datetime | None = None
    status: RestoreStatus = RestoreStatus.PENDING
    current_step: RestoreStep | None = None
    progress: int = 0
    error_message: str | None = None
    created_at: datetime
    completed_at: datetime | None = None


class Export(BaseModel):
    """A logical (pg_dump) export uploaded to object storage."""

    export_id: str
    cluster_id: str
    status: ExportStatus = ExportStatus.PENDING
    object_key: str | None = None
    size_bytes: int | None = None
    download_url: str | None = None
    download_expires_at: datetime | None = None
    error_message: str | None = None
    attempts: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime


# --- Trust ---


class TrustedHostKey(BaseModel):
    """Fingerprint pinned for a remote host on first contact."""

    host: str
    fingerprint: str
    key_type: str | None = None
    first_seen_at: datetime
    last_verified_at: datetime


# --- Outbox ---


class OutboxEvent(BaseModel):
    """A unit of background work recorded in the same commit as its trigger."""

    event_id: int
    kind: EventKind
    aggregate_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    error: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


ClusterHealth.model_rebuild()
