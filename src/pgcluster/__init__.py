"""pgcluster: control plane for managed, highly available PostgreSQL clusters."""

__version__ = "0.4.0"

from pgcluster.config import ConfigError, ControlPlaneConfig, find_config, load_config
from pgcluster.errors import (
    InfrastructureError,
    InvalidRequestError,
    NotFoundError,
    PgClusterError,
    RemoteCommandError,
    StateConflictError,
)
from pgcluster.models import (
    Backup,
    BackupKind,
    BackupStatus,
    BackupType,
    Cluster,
    ClusterStatus,
    Export,
    ExportStatus,
    Node,
    NodeRole,
    RestoreJob,
    RestoreStatus,
    TrustedHostKey,
)
from pgcluster.runtime import ControlPlane

__all__ = [
    "Backup",
    "BackupKind",
    "BackupStatus",
    "BackupType",
    "Cluster",
    "ClusterStatus",
    "ConfigError",
    "ControlPlane",
    "ControlPlaneConfig",
    "Export",
    "ExportStatus",
    "InfrastructureError",
    "InvalidRequestError",
    "Node",
    "NodeRole",
    "NotFoundError",
    "PgClusterError",
    "RemoteCommandError",
    "RestoreJob",
    "RestoreStatus",
    "StateConflictError",
    "TrustedHostKey",
    "__version__",
    "find_config",
    "load_config",
]
