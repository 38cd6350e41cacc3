"""Config file loading and auto-discovery for the control plane.

Searches for ``pgcluster.yaml`` in the current directory and parent
directories, parses it, resolves relative paths against the config file's
location, then applies ``PGCLUSTER_*`` environment overrides so secrets
(API tokens, storage keys) can stay out of the file.
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

CONFIG_FILENAME = "pgcluster.yaml"
ENV_PREFIX = "PGCLUSTER_"

_PATH_KEYS = ("db_path", "ssh_key_path")


class ConfigError(Exception):
    """Raised when the config file cannot be parsed."""


@dataclass(frozen=True)
class ControlPlaneConfig:
    """Parsed control-plane configuration.

    Durations are in seconds. Every field can be overridden with an
    environment variable, e.g. ``PGCLUSTER_DB_PATH`` or
    ``PGCLUSTER_CLOUD_TOKEN``.
    """

    config_path: Path | None = None
    db_path: str = "./pgcluster.db"
    log_level: str = "INFO"
    base_domain: str = "db.example.com"

    # Remote command channel
    ssh_user: str = "root"
    ssh_key_path: str | None = None
    ssh_port: int = 22
    ssh_timeout: float = 30.0
    ssh_max_attempts: int = 3
    ssh_retry_delay: float = 2.0

    # Failover controller
    controller_port: int = 8008
    controller_timeout: float = 10.0

    # Bounded waits (attempts x interval)
    reachability_attempts: int = 60
    reachability_interval: float = 5.0
    quorum_attempts: int = 30
    quorum_interval: float = 2.0
    election_attempts: int = 60
    election_interval: float = 5.0
    restore_timeout: float = 1800.0
    restore_poll_interval: float = 5.0
    restore_ready_attempts: int = 15
    restore_ready_interval: float = 2.0
    backup_timeout: float = 3600.0
    tool_restore_timeout: float = 7200.0
    dns_sync_interval: float = 30.0
    # Local PostgreSQL whose recovery state gates the DNS sync; unset = always run
    leader_guard_url: str | None = field(default=None, repr=False)

    # Retention
    retention_daily: int = 7
    retention_weekly: int = 4
    retention_monthly: int = 12
    retention_full_cycles: int = 2
    retention_diff_cycles: int = 7

    # Export
    export_max_retries: int = 2
    export_retry_delay: float = 10.0
    export_timeout: float = 3600.0
    export_download_expiry_hours: int = 24

    # Background work
    worker_count: int = 4
    outbox_poll_interval: float = 1.0

    # Cloud provider
    cloud_api_url: str = "https://api.hetzner.cloud/v1"
    cloud_token: str | None = field(default=None, repr=False)
    image: str = "ubuntu-24.04"
    ssh_key_ids: tuple[str, ...] = ()

    # DNS provider
    dns_api_url: str = "https://api.cloudflare.com/client/v4"
    dns_token: str | None = field(default=None, repr=False)
    dns_zone_id: str | None = None

    # Object storage
    storage_endpoint: str | None = None
    storage_bucket: str = "pgcluster-backups"
    storage_region: str = "eu-central"
    storage_access_key: str | None = None
    storage_secret_key: str | None = field(default=None, repr=False)

    @property
    def storage_configured(self) -> bool:
        return bool(self.storage_endpoint and self.storage_access_key and self.storage_secret_key)


def find_config(start: Path | None = None) -> Path | None:
    """Walk from *start* (default ``cwd()``) up to the filesystem root.

    Returns the first ``pgcluster.yaml`` found, or ``None``.
    """
    current = (start or Path.cwd()).resolve()
    while True:
        candidate = current / CONFIG_FILENAME
        if candidate.is_file():
            return candidate
        parent = current.parent
        if parent == current:
            return None
        current = parent


def load_config(
    path: str | Path | None = None,
    *,
    auto_discover: bool = True,
    environ: Mapping[str, str] | None = None,
) -> ControlPlaneConfig:
    """Load the control-plane config.

    Resolution order:

    1. Explicit *path* (error if it doesn't exist).
    2. Auto-discover by walking parent directories.
    3. Defaults only.

    Environment overrides are applied last in every case.
    """
    config_path: Path | None = None

    if path is not None:
        config_path = Path(path).resolve()
        if not config_path.is_file():
            msg = f"Config file not found: {config_path}"
            raise FileNotFoundError(msg)
    elif auto_discover:
        config_path = find_config()

    values: dict[str, Any] = {}
    if config_path is not None:
        values = _parse_config(config_path)
        values["config_path"] = config_path

    values.update(_env_overrides(os.environ if environ is None else environ))
    return ControlPlaneConfig(**values)


def _parse_config(config_path: Path) -> dict[str, Any]:
    """Read and parse a YAML config file, resolving relative paths."""
    text = config_path.read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}

    if not isinstance(data, dict):
        msg = f"Expected a YAML mapping in {config_path}, got {type(data).__name__}"
        raise ConfigError(msg)

    known = {f.name for f in dataclasses.fields(ControlPlaneConfig)} - {"config_path"}
    unknown = sorted(set(data) - known)
    if unknown:
        msg = f"Unknown config keys in {config_path}: {', '.join(unknown)}"
        raise ConfigError(msg)

    base = config_path.parent
    values = dict(data)
    for key in _PATH_KEYS:
        if values.get(key) is not None:
            values[key] = str((base / values[key]).resolve())
    if "ssh_key_ids" in values:
        values["ssh_key_ids"] = tuple(str(v) for v in values["ssh_key_ids"] or ())
    return values


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    """Collect ``PGCLUSTER_*`` overrides, coerced to each field's type."""
    overrides: dict[str, Any] = {}
    for fld in dataclasses.fields(ControlPlaneConfig):
        if fld.name == "config_path":
            continue
        raw = environ.get(f"{ENV_PREFIX}{fld.name.upper()}")
        if raw is None:
            continue
        overrides[fld.name] = _coerce(fld.name, str(fld.type), raw)
    return overrides


def _coerce(name: str, type_name: str, raw: str) -> Any:
    try:
        if type_name.startswith("int"):
            return int(raw)
        if type_name.startswith("float"):
            return float(raw)
        if type_name.startswith("bool"):
            return raw.lower() in ("1", "true", "yes")
        if type_name.startswith("tuple"):
            return tuple(part.strip() for part in raw.split(",") if part.strip())
    except ValueError as exc:
        msg = f"Invalid value for {ENV_PREFIX}{name.upper()}: {raw!r}"
        raise ConfigError(msg) from exc
    return raw
