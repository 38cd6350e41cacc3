"""pgcluster CLI: operator commands for the control plane.

Commands:
    init-db             Create or upgrade the control-plane database
    serve               Run the API with outbox workers and periodic jobs
    trust list          Show pinned host-key fingerprints
    trust show          Show the fingerprint pinned for one host
    trust forget        Drop a pinned fingerprint (after a legitimate rebuild)
    cluster list        Show clusters
    cluster show        Show one cluster with its nodes
    backup list         Show a cluster's backups
    backup deletion-info
                        Show what deleting a backup would remove
"""

from __future__ import annotations

import json
import logging
import sys
from typing import Any

import click

from pgcluster import __version__
from pgcluster.backup import chain
from pgcluster.config import ConfigError, ControlPlaneConfig, load_config
from pgcluster.db.connection import Database
from pgcluster.db.migrations import run_migrations
from pgcluster.models import BackupStatus, Cluster
from pgcluster.store.backups import BackupStore
from pgcluster.store.clusters import ClusterStore
from pgcluster.trust.store import SqliteTrustStore

STATUS_COLORS = {
    "running": "green",
    "pending": "yellow",
    "creating": "yellow",
    "in_progress": "yellow",
    "completed": "green",
    "error": "red",
    "failed": "red",
    "deleting": "magenta",
    "deleted": "white",
    "expired": "white",
}


def _config(ctx: click.Context) -> ControlPlaneConfig:
    return ctx.obj["config"]


def _open_db(ctx: click.Context) -> Database:
    """Open the configured database, applying pending migrations."""
    db = Database(_config(ctx).db_path)
    run_migrations(db)
    return db


def _status(value: str) -> str:
    return click.style(f"{value:<11}", fg=STATUS_COLORS.get(value, "white"))


def _find_cluster(clusters: ClusterStore, ref: str) -> Cluster:
    """Look a cluster up by id, then by slug."""
    cluster = clusters.get(ref)
    if cluster is None:
        cluster = next((c for c in clusters.list_clusters(include_deleted=True) if c.slug == ref), None)
    if cluster is None:
        click.echo(f"Cluster not found: {ref}", err=True)
        sys.exit(1)
    return cluster


def _dump(data: Any) -> None:
    click.echo(json.dumps(data, indent=2))


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config", "config_path", default=None, type=click.Path(dir_okay=False),
    help="Path to pgcluster.yaml (default: auto-discover)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """pgcluster: control plane for managed PostgreSQL clusters."""
    try:
        config = load_config(config_path)
    except (ConfigError, FileNotFoundError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create or upgrade the control-plane database."""
    db = Database(_config(ctx).db_path)
    version = run_migrations(db)
    click.echo(f"Database {db.path} is at schema version {version}")


@cli.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8000, type=int, help="Bind port")
@click.option("--no-workers", is_flag=True, help="Serve the API only, without background work")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, no_workers: bool) -> None:
    """Run the API together with the outbox workers and periodic jobs."""
    import uvicorn

    from pgcluster.api.app import create_app
    from pgcluster.runtime import ControlPlane

    try:
        plane = ControlPlane(_config(ctx))
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    app = create_app(plane)
    if not no_workers:
        plane.start()
    click.echo(f"pgcluster control plane at http://{host}:{port}/api/docs")
    try:
        uvicorn.run(app, host=host, port=port, log_level="info")
    finally:
        if not no_workers:
            plane.stop()


# --- trust ---


@cli.group()
def trust() -> None:
    """Pinned SSH host keys."""


@trust.command("list")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def trust_list(ctx: click.Context, json_output: bool) -> None:
    """List pinned host-key fingerprints."""
    hosts = SqliteTrustStore(_open_db(ctx)).list_hosts()

    if json_output:
        _dump([h.model_dump(mode="json") for h in hosts])
        return
    if not hosts:
        click.echo("No trusted hosts.")
        return
    for h in hosts:
        click.echo(
            f"  {h.host:<20} {h.key_type or '-':<20} {h.fingerprint}"
            f"  last verified {h.last_verified_at.isoformat()[:19]}"
        )
    click.echo(f"\n{len(hosts)} trusted host(s).")


@trust.command("show")
@click.argument("host")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def trust_show(ctx: click.Context, host: str, json_output: bool) -> None:
    """Show the fingerprint pinned for HOST."""
    entry = SqliteTrustStore(_open_db(ctx)).get(host)
    if entry is None:
        click.echo(f"No pinned key for {host}", err=True)
        sys.exit(1)

    if json_output:
        _dump(entry.model_dump(mode="json"))
        return
    click.echo(f"Host:          {entry.host}")
    click.echo(f"Key type:      {entry.key_type or '-'}")
    click.echo(f"Fingerprint:   {entry.fingerprint}")
    click.echo(f"First seen:    {entry.first_seen_at.isoformat()}")
    click.echo(f"Last verified: {entry.last_verified_at.isoformat()}")


@trust.command("forget")
@click.argument("host")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def trust_forget(ctx: click.Context, host: str, yes: bool) -> None:
    """Drop the pinned key for HOST so the next contact pins a new one."""
    if not yes:
        click.confirm(f"Forget the pinned key for {host}?", abort=True)
    if not SqliteTrustStore(_open_db(ctx)).forget(host):
        click.echo(f"No pinned key for {host}", err=True)
        sys.exit(1)
    click.echo(f"Forgot host key for {host}")


# --- cluster ---


@cli.group()
def cluster() -> None:
    """Cluster inspection commands."""


@cluster.command("list")
@click.option("--owner", default=None, help="Only clusters of this owner")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted clusters")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def cluster_list(ctx: click.Context, owner: str | None, include_deleted: bool, json_output: bool) -> None:
    """List clusters, newest first."""
    clusters = ClusterStore(_open_db(ctx)).list_clusters(owner=owner, include_deleted=include_deleted)

    if json_output:
        _dump([_cluster_json(c) for c in clusters])
        return
    if not clusters:
        click.echo("No clusters found.")
        return
    for c in clusters:
        click.echo(
            f"  {c.cluster_id}  {_status(c.status.value)}  {c.slug:<30}"
            f" owner={c.owner}  nodes={c.node_count}  pg{c.postgres_version}"
        )
    click.echo(f"\n{len(clusters)} cluster(s).")


@cluster.command("show")
@click.argument("cluster_ref")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def cluster_show(ctx: click.Context, cluster_ref: str, json_output: bool) -> None:
    """Show a cluster (by id or slug) with its nodes."""
    c = _find_cluster(ClusterStore(_open_db(ctx)), cluster_ref)

    if json_output:
        _dump(_cluster_json(c))
        return
    click.echo(f"Cluster:   {c.name} ({c.slug})")
    click.echo(f"ID:        {c.cluster_id}")
    click.echo(f"Owner:     {c.owner}")
    click.echo(f"Status:    {_status(c.status.value)}")
    if c.provisioning_step is not None:
        click.echo(f"Step:      {c.provisioning_step.value} ({c.provisioning_progress}/6)")
    click.echo(f"Hostname:  {c.hostname or '-'}:{c.port}")
    if c.error_message:
        click.echo(click.style(f"Error:     {c.error_message}", fg="red"))
    click.echo("Nodes:")
    for n in c.nodes:
        click.echo(
            f"  {n.name:<30} {_status(n.status.value)} {n.role.value:<8}"
            f" {n.public_ip or '-':<16} {n.location}"
        )


def _cluster_json(c: Cluster) -> dict[str, Any]:
    return c.model_dump(mode="json", exclude={"postgres_password", "replicator_password"})


# --- backup ---


@cli.group()
def backup() -> None:
    """Backup inspection commands."""


@backup.command("list")
@click.argument("cluster_ref")
@click.option("--all", "include_deleted", is_flag=True, help="Include deleted backups")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def backup_list(ctx: click.Context, cluster_ref: str, include_deleted: bool, json_output: bool) -> None:
    """List the backups of a cluster, newest first."""
    db = _open_db(ctx)
    c = _find_cluster(ClusterStore(db), cluster_ref)
    backups = list(reversed(BackupStore(db).list_for_cluster(c.cluster_id)))
    if not include_deleted:
        backups = [b for b in backups if b.status is not BackupStatus.DELETED]

    if json_output:
        _dump([b.model_dump(mode="json") for b in backups])
        return
    if not backups:
        click.echo(f"No backups for {c.slug}.")
        return
    for b in backups:
        kind = (b.backup_type or b.requested_backup_type)
        click.echo(
            f"  {b.backup_id}  {_status(b.status.value)}  {b.kind.value:<18}"
            f" {kind.value if kind else '-':<5} {b.label or '-':<26}"
            f" {b.size_bytes or 0:>12} B  {b.created_at.isoformat()[:19]}"
        )
    click.echo(f"\n{len(backups)} backup(s).")


@backup.command("deletion-info")
@click.argument("cluster_ref")
@click.argument("backup_id")
@click.option("--json-output", is_flag=True, help="Output as JSON")
@click.pass_context
def backup_deletion_info(ctx: click.Context, cluster_ref: str, backup_id: str, json_output: bool) -> None:
    """Show which backups deleting BACKUP_ID would also remove."""
    db = _open_db(ctx)
    c = _find_cluster(ClusterStore(db), cluster_ref)
    store = BackupStore(db)
    target = store.get(backup_id)
    if target is None or target.cluster_id != c.cluster_id:
        click.echo(f"Backup not found: {backup_id}", err=True)
        sys.exit(1)

    backups = store.list_for_cluster(c.cluster_id)
    info = chain.deletion_info(target, chain.find_dependents(target, backups))
    only_full = chain.is_only_full(target, backups)

    if json_output:
        data = info.model_dump(mode="json")
        data["only_full_backup"] = only_full
        _dump(data)
        return
    click.echo(f"Backup:      {target.backup_id} ({target.label or 'no label'})")
    click.echo(f"Removes:     {info.total_count} backup(s), {info.total_size_bytes} bytes")
    for d in info.dependents:
        click.echo(f"  - {d.backup_id}  {d.label or '-'}")
    if info.warning_message:
        click.echo(click.style(info.warning_message, fg="yellow"))
    if only_full:
        click.echo(click.style("This is the only full backup and cannot be deleted.", fg="red"))
