"""Version-tracked SQLite schema migrations."""

from __future__ import annotations

import sqlite3

from pgcluster.db.connection import Database

MIGRATIONS: list[tuple[int, str]] = [
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER NOT NULL
        );
        INSERT INTO schema_version (version) VALUES (0);

        CREATE TABLE IF NOT EXISTS clusters (
            cluster_id            TEXT PRIMARY KEY,
            owner                 TEXT NOT NULL,
            name                  TEXT NOT NULL,
            slug                  TEXT UNIQUE NOT NULL,
            plan                  TEXT NOT NULL DEFAULT 'dedicated',
            status                TEXT NOT NULL DEFAULT 'pending',
            postgres_version      TEXT NOT NULL DEFAULT '16',
            node_count            INTEGER NOT NULL DEFAULT 3,
            node_size             TEXT NOT NULL DEFAULT 'cx23',
            region                TEXT NOT NULL DEFAULT 'fsn1',
            node_regions          TEXT NOT NULL DEFAULT '[]',
            hostname              TEXT,
            port                  INTEGER NOT NULL DEFAULT 5432,
            postgres_password     TEXT NOT NULL DEFAULT '',
            replicator_password   TEXT NOT NULL DEFAULT '',
            error_message         TEXT,
            provisioning_step     TEXT,
            provisioning_progress INTEGER,
            created_at            TEXT NOT NULL,
            updated_at            TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_clusters_owner ON clusters(owner);
        CREATE INDEX IF NOT EXISTS idx_clusters_status ON clusters(status);

        CREATE TABLE IF NOT EXISTS nodes (
            node_id       TEXT PRIMARY KEY,
            cluster_id    TEXT NOT NULL REFERENCES clusters(cluster_id) ON DELETE CASCADE,
            name          TEXT NOT NULL,
            provider_id   INTEGER,
            public_ip     TEXT,
            private_ip    TEXT,
            server_type   TEXT NOT NULL DEFAULT 'cx23',
            location      TEXT NOT NULL DEFAULT 'fsn1',
            status        TEXT NOT NULL DEFAULT 'creating',
            role          TEXT NOT NULL DEFAULT 'replica',
            error_message TEXT,
            position      INTEGER NOT NULL DEFAULT 0,
            created_at    TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_nodes_cluster ON nodes(cluster_id);

        CREATE TABLE IF NOT EXISTS trusted_host_keys (
            host             TEXT PRIMARY KEY,
            fingerprint      TEXT NOT NULL,
            key_type         TEXT,
            first_seen_at    TEXT NOT NULL,
            last_verified_at TEXT NOT NULL
        );
        """,
    ),
    (
        2,
        """
        CREATE TABLE IF NOT EXISTS backups (
            backup_id              TEXT PRIMARY KEY,
            cluster_id             TEXT NOT NULL REFERENCES clusters(cluster_id) ON DELETE CASCADE,
            kind                   TEXT NOT NULL DEFAULT 'manual',
            status                 TEXT NOT NULL DEFAULT 'pending',
            requested_backup_type  TEXT,
            backup_type            TEXT,
            label                  TEXT,
            size_bytes             INTEGER,
            base_path              TEXT,
            wal_path               TEXT,
            wal_start              TEXT,
            wal_stop               TEXT,
            earliest_recovery_time TEXT,
            latest_recovery_time   TEXT,
            retention              TEXT NOT NULL DEFAULT 'manual',
            expires_at             TEXT,
            current_step           TEXT NOT NULL DEFAULT 'pending',
            progress_percent       INTEGER NOT NULL DEFAULT 0,
            error_message          TEXT,
            started_at             TEXT,
            completed_at           TEXT,
            created_at             TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_backups_cluster ON backups(cluster_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_backups_expires ON backups(status, expires_at);

        -- At most one active backup per cluster
        CREATE UNIQUE INDEX IF NOT EXISTS uq_backups_active
            ON backups(cluster_id) WHERE status IN ('pending', 'in_progress');

        CREATE TABLE IF NOT EXISTS restore_jobs (
            job_id            TEXT PRIMARY KEY,
            source_cluster_id TEXT NOT NULL REFERENCES clusters(cluster_id) ON DELETE CASCADE,
            target_cluster_id TEXT REFERENCES clusters(cluster_id) ON DELETE SET NULL,
            backup_id         TEXT NOT NULL REFERENCES backups(backup_id) ON DELETE CASCADE,
            restore_type      TEXT NOT NULL DEFAULT 'full',
            target_time       TEXT,
            status            TEXT NOT NULL DEFAULT 'pending',
            current_step      TEXT,
            progress          INTEGER NOT NULL DEFAULT 0,
            error_message     TEXT,
            created_at        TEXT NOT NULL,
            completed_at      TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_restore_jobs_source ON restore_jobs(source_cluster_id);

        -- At most one active restore per source cluster
        CREATE UNIQUE INDEX IF NOT EXISTS uq_restore_jobs_active
            ON restore_jobs(source_cluster_id) WHERE status IN ('pending', 'in_progress');
        """,
    ),
    (
        3,
        """
        CREATE TABLE IF NOT EXISTS exports (
            export_id           TEXT PRIMARY KEY,
            cluster_id          TEXT NOT NULL REFERENCES clusters(cluster_id) ON DELETE CASCADE,
            status              TEXT NOT NULL DEFAULT 'pending',
            object_key          TEXT,
            size_bytes          INTEGER,
            download_url        TEXT,
            download_expires_at TEXT,
            error_message       TEXT,
            attempts            INTEGER NOT NULL DEFAULT 0,
            started_at          TEXT,
            completed_at        TEXT,
            created_at          TEXT NOT NULL
        );

        CREATE UNIQUE INDEX IF NOT EXISTS uq_exports_active
            ON exports(cluster_id) WHERE status IN ('pending', 'in_progress');

        CREATE TABLE IF NOT EXISTS outbox_events (
            event_id     INTEGER PRIMARY KEY AUTOINCREMENT,
            kind         TEXT NOT NULL,
            aggregate_id TEXT NOT NULL,
            payload      TEXT NOT NULL DEFAULT '{}',
            status       TEXT NOT NULL DEFAULT 'pending',
            attempts     INTEGER NOT NULL DEFAULT 0,
            error        TEXT,
            created_at   TEXT NOT NULL,
            claimed_at   TEXT,
            processed_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_outbox_status ON outbox_events(status, event_id);
        """,
    ),
]


def get_schema_version(db: Database) -> int:
    """Return the current schema version, or 0 if the table doesn't exist."""
    try:
        row = db.fetchone("SELECT version FROM schema_version")
        return row["version"] if row else 0
    except sqlite3.OperationalError:
        return 0


def run_migrations(db: Database) -> int:
    """Apply pending migrations. Returns the final schema version."""
    current = get_schema_version(db)

    for version, sql in MIGRATIONS:
        if version <= current:
            continue
        db.write_script(sql)
        db.write("UPDATE schema_version SET version = ?", (version,))

    return get_schema_version(db)
