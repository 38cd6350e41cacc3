"""Transactional outbox for background work.

A request handler writes its record and an outbox event in one commit;
the dispatcher picks the event up afterwards. Background work therefore
never starts before the state it acts on is durable and visible.
"""

from __future__ import annotations

import json
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any

from pgcluster.db.connection import Database
from pgcluster.db.timestamps import from_db, to_db
from pgcluster.models import EventKind, OutboxEvent, OutboxStatus


class OutboxStore:
    """Reads and writes ``outbox_events`` rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @staticmethod
    def enqueue(
        conn: sqlite3.Connection,
        kind: EventKind,
        aggregate_id: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        """Record an event inside the caller's transaction. Returns its id."""
        cursor = conn.execute(
            """INSERT INTO outbox_events (kind, aggregate_id, payload, status, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (
                kind.value,
                aggregate_id,
                json.dumps(payload or {}, sort_keys=True),
                OutboxStatus.PENDING.value,
                to_db(datetime.now(tz=UTC)),
            ),
        )
        return int(cursor.lastrowid)

    def claim_batch(self, limit: int = 10) -> list[OutboxEvent]:
        """Claim up to *limit* pending events, oldest first.

        Each event is flipped to ``dispatched`` with a conditional update, so
        concurrent pollers never claim the same event twice.
        """
        rows = self._db.fetchall(
            "SELECT event_id FROM outbox_events WHERE status = 'pending' ORDER BY event_id LIMIT ?",
            (limit,),
        )
        claimed: list[OutboxEvent] = []
        now = to_db(datetime.now(tz=UTC))
        for row in rows:
            count = self._db.write(
                """UPDATE outbox_events
                   SET status = 'dispatched', claimed_at = ?, attempts = attempts + 1
                   WHERE event_id = ? AND status = 'pending'""",
                (now, row["event_id"]),
            )
            if count:
                event = self.get(row["event_id"])
                if event is not None:
                    claimed.append(event)
        return claimed

    def mark_done(self, event_id: int) -> None:
        self._db.write(
            """UPDATE outbox_events SET status = 'done', processed_at = ?, error = NULL
               WHERE event_id = ?""",
            (to_db(datetime.now(tz=UTC)), event_id),
        )

    def mark_failed(self, event_id: int, error: str) -> None:
        self._db.write(
            """UPDATE outbox_events SET status = 'failed', processed_at = ?, error = ?
               WHERE event_id = ?""",
            (to_db(datetime.now(tz=UTC)), error, event_id),
        )

    def requeue_stale(self, older_than: timedelta = timedelta(0)) -> int:
        """Return events stuck in ``dispatched`` (e.g. after a crash) to ``pending``."""
        cutoff = to_db(datetime.now(tz=UTC) - older_than)
        return self._db.write(
            """UPDATE outbox_events SET status = 'pending', claimed_at = NULL
               WHERE status = 'dispatched' AND claimed_at <= ?""",
            (cutoff,),
        )

    def get(self, event_id: int) -> OutboxEvent | None:
        row = self._db.fetchone("SELECT * FROM outbox_events WHERE event_id = ?", (event_id,))
        return self._row_to_event(row) if row else None

    def list_events(self, status: OutboxStatus | None = None) -> list[OutboxEvent]:
        if status is None:
            rows = self._db.fetchall("SELECT * FROM outbox_events ORDER BY event_id")
        else:
            rows = self._db.fetchall(
                "SELECT * FROM outbox_events WHERE status = ? ORDER BY event_id",
                (status.value,),
            )
        return [self._row_to_event(r) for r in rows]

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> OutboxEvent:
        return OutboxEvent(
            event_id=row["event_id"],
            kind=EventKind(row["kind"]),
            aggregate_id=row["aggregate_id"],
            payload=json.loads(row["payload"] or "{}"),
            status=OutboxStatus(row["status"]),
            attempts=row["attempts"],
            error=row["error"],
            created_at=from_db(row["created_at"]),
            processed_at=from_db(row["processed_at"]),
        )
