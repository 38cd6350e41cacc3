"""Trust-on-first-use store for remote host keys.

The first time a host is contacted its key fingerprint is pinned. Every
later contact must present a key with the same fingerprint; anything else
is rejected as a possible key rotation or interception. Entries are
released when a node is torn down because cloud addresses get recycled.

Two backends satisfy :class:`TrustStore`:

- :class:`SqliteTrustStore` persists pins in the control-plane database and
  keeps a read-through cache. First contact uses ``INSERT OR IGNORE`` so two
  concurrent first contacts with different keys cannot both win.
- :class:`InMemoryTrustStore` keeps pins in a dict; pins are lost on restart.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import logging
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, runtime_checkable

from pgcluster.db.connection import Database
from pgcluster.db.timestamps import from_db, to_db
from pgcluster.models import TrustedHostKey

logger = logging.getLogger(__name__)


class HostKeyMismatchError(Exception):
    """Raised when a host presents a key that differs from its pinned key."""

    def __init__(self, host: str, expected: str, presented: str) -> None:
        super().__init__(
            f"Host key for {host} does not match the pinned fingerprint "
            f"(expected {expected}, got {presented}); possible interception"
        )
        self.host = host
        self.expected = expected
        self.presented = presented


class TrustVerdict(enum.StrEnum):
    PINNED = "pinned"
    """First contact: the key was accepted and its fingerprint stored."""

    VERIFIED = "verified"
    """The key matches the pinned fingerprint."""

    MISMATCH = "mismatch"
    """The key differs from the pinned fingerprint and must be rejected."""


def fingerprint(key_bytes: bytes) -> str:
    """OpenSSH-style SHA-256 fingerprint of a raw public key blob."""
    digest = hashlib.sha256(key_bytes).digest()
    return "SHA256:" + base64.b64encode(digest).decode("ascii").rstrip("=")


@runtime_checkable
class TrustStore(Protocol):
    """Protocol for host-key trust backends."""

    def verify(self, host: str, key_type: str, key_bytes: bytes) -> TrustVerdict: ...

    def get(self, host: str) -> TrustedHostKey | None: ...

    def list_hosts(self) -> list[TrustedHostKey]: ...

    def forget(self, host: str) -> bool: ...


class InMemoryTrustStore:
    """Dict-backed trust store guarded by a lock."""

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._entries: dict[str, TrustedHostKey] = {}

    def verify(self, host: str, key_type: str, key_bytes: bytes) -> TrustVerdict:
        presented = fingerprint(key_bytes)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(host)
            if entry is None:
                self._entries[host] = TrustedHostKey(
                    host=host,
                    fingerprint=presented,
                    key_type=key_type,
                    first_seen_at=now,
                    last_verified_at=now,
                )
                logger.info("Pinned new host key for %s: %s (%s)", host, presented, key_type)
                return TrustVerdict.PINNED
            if entry.fingerprint != presented:
                logger.error(
                    "HOST KEY MISMATCH for %s: pinned %s, presented %s",
                    host, entry.fingerprint, presented,
                )
                return TrustVerdict.MISMATCH
            entry.last_verified_at = now
            return TrustVerdict.VERIFIED

    def get(self, host: str) -> TrustedHostKey | None:
        with self._lock:
            entry = self._entries.get(host)
            return entry.model_copy() if entry else None

    def list_hosts(self) -> list[TrustedHostKey]:
        with self._lock:
            return [e.model_copy() for e in sorted(self._entries.values(), key=lambda e: e.host)]

    def forget(self, host: str) -> bool:
        with self._lock:
            return self._entries.pop(host, None) is not None


class SqliteTrustStore:
    """Database-backed trust store with an in-process cache."""

    def __init__(self, db: Database, clock: Callable[[], datetime] | None = None) -> None:
        self._db = db
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._lock = threading.Lock()
        self._cache: dict[str, str] = {}

    def verify(self, host: str, key_type: str, key_bytes: bytes) -> TrustVerdict:
        presented = fingerprint(key_bytes)
        now = to_db(self._clock())

        with self._lock:
            pinned = self._cache.get(host)
            if pinned is None:
                inserted = self._db.write(
                    """INSERT OR IGNORE INTO trusted_host_keys
                       (host, fingerprint, key_type, first_seen_at, last_verified_at)
                       VALUES (?, ?, ?, ?, ?)""",
                    (host, presented, key_type, now, now),
                )
                row = self._db.fetchone(
                    "SELECT fingerprint FROM trusted_host_keys WHERE host = ?",
                    (host,),
                )
                if row is None:
                    msg = f"Trust entry for {host} vanished during first contact"
                    raise RuntimeError(msg)
                pinned = row["fingerprint"]
                self._cache[host] = pinned
                if inserted:
                    logger.info("Pinned new host key for %s: %s (%s)", host, presented, key_type)
                    return TrustVerdict.PINNED

        if pinned != presented:
            logger.error(
                "HOST KEY MISMATCH for %s: pinned %s, presented %s",
                host, pinned, presented,
            )
            return TrustVerdict.MISMATCH

        self._db.write(
            "UPDATE trusted_host_keys SET last_verified_at = ? WHERE host = ?",
            (now, host),
        )
        return TrustVerdict.VERIFIED

    def get(self, host: str) -> TrustedHostKey | None:
        row = self._db.fetchone("SELECT * FROM trusted_host_keys WHERE host = ?", (host,))
        if row is None:
            return None
        return TrustedHostKey(
            host=row["host"],
            fingerprint=row["fingerprint"],
            key_type=row["key_type"],
            first_seen_at=from_db(row["first_seen_at"]),
            last_verified_at=from_db(row["last_verified_at"]),
        )

    def list_hosts(self) -> list[TrustedHostKey]:
        rows = self._db.fetchall("SELECT host FROM trusted_host_keys ORDER BY host")
        return [entry for r in rows if (entry := self.get(r["host"])) is not None]

    def forget(self, host: str) -> bool:
        """Release the pin for *host*. Returns ``True`` if one existed."""
        with self._lock:
            self._cache.pop(host, None)
            count = self._db.write("DELETE FROM trusted_host_keys WHERE host = ?", (host,))
        if count:
            logger.info("Released trusted host key for %s", host)
        return count > 0
