"""
Replay protection for signed requests.

A signed request stays valid for the whole clock skew window, so each
(key id, nonce) pair is recorded once its signature has verified; a second
request with the same pair is refused. Entries older than the retention
period are purged, since the date check already rejects those requests.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Protocol

from payguard.app.db.migrate import get_connection
from payguard.app.services.hashing import sha256_hex

logger = logging.getLogger(__name__)

# Twice the default clock skew: a request dated at the far edge of the
# window stays acceptable for that long.
DEFAULT_RETENTION_SECONDS = 600


def nonce_digest(key_id: str, nonce: str) -> str:
    return sha256_hex(f"{key_id}\n{nonce}".encode("utf-8"))


def _iso(moment: datetime) -> str:
    # Fixed width, so stored values compare correctly as text.
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class NonceLedger(Protocol):
    def consume(self, key_id: str, nonce: str, now: Optional[datetime] = None) -> bool:
        """Record a nonce. False if it was already used for this key id."""
        ...


class InMemoryNonceLedger:
    """Process-local ledger, for tests and single-process embedding."""

    def __init__(self, retention_seconds: int = DEFAULT_RETENTION_SECONDS):
        self._seen: Dict[str, datetime] = {}
        self._retention = timedelta(seconds=retention_seconds)
        self._lock = threading.Lock()

    def consume(self, key_id: str, nonce: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        digest = nonce_digest(key_id, nonce)
        with self._lock:
            cutoff = now - self._retention
            self._seen = {d: at for d, at in self._seen.items() if at >= cutoff}
            if digest in self._seen:
                logger.warning("Replayed request nonce (key_id=%s)", key_id)
                return False
            self._seen[digest] = now
            return True


class SqliteNonceLedger:
    """Ledger backed by the consumed_request_nonces table."""

    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection] = get_connection,
        retention_seconds: int = DEFAULT_RETENTION_SECONDS,
    ):
        self._connect = connect
        self._retention = timedelta(seconds=retention_seconds)

    def consume(self, key_id: str, nonce: str, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        conn = self._connect()
        try:
            conn.execute(
                "DELETE FROM consumed_request_nonces WHERE consumed_at_utc < ?",
                (_iso(now - self._retention),),
            )
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO consumed_request_nonces (
                    nonce_digest,
                    key_id,
                    consumed_at_utc
                ) VALUES (?, ?, ?)
                """,
                (nonce_digest(key_id, nonce), key_id, _iso(now)),
            )
            conn.commit()
            inserted = cursor.rowcount == 1
        finally:
            conn.close()

        if not inserted:
            logger.warning("Replayed request nonce (key_id=%s)", key_id)
        return inserted
