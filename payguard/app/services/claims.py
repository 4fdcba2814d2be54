"""
Replay protection for approval claims.

An approval claim may be consumed once. Ledgers key each claim by a digest
of its key id and signature, so a replayed claim (even one attached to a
different request) is refused. consume() is atomic: of two concurrent
attempts with the same claim exactly one returns True.
"""

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Callable, Protocol, Set

from payguard.app.db.migrate import get_connection
from payguard.app.models.approvals import ApprovalClaim
from payguard.app.services.hashing import sha256_hex

logger = logging.getLogger(__name__)


def claim_digest(claim: ApprovalClaim) -> str:
    """Ledger key for a claim. Signatures never reach storage in the clear."""
    return sha256_hex(f"{claim.key_id}\n{claim.signature}".encode("utf-8"))


class ClaimLedger(Protocol):
    def consume(self, claim: ApprovalClaim) -> bool:
        """Mark a claim as used. False if it had already been consumed."""
        ...


class InMemoryClaimLedger:
    """Process-local ledger, for tests and single-process embedding."""

    def __init__(self):
        self._consumed: Set[str] = set()
        self._lock = threading.Lock()

    def consume(self, claim: ApprovalClaim) -> bool:
        digest = claim_digest(claim)
        with self._lock:
            if digest in self._consumed:
                logger.warning("Replayed approval claim for %s %s", claim.entity_type.value, claim.entity_id)
                return False
            self._consumed.add(digest)
            return True

    def __len__(self) -> int:
        return len(self._consumed)


class SqliteClaimLedger:
    """
    Ledger backed by the consumed_approval_claims table.

    The primary key on claim_digest makes INSERT OR IGNORE the atomic
    test-and-set.
    """

    def __init__(self, connect: Callable[[], sqlite3.Connection] = get_connection):
        self._connect = connect

    def consume(self, claim: ApprovalClaim) -> bool:
        consumed_at_utc = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO consumed_approval_claims (
                    claim_digest,
                    entity_id,
                    entity_type,
                    consumed_at_utc
                ) VALUES (?, ?, ?, ?)
                """,
                (claim_digest(claim), str(claim.entity_id), claim.entity_type.value, consumed_at_utc),
            )
            conn.commit()
            inserted = cursor.rowcount == 1
        finally:
            conn.close()

        if not inserted:
            logger.warning("Replayed approval claim for %s %s", claim.entity_type.value, claim.entity_id)
        return inserted
