"""
Storage for authorisation records.

Each entity's AuthorisationRecord is stored as a JSON blob keyed by entity
id. Writes are guarded by the record version: a record produced by the
tracker carries version + 1 and is only written if the stored version is
still the one it was derived from. This serialises concurrent approvals of
the same entity.
"""

import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from payguard.app.db.migrate import get_connection
from payguard.app.errors import ConcurrentUpdateError
from payguard.app.models.approvals import AuthorisationRecord

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def get_record(entity_id: UUID) -> Optional[AuthorisationRecord]:
    """
    Retrieve the authorisation record of an entity.

    Returns:
        The stored record, or None if the entity has none yet
    """
    conn = get_connection()
    try:
        cursor = conn.execute(
            """
            SELECT record_json
            FROM authorisation_records
            WHERE entity_id = ?
            """,
            (str(entity_id),),
        )
        row = cursor.fetchone()
        if row:
            return AuthorisationRecord.model_validate_json(row["record_json"])
        return None
    finally:
        conn.close()


def save_record(record: AuthorisationRecord) -> None:
    """
    Persist a record produced by the tracker.

    Version 1 records are inserted; later versions replace the stored
    record only if it is still at version - 1.

    Raises:
        ConcurrentUpdateError: If another writer got there first
    """
    record_json = record.model_dump_json()
    conn = get_connection()
    try:
        if record.version <= 1:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO authorisation_records (
                    entity_id,
                    entity_type,
                    version,
                    record_json,
                    updated_at_utc
                ) VALUES (?, ?, ?, ?, ?)
                """,
                (str(record.entity_id), record.entity_type.value, record.version, record_json, _utc_now()),
            )
        else:
            cursor = conn.execute(
                """
                UPDATE authorisation_records
                SET version = ?,
                    record_json = ?,
                    updated_at_utc = ?
                WHERE entity_id = ? AND version = ?
                """,
                (record.version, record_json, _utc_now(), str(record.entity_id), record.version - 1),
            )
        conn.commit()
        written = cursor.rowcount == 1
    finally:
        conn.close()

    if not written:
        logger.warning(
            "Concurrent update of %s %s (version %d)",
            record.entity_type.value,
            record.entity_id,
            record.version,
        )
        raise ConcurrentUpdateError(
            f"Authorisation record for {record.entity_id} changed concurrently; reload and retry."
        )
