"""
Hashing utilities for approval hashes.

Approval hashes are plain SHA-256 digests (no key): the threat they address
is drift or tampering between approval and execution, not forgery by an
outsider.
"""

import hashlib
import hmac

from payguard.app.errors import ApprovalHashError


def sha256_hex(data: bytes) -> str:
    """
    Compute SHA-256 hash and return as lowercase hexadecimal string.

    Args:
        data: Raw bytes to hash

    Returns:
        Lowercase hexadecimal SHA-256 hash (64 characters)

    Example:
        >>> sha256_hex(b"hello")
        '2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824'
    """
    return hashlib.sha256(data).hexdigest()


def create_hash(canonical: str) -> str:
    """
    Hash a canonical approval string.

    Raises:
        ApprovalHashError: If the canonical string is empty
    """
    if not canonical:
        raise ApprovalHashError("Cannot create an approval hash from an empty input.")
    return sha256_hex(canonical.encode("utf-8"))


def hashes_match(expected: str, presented: str) -> bool:
    """Case-insensitive, constant time comparison of two hex digests."""
    if not expected or not presented:
        return False
    return hmac.compare_digest(
        expected.strip().lower().encode("utf-8"),
        presented.strip().lower().encode("utf-8"),
    )


def verify_hash(canonical: str, presented: str) -> bool:
    """True if presented is the hash of canonical."""
    return hashes_match(create_hash(canonical), presented)
