"""
Keyed-hash (HMAC) primitive.

Exposes the HMAC family used by request and webhook signing, selected by an
explicit algorithm identifier. The identifiers mirror the shared secret
algorithms stored against merchant tokens.

Secrets of any length are accepted, including the empty secret: HMAC pads
or hashes the key as needed, so a short or weak secret still yields a
deterministic MAC rather than an error.
"""

import hashlib
import hmac
from enum import Enum

from payguard.app.errors import UnsupportedAlgorithmError


class HmacAlgorithm(str, Enum):
    NONE = "None"
    # Legacy only. Not accepted for signature version 1 or later.
    HMAC_SHA1 = "HMAC_SHA1"
    HMAC_SHA256 = "HMAC_SHA256"
    HMAC_SHA384 = "HMAC_SHA384"
    # Recommended.
    HMAC_SHA512 = "HMAC_SHA512"


_DIGESTS = {
    HmacAlgorithm.HMAC_SHA1: hashlib.sha1,
    HmacAlgorithm.HMAC_SHA256: hashlib.sha256,
    HmacAlgorithm.HMAC_SHA384: hashlib.sha384,
    HmacAlgorithm.HMAC_SHA512: hashlib.sha512,
}


def resolve_algorithm(algorithm) -> HmacAlgorithm:
    """
    Coerce an algorithm identifier to HmacAlgorithm.

    Raises:
        UnsupportedAlgorithmError: If the identifier is unknown or NONE
    """
    try:
        resolved = HmacAlgorithm(algorithm)
    except ValueError:
        raise UnsupportedAlgorithmError(f"The algorithm {algorithm} is not supported.")

    if resolved is HmacAlgorithm.NONE:
        raise UnsupportedAlgorithmError("Algorithm must be specified.")

    return resolved


def compute_hmac(secret: bytes, message: bytes, algorithm) -> bytes:
    """
    Compute a raw HMAC over message.

    Args:
        secret: Shared secret bytes (any length, may be empty)
        message: Bytes to authenticate
        algorithm: HmacAlgorithm or its string value

    Returns:
        Raw MAC bytes

    Raises:
        UnsupportedAlgorithmError: If algorithm is NONE or unknown
    """
    digest = _DIGESTS[resolve_algorithm(algorithm)]
    return hmac.new(bytes(secret), message, digest).digest()


def digest_size(algorithm) -> int:
    """Size in bytes of the MAC produced by algorithm."""
    return _DIGESTS[resolve_algorithm(algorithm)]().digest_size
