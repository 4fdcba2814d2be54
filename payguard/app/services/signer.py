"""
Versioned HMAC request signature engine.

Signing input (UTF-8), fixed per signature version:

    version 0:   "date: <RFC1123 date>\\n<nonce header>: <nonce>"
    version >=1: "date: <RFC1123 date>\\n<idempotency header>: <nonce>"

Version 0 is the original format and is always HMAC-SHA1, whatever algorithm
the caller passes. Version 1 and later use the caller-selected algorithm
(SHA-256, SHA-384 or SHA-512).

Output encoding: raw MAC -> base64 -> URL escaped, because the signature
travels inside an Authorization header parameter where '+', '/' and '='
are unsafe.

If the signed headers, or anything else that feeds the signing input,
change then a new signature version must be added. Existing versions are a
wire contract with deployed clients and never change.
"""

import base64
import binascii
import hmac
import logging
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Dict, List, Mapping, Optional, Union
from urllib.parse import quote, unquote

from pydantic import BaseModel

from payguard.app.config import DEFAULT_SIGNATURE_CONFIG, SignatureConfig
from payguard.app.errors import (
    MalformedSecretError,
    RejectionReason,
    UnsupportedAlgorithmError,
)
from payguard.app.services.hmac_primitive import (
    HmacAlgorithm,
    compute_hmac,
    resolve_algorithm,
)

logger = logging.getLogger(__name__)

# Original HMAC signature format.
LEGACY_SIGNATURE_VERSION = 0

# Current default for application API keys and merchant token requests.
DEFAULT_SIGNATURE_VERSION = 1

Secret = Union[str, bytes, bytearray]


def format_http_date(date: datetime) -> str:
    """
    Render a datetime in RFC1123 form, e.g. 'Fri, 13 Jan 2023 12:21:17 GMT'.

    Naive datetimes are taken to be UTC. The output does not depend on the
    process locale.
    """
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    return format_datetime(date.astimezone(timezone.utc), usegmt=True)


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an RFC1123 date header. Returns None when absent or unparseable."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value.strip())
    except (TypeError, ValueError, IndexError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def secret_to_bytes(secret: Secret) -> bytes:
    if isinstance(secret, str):
        return secret.encode("utf-8")
    return bytes(secret)


def decode_base64_secret(secret_base64: str) -> bytes:
    """
    Decode a base64 shared secret (merchant token secrets are stored this way).

    Raises:
        MalformedSecretError: If the value is not valid base64
    """
    try:
        return base64.b64decode(secret_base64, validate=True)
    except (binascii.Error, ValueError):
        raise MalformedSecretError("Shared secret is not valid base64.")


def build_signing_input(
    nonce: str,
    date: datetime,
    version: int,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> str:
    """Build the canonical string that is MAC'd for a signature version."""
    if version < LEGACY_SIGNATURE_VERSION:
        raise UnsupportedAlgorithmError(f"Signature version {version} is not supported.")

    header = config.nonce_header if version == LEGACY_SIGNATURE_VERSION else config.idempotency_header
    return f"date: {format_http_date(date)}\n{header}: {nonce}"


def resolve_version_algorithm(version: int, algorithm) -> HmacAlgorithm:
    """
    Apply the version/algorithm pinning rules.

    Version 0 always means HMAC-SHA1. Later versions require an explicit
    SHA-2 family algorithm.
    """
    if version < LEGACY_SIGNATURE_VERSION:
        raise UnsupportedAlgorithmError(f"Signature version {version} is not supported.")

    if version == LEGACY_SIGNATURE_VERSION:
        return HmacAlgorithm.HMAC_SHA1

    resolved = resolve_algorithm(algorithm)
    if resolved is HmacAlgorithm.HMAC_SHA1:
        raise UnsupportedAlgorithmError(
            f"HMAC_SHA1 is only supported for signature version {LEGACY_SIGNATURE_VERSION}."
        )
    return resolved


def hash_and_encode(message: str, secret: Secret, algorithm) -> str:
    """HMAC the message, base64 the MAC and URL escape the result."""
    mac = compute_hmac(secret_to_bytes(secret), message.encode("utf-8"), algorithm)
    return quote(base64.b64encode(mac).decode("ascii"), safe="")


def generate_signature(
    nonce: str,
    date: datetime,
    secret: Secret,
    version: int,
    algorithm=HmacAlgorithm.HMAC_SHA256,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> str:
    """
    Generate a request signature token.

    Args:
        nonce: Single use nonce (or idempotency key for version >= 1)
        date: Request date, sent in the Date header
        secret: Shared secret; str secrets are UTF-8 encoded
        version: Signature version
        algorithm: HMAC algorithm, ignored for version 0
        config: Header names used in the signing input

    Returns:
        URL escaped base64 signature

    Raises:
        UnsupportedAlgorithmError: For an unknown version/algorithm pair
    """
    resolved = resolve_version_algorithm(version, algorithm)
    signing_input = build_signing_input(nonce, date, version, config)
    return hash_and_encode(signing_input, secret, resolved)


class SignatureVerification(BaseModel):
    verified: bool
    reason: Optional[RejectionReason] = None
    # Missing header messages; never says which signing input mismatched.
    problems: List[str] = []


def verify_signature(
    presented: Optional[str],
    nonce: str,
    date: datetime,
    secret: Secret,
    version: int,
    algorithm=HmacAlgorithm.HMAC_SHA256,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> SignatureVerification:
    """
    Recompute the signature and compare it, in constant time, with the one
    presented by the caller.

    The presented signature may be URL escaped or raw base64. A mismatch is
    reported as SIGNATURE_MISMATCH without saying which input differed.
    """
    if not presented:
        return SignatureVerification(verified=False, reason=RejectionReason.SIGNATURE_MISMATCH)

    expected = unquote(generate_signature(nonce, date, secret, version, algorithm, config))
    candidate = unquote(presented.strip())

    if hmac.compare_digest(expected.encode("utf-8"), candidate.encode("utf-8")):
        return SignatureVerification(verified=True)

    logger.warning("Request signature mismatch (version=%s)", version)
    return SignatureVerification(verified=False, reason=RejectionReason.SIGNATURE_MISMATCH)


def is_within_clock_skew(date: datetime, now: Optional[datetime] = None, max_skew_seconds: int = 300) -> bool:
    """True if date is within max_skew_seconds of now, in either direction."""
    if date.tzinfo is None:
        date = date.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return abs((now - date).total_seconds()) <= max_skew_seconds


# ---------------------------------------------------------------------------
# Outbound header builders
# ---------------------------------------------------------------------------


def _auth_header_content(config: SignatureConfig, id_parameter: str, identifier: str, signed_header: str, signature: str) -> str:
    return (
        f'{config.signature_scheme} {id_parameter}="{identifier}",'
        f'headers="date {signed_header}",signature="{signature}"'
    )


def get_headers(
    key_id: str,
    nonce: str,
    secret: Secret,
    date: datetime,
    as_retry: bool = False,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> Dict[str, str]:
    """
    Headers for the original (version 0, HMAC-SHA1) signature, used by
    version 1 webhooks and legacy supplier integrations.

    The retry header is informational and is not part of the signing input.
    """
    signature = generate_signature(nonce, date, secret, LEGACY_SIGNATURE_VERSION, HmacAlgorithm.HMAC_SHA1, config)

    return {
        config.authorization_header: _auth_header_content(
            config, config.key_id_parameter, key_id, config.nonce_header, signature
        ),
        config.date_header: format_http_date(date),
        config.nonce_header: nonce,
        config.retry_header: str(as_retry).lower(),
        config.signature_header: signature,
    }


def get_signature_headers(
    key_id: str,
    nonce: str,
    secret: Secret,
    date: datetime,
    version: int,
    algorithm=HmacAlgorithm.HMAC_SHA256,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> Dict[str, str]:
    """Headers for any signature version; the signed nonce header follows the version."""
    signature = generate_signature(nonce, date, secret, version, algorithm, config)
    nonce_header = config.nonce_header if version == LEGACY_SIGNATURE_VERSION else config.idempotency_header

    return {
        config.authorization_header: _auth_header_content(
            config, config.key_id_parameter, key_id, nonce_header, signature
        ),
        config.date_header: format_http_date(date),
        nonce_header: nonce,
    }


def get_app_headers(
    app_id: str,
    idempotency_key: str,
    secret_base64: str,
    date: datetime,
    merchant_id: str,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> Dict[str, str]:
    """Headers for a trusted third party application (API key) request. App secrets are issued base64 encoded."""
    signature = generate_signature(
        idempotency_key, date, decode_base64_secret(secret_base64), DEFAULT_SIGNATURE_VERSION,
        HmacAlgorithm.HMAC_SHA256, config,
    )

    return {
        config.authorization_header: _auth_header_content(
            config, config.app_id_parameter, app_id, config.idempotency_header, signature
        ),
        config.date_header: format_http_date(date),
        config.idempotency_header: idempotency_key,
        config.merchant_id_header: str(merchant_id),
    }


def get_merchant_token_headers(
    merchant_token_id: str,
    idempotency_key: str,
    date: datetime,
    secret_base64: str,
    version: int,
    algorithm,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> Dict[str, str]:
    """Headers for a request authenticated with a merchant token HMAC secret."""
    signature = generate_signature(
        idempotency_key, date, decode_base64_secret(secret_base64), version, algorithm, config
    )

    return {
        config.date_header: format_http_date(date),
        config.idempotency_header: idempotency_key,
        config.signature_header: signature,
        config.authorization_header: _auth_header_content(
            config, config.token_id_parameter, str(merchant_token_id), config.idempotency_header, signature
        ),
    }


def get_identity_server_anonymous_headers(
    nonce: str,
    secret: Secret,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
) -> Dict[str, str]:
    """Headers for unauthenticated calls to the identity server: HMAC-SHA256 over the bare nonce."""
    signature = hash_and_encode(nonce, secret, HmacAlgorithm.HMAC_SHA256)
    return {
        config.signature_header: signature,
        config.nonce_header: nonce,
    }


# ---------------------------------------------------------------------------
# Inbound header parsing
# ---------------------------------------------------------------------------


def parse_authorization_header(value: Optional[str], config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG) -> Dict[str, str]:
    """
    Split a 'Signature k1="v1",k2="v2"' header into a lower-cased parameter dict.

    Returns an empty dict for any other scheme.
    """
    if not value:
        return {}

    scheme, _, parameters = value.strip().partition(" ")
    if scheme != config.signature_scheme:
        return {}

    params = {}
    for part in parameters.split(","):
        name, sep, raw = part.partition("=")
        if not sep:
            continue
        params[name.strip().lower()] = raw.strip().strip('" ')
    return params


class HttpSignatureHeaders(BaseModel):
    """The signature related headers of an inbound request."""

    nonce: Optional[str] = None
    date: Optional[datetime] = None
    signature: Optional[str] = None
    key_id: Optional[str] = None

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
    ) -> "HttpSignatureHeaders":
        lowered = {str(k).lower(): v for k, v in headers.items()}

        nonce = lowered.get(config.nonce_header.lower())
        if not nonce:
            nonce = (lowered.get(config.idempotency_header.lower()) or "").strip() or None

        params = parse_authorization_header(lowered.get(config.authorization_header.lower()), config)
        key_id = None
        for parameter in (config.key_id_parameter, config.app_id_parameter, config.token_id_parameter):
            if params.get(parameter.lower()):
                key_id = params[parameter.lower()]
                break

        return cls(
            nonce=nonce,
            date=parse_http_date(lowered.get(config.date_header.lower())),
            signature=(params.get("signature") or lowered.get(config.signature_header.lower()) or "").strip() or None,
            key_id=key_id,
        )

    def problems(self) -> List[str]:
        """Header validation problems; empty when all required values are present."""
        problems = []
        if not self.nonce or not self.nonce.strip():
            problems.append("Nonce was missing.")
        if self.date is None:
            problems.append("Date was missing.")
        if not self.signature or not self.signature.strip():
            problems.append("Signature was missing.")
        return problems
