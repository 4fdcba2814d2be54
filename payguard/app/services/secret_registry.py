"""
Shared secret registry for inbound request verification.

Receiving servers look up the shared secret, signature version and HMAC
algorithm by the key id carried in the Authorization header (keyId, appId
or tokenId parameter). Secrets are held as pydantic SecretStr so they never
appear in reprs or logs.

PAYGUARD_SHARED_SECRETS may hold a JSON list of entries:

    [{"key_id": "app-1", "secret": "...", "version": 1, "algorithm": "HMAC_SHA256"}]

Set "encoding": "base64" for secrets stored base64 encoded (merchant tokens).
"""

import json
import logging
import os
from datetime import datetime
from typing import Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, SecretStr, ValidationError, model_validator

from payguard.app.config import DEFAULT_SIGNATURE_CONFIG, SignatureConfig
from payguard.app.errors import MalformedSecretError, RejectionReason
from payguard.app.services.hmac_primitive import HmacAlgorithm
from payguard.app.services.nonces import NonceLedger
from payguard.app.services.signer import (
    DEFAULT_SIGNATURE_VERSION,
    LEGACY_SIGNATURE_VERSION,
    HttpSignatureHeaders,
    SignatureVerification,
    decode_base64_secret,
    is_within_clock_skew,
    resolve_version_algorithm,
    verify_signature,
)

logger = logging.getLogger(__name__)


class SharedSecret(BaseModel):
    model_config = ConfigDict(frozen=True)

    key_id: str
    secret: SecretStr
    version: int = DEFAULT_SIGNATURE_VERSION
    algorithm: HmacAlgorithm = HmacAlgorithm.HMAC_SHA256
    encoding: Literal["utf8", "base64"] = "utf8"

    @model_validator(mode="before")
    @classmethod
    def pin_legacy_algorithm(cls, data):
        """Version 0 entries are always HMAC-SHA1; SHA1 is refused for later versions."""
        if isinstance(data, dict) and isinstance(data.get("version", DEFAULT_SIGNATURE_VERSION), int):
            version = data.get("version", DEFAULT_SIGNATURE_VERSION)
            algorithm = data.get("algorithm", HmacAlgorithm.HMAC_SHA256)
            if version == LEGACY_SIGNATURE_VERSION:
                data = {**data, "algorithm": HmacAlgorithm.HMAC_SHA1}
            else:
                resolve_version_algorithm(version, algorithm)
        return data

    def secret_bytes(self) -> bytes:
        raw = self.secret.get_secret_value()
        if self.encoding == "base64":
            return decode_base64_secret(raw)
        return raw.encode("utf-8")


class SharedSecretRegistry:
    """In-memory key id -> SharedSecret map, populated at start-up."""

    def __init__(self):
        self._secrets: Dict[str, SharedSecret] = {}

    def register(self, shared_secret: SharedSecret) -> None:
        self._secrets[shared_secret.key_id] = shared_secret
        logger.info(
            "Registered shared secret %s (version=%d, %s)",
            shared_secret.key_id,
            shared_secret.version,
            shared_secret.algorithm.value,
        )

    def get(self, key_id: Optional[str]) -> Optional[SharedSecret]:
        if not key_id:
            return None
        return self._secrets.get(key_id)

    def remove(self, key_id: str) -> None:
        self._secrets.pop(key_id, None)

    def clear(self) -> None:
        self._secrets.clear()

    def key_ids(self) -> List[str]:
        return sorted(self._secrets)

    def load_json(self, raw: str) -> int:
        """
        Register every entry of a JSON list.

        Returns:
            Number of secrets registered

        Raises:
            MalformedSecretError: If the JSON or an entry is invalid
        """
        try:
            entries = json.loads(raw)
        except json.JSONDecodeError:
            raise MalformedSecretError("Shared secrets configuration is not valid JSON.")
        if not isinstance(entries, list):
            raise MalformedSecretError("Shared secrets configuration must be a JSON list.")

        for entry in entries:
            try:
                self.register(SharedSecret.model_validate(entry))
            except ValidationError as e:
                # Only field locations: the offending entry contains a secret.
                fields = ", ".join(".".join(str(p) for p in err["loc"]) or "entry" for err in e.errors())
                raise MalformedSecretError(f"Invalid shared secret entry: {fields}")
        return len(entries)

    def load_from_env(self) -> int:
        raw = os.getenv("PAYGUARD_SHARED_SECRETS")
        if not raw:
            return 0
        return self.load_json(raw)


_registry = SharedSecretRegistry()


def get_secret_registry() -> SharedSecretRegistry:
    """Get the global shared secret registry instance."""
    return _registry


def verify_request_headers(
    headers: Mapping[str, str],
    registry: SharedSecretRegistry,
    config: SignatureConfig = DEFAULT_SIGNATURE_CONFIG,
    now: Optional[datetime] = None,
    nonce_ledger: Optional[NonceLedger] = None,
) -> SignatureVerification:
    """
    Verify the signature headers of an inbound request.

    Missing headers, an unknown key id, a date outside the clock skew window
    and a wrong signature all come back as SIGNATURE_MISMATCH; only the
    missing header messages are reported back. With a nonce ledger, the
    nonce of a verified request is recorded and a request reusing it is
    refused with REPLAYED_REQUEST_NONCE.
    """
    parsed = HttpSignatureHeaders.from_headers(headers, config)
    problems = parsed.problems()
    if problems:
        return SignatureVerification(
            verified=False, reason=RejectionReason.SIGNATURE_MISMATCH, problems=problems
        )

    shared_secret = registry.get(parsed.key_id)
    if shared_secret is None:
        logger.warning("Signed request with unknown key id")
        return SignatureVerification(verified=False, reason=RejectionReason.SIGNATURE_MISMATCH)

    if not is_within_clock_skew(parsed.date, now, config.max_clock_skew_seconds):
        logger.warning("Signed request outside clock skew window (key_id=%s)", shared_secret.key_id)
        return SignatureVerification(verified=False, reason=RejectionReason.SIGNATURE_MISMATCH)

    result = verify_signature(
        parsed.signature,
        parsed.nonce,
        parsed.date,
        shared_secret.secret_bytes(),
        shared_secret.version,
        shared_secret.algorithm,
        config,
    )
    # Only verified requests may use up a nonce.
    if result.verified and nonce_ledger is not None:
        if not nonce_ledger.consume(shared_secret.key_id, parsed.nonce, now):
            return SignatureVerification(verified=False, reason=RejectionReason.REPLAYED_REQUEST_NONCE)
    return result
