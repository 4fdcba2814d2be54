"""
Explicit configuration objects for the signing and approval engines.

Header names, the authorisation scheme, the claims namespace and the clock
skew window are passed into the engines as values rather than read from
module globals, so every engine can be exercised in isolation with a custom
configuration.

Environment variables (all optional):
  PAYGUARD_NONCE_HEADER            default: x-mod-nonce
  PAYGUARD_IDEMPOTENCY_HEADER      default: idempotency-key
  PAYGUARD_SIGNATURE_HEADER        default: x-nfx-signature
  PAYGUARD_WEBHOOK_HEADER          default: x-nfx-signature
  PAYGUARD_MAX_CLOCK_SKEW_SECONDS  default: 300
  PAYGUARD_CLAIMS_NAMESPACE        default: https://moneymoov.nofrixion.com/
  LOG_LEVEL                        default: INFO

Read where they are used:
  PAYGUARD_DB_PATH                 payguard.app.db.migrate, default: /tmp/payguard.db
  PAYGUARD_SHARED_SECRETS          payguard.app.services.secret_registry
  PAYGUARD_AUTHORISATION_SETTINGS  payguard.app.services.settings_registry
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field


class SignatureConfig(BaseModel):
    """Header and scheme names used by request signing."""

    signature_scheme: str = "Signature"
    authorization_header: str = "Authorization"
    date_header: str = "Date"
    nonce_header: str = "x-mod-nonce"
    idempotency_header: str = "idempotency-key"
    merchant_id_header: str = "x-nfx-merchantid"
    signature_header: str = "x-nfx-signature"
    retry_header: str = "x-mod-retry"
    app_id_parameter: str = "appId"
    key_id_parameter: str = "keyId"
    token_id_parameter: str = "tokenId"
    max_clock_skew_seconds: int = Field(default=300, ge=0)


class WebhookConfig(BaseModel):
    """Webhook signing is always HMAC-SHA256; only the header is configurable."""

    signature_header: str = "x-nfx-signature"
    content_type: str = "application/json"


class ClaimsConfig(BaseModel):
    namespace: str = "https://moneymoov.nofrixion.com/"


class Settings(BaseModel):
    signature: SignatureConfig = Field(default_factory=SignatureConfig)
    webhook: WebhookConfig = Field(default_factory=WebhookConfig)
    claims: ClaimsConfig = Field(default_factory=ClaimsConfig)
    log_level: str = "INFO"


def load_settings() -> Settings:
    """Build Settings from PAYGUARD_* environment variables."""
    signature = SignatureConfig(
        nonce_header=os.getenv("PAYGUARD_NONCE_HEADER", "x-mod-nonce"),
        idempotency_header=os.getenv("PAYGUARD_IDEMPOTENCY_HEADER", "idempotency-key"),
        signature_header=os.getenv("PAYGUARD_SIGNATURE_HEADER", "x-nfx-signature"),
        max_clock_skew_seconds=int(os.getenv("PAYGUARD_MAX_CLOCK_SKEW_SECONDS", "300")),
    )
    webhook = WebhookConfig(
        signature_header=os.getenv("PAYGUARD_WEBHOOK_HEADER", "x-nfx-signature"),
    )
    claims = ClaimsConfig(
        namespace=os.getenv("PAYGUARD_CLAIMS_NAMESPACE", "https://moneymoov.nofrixion.com/"),
    )
    return Settings(
        signature=signature,
        webhook=webhook,
        claims=claims,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return load_settings()


DEFAULT_SIGNATURE_CONFIG = SignatureConfig()
DEFAULT_WEBHOOK_CONFIG = WebhookConfig()
DEFAULT_CLAIMS_CONFIG = ClaimsConfig()
