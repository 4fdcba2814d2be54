"""
Request models for the signing tools and approval endpoints.
"""

from datetime import datetime
from typing import Dict, Literal

from pydantic import BaseModel, Field, SecretStr, model_validator

from payguard.app.models.entities import ApprovableEntity
from payguard.app.services.hmac_primitive import HmacAlgorithm


class SignatureRequest(BaseModel):
    """Inputs for generating a request signature (see tools/generate_signature.py)."""

    key_id: str = Field(..., description="Key, application or merchant token id")
    nonce: str = Field(..., min_length=1, description="Nonce or idempotency key")
    date: datetime = Field(..., description="Request date")
    secret: SecretStr = Field(..., description="Shared secret")
    secret_encoding: Literal["utf8", "base64"] = "utf8"
    version: int = Field(default=1, ge=0)
    algorithm: HmacAlgorithm = HmacAlgorithm.HMAC_SHA256

    @model_validator(mode="after")
    def pin_legacy_algorithm(self):
        """Version 0 is always HMAC-SHA1; SHA1 is not accepted for later versions."""
        if self.version == 0:
            self.algorithm = HmacAlgorithm.HMAC_SHA1
        elif self.algorithm in (HmacAlgorithm.HMAC_SHA1, HmacAlgorithm.NONE):
            raise ValueError(f"{self.algorithm.value} is not supported for signature version {self.version}")
        return self


class ApprovalHashRequest(BaseModel):
    entity: ApprovableEntity


class ApprovalRequest(BaseModel):
    """
    Body shared by the status, update and execute endpoints.

    Authorisation settings are resolved server side from the caller's
    merchant; they are never taken from the request.
    """

    entity: ApprovableEntity


class AuthoriseRequest(ApprovalRequest):
    """Approval of an entity with the claims returned by the identity provider."""

    claims: Dict[str, str] = Field(..., description="Approval claims bag from the identity provider")
