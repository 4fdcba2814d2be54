"""
JWT-based authentication for the approval endpoints.

The calling user (approver or editor) and their merchant are derived from a
validated JWT, never from the request body. Approval eligibility is decided
by the authorisation tracker from the roles carried in the token.

Claims:
- sub: user id
- merchant_id: merchant the user acts for
- roles: list of merchant roles (a single 'role' claim is also accepted)
- name: optional display name
"""

import os
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from pydantic import BaseModel

from payguard.app.models.approvals import Approver

# For MVP, HS256 with a shared secret key; RS256 with the identity provider's
# public key in production.
JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

security = HTTPBearer()


class Identity(BaseModel):
    """Authenticated identity extracted from JWT."""

    sub: str
    merchant_id: str
    roles: List[str] = []
    name: Optional[str] = None
    exp: Optional[int] = None

    def to_approver(self) -> Approver:
        return Approver(user_id=self.sub, roles=set(self.roles), name=self.name)


def decode_jwt(token: str) -> dict:
    """
    Decode and validate JWT token.

    Raises:
        HTTPException: 401 if token is invalid, expired, or malformed
    """
    try:
        return jwt.decode(
            token,
            JWT_SECRET_KEY,
            algorithms=[JWT_ALGORITHM],
            options={
                "verify_signature": True,
                "verify_exp": True,
                "require_exp": True,
                "require_sub": True,
            },
        )
    except JWTError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_token",
                "message": f"Token validation failed: {str(e)}",
            },
            headers={"WWW-Authenticate": "Bearer"},
        )


def _missing_claim(name: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={
            "error": "missing_claim",
            "message": f"Token missing '{name}' claim",
        },
    )


async def get_current_identity(
    credentials: HTTPAuthorizationCredentials = Depends(security),
) -> Identity:
    """
    Extract and validate identity from JWT token.

    All routes requiring authentication depend on this function.

    Raises:
        HTTPException: 401 if token is invalid or missing required claims
    """
    payload = decode_jwt(credentials.credentials)

    sub = payload.get("sub")
    merchant_id = payload.get("merchant_id")
    if not sub:
        raise _missing_claim("sub")
    if not merchant_id:
        raise _missing_claim("merchant_id")

    roles = payload.get("roles")
    if roles is None:
        roles = [payload["role"]] if payload.get("role") else []
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list) or not all(isinstance(r, str) for r in roles):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "invalid_claim",
                "message": "Token 'roles' claim must be a list of strings",
            },
        )

    return Identity(
        sub=str(sub),
        merchant_id=str(merchant_id),
        roles=roles,
        name=payload.get("name"),
        exp=payload.get("exp"),
    )


# Helper function for generating dev/test tokens
def create_jwt_token(
    sub: str,
    merchant_id: str,
    roles: Optional[List[str]] = None,
    expires_in_seconds: int = 3600,
    name: Optional[str] = None,
) -> str:
    """
    Create a JWT token for development/testing.

    In production, tokens are issued by the identity provider.
    """
    now = datetime.now(timezone.utc)

    payload = {
        "sub": sub,
        "merchant_id": merchant_id,
        "roles": roles or [],
        "exp": int(now.timestamp()) + expires_in_seconds,
        "iat": int(now.timestamp()),
    }
    if name:
        payload["name"] = name

    return jwt.encode(payload, JWT_SECRET_KEY, algorithm=JWT_ALGORITHM)
