"""
Test helpers: JWT tokens and shared test fixtures data.
"""

import os
from datetime import datetime, timedelta, timezone

from jose import jwt

TEST_MERCHANT_ID = "6d8a4b2e-5c1f-4f0e-9a3b-2c7d1e8f9a10"


def generate_test_jwt(
    sub: str = "test-user-123",
    merchant_id: str = TEST_MERCHANT_ID,
    roles=None,
    expires_in_seconds: int = 3600,
    secret_key: str = None,
    algorithm: str = None,
) -> str:
    """
    Generate a test JWT token for authentication testing.

    Args:
        sub: User ID (subject)
        merchant_id: Merchant the user acts for
        roles: Merchant roles (default: ["approver"])
        expires_in_seconds: Token validity duration, negative for an expired token
        secret_key: JWT secret key (uses env var if not provided)
        algorithm: JWT algorithm (uses env var if not provided)
    """
    if secret_key is None:
        secret_key = os.getenv("JWT_SECRET_KEY", "dev-secret-key-change-in-production")

    if algorithm is None:
        algorithm = os.getenv("JWT_ALGORITHM", "HS256")

    now = datetime.now(timezone.utc)

    payload = {
        "sub": sub,
        "merchant_id": merchant_id,
        "roles": ["approver"] if roles is None else roles,
        "exp": int((now + timedelta(seconds=expires_in_seconds)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
    }

    return jwt.encode(payload, secret_key, algorithm=algorithm)


def auth_headers(sub: str = "test-user-123", merchant_id: str = TEST_MERCHANT_ID, roles=None) -> dict:
    """Authorization header for a test user."""
    return {"Authorization": f"Bearer {generate_test_jwt(sub=sub, merchant_id=merchant_id, roles=roles)}"}
