"""
Payguard - FastAPI Application

Resource-server surface for request signature verification, webhook
signature verification and the multi-party approval gate.

Security Hardening:
- JWT-based authentication required for the approval endpoints
- Rate limiting to prevent abuse (can be disabled in test mode)
- Custom exception handling so secrets, signatures and request bodies are
  never echoed back
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException

from payguard.app.config import get_settings
from payguard.app.db.migrate import ensure_schema
from payguard.app.errors import (
    ApprovalHashError,
    ClaimValidationError,
    ConcurrentUpdateError,
    MalformedSecretError,
    PayguardError,
    UnsupportedAlgorithmError,
)
from payguard.app.routes import approvals, health, signatures, webhooks
from payguard.app.services.secret_registry import get_secret_registry
from payguard.app.services.settings_registry import get_settings_registry

logger = logging.getLogger(__name__)


def get_limiter():
    """
    Create rate limiter that can be disabled in test mode.

    Set ENV=TEST or DISABLE_RATE_LIMITS=1 to disable rate limiting.
    """
    disable_limits = (
        os.environ.get("ENV") == "TEST" or
        os.environ.get("DISABLE_RATE_LIMITS") == "1"
    )

    if disable_limits:
        return Limiter(key_func=get_remote_address, default_limits=["1000000/minute"])
    else:
        return Limiter(key_func=get_remote_address)


limiter = get_limiter()

# Error codes for hard failures that reach the HTTP layer.
PAYGUARD_ERROR_CODES = {
    UnsupportedAlgorithmError: "unsupported_algorithm",
    MalformedSecretError: "malformed_secret",
    ApprovalHashError: "not_approvable",
    ClaimValidationError: "invalid_claims",
}


def sanitize_error_detail(detail) -> dict:
    """
    Return dict details as-is (our routes build them sanitized); anything
    else becomes a generic message.
    """
    if isinstance(detail, dict):
        return detail

    return {
        "error": "internal_error",
        "message": "An error occurred processing your request"
    }


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    On startup:
    - Configure logging from LOG_LEVEL
    - Bring the database schema to head
    - Load shared secrets from PAYGUARD_SHARED_SECRETS
    - Load merchant authorisation settings from PAYGUARD_AUTHORISATION_SETTINGS
    """
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    ensure_schema()

    loaded = get_secret_registry().load_from_env()
    logger.info("Loaded %d shared secrets", loaded)

    merchants = get_settings_registry().load_from_env()
    logger.info("Loaded authorisation settings for %d merchants", merchants)

    yield


app = FastAPI(
    title="Payguard",
    description="Request signing and multi-party approval integrity for payment actions",
    version="0.1.0",
    lifespan=lifespan,
    debug=False
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=sanitize_error_detail(exc.detail)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Handle validation errors without echoing the request body.

    Only field paths and error types are returned; input values (which may
    be secrets or claims) are dropped.
    """
    errors = []
    for error in exc.errors():
        field_path = " -> ".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field_path,
            "type": error["type"],
            "message": error["msg"]
        })

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "validation_error",
            "message": "Request validation failed",
            "details": errors
        }
    )


@app.exception_handler(ConcurrentUpdateError)
async def concurrent_update_handler(request: Request, exc: ConcurrentUpdateError):
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content={"error": "concurrent_update", "message": str(exc)}
    )


@app.exception_handler(PayguardError)
async def payguard_error_handler(request: Request, exc: PayguardError):
    """Hard failures caused by the request (bad algorithm, unapprovable entity)."""
    code = next(
        (c for error_type, c in PAYGUARD_ERROR_CODES.items() if isinstance(exc, error_type)),
        "invalid_request",
    )
    logger.warning("Request failed: %s", code)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": code, "message": str(exc)}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Catch-all so no stack trace or request data reaches the client."""
    logger.error("Unhandled exception: %s", type(exc).__name__)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "internal_error",
            "message": "An unexpected error occurred"
        }
    )


app.include_router(health.router)
app.include_router(signatures.router)
app.include_router(webhooks.router)
app.include_router(approvals.router)


@app.get("/")
async def root():
    return {
        "service": "Payguard",
        "version": "0.1.0",
        "status": "operational"
    }
