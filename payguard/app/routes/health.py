"""
Health check endpoint.
"""

from fastapi import APIRouter

from payguard.app.services.secret_registry import get_secret_registry

router = APIRouter()


@router.get("/healthz")
async def health_check():
    """Basic health check endpoint."""
    return {"ok": True}


@router.get("/v1/health/status")
async def health_status():
    """Health status endpoint (v1 API)."""
    return {
        "status": "healthy",
        "service": "payguard",
        "shared_secrets": len(get_secret_registry().key_ids()),
    }
