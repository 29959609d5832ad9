"""
Health check endpoints.
"""

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import oauth_client_credentials, settings
from services.connectors.registry import supported_platforms
from services.crypto import get_cipher
from services.errors import ConfigurationError

router = APIRouter()


def _configured_platforms() -> dict:
    status = {}
    for platform in supported_platforms():
        client_id, client_secret = oauth_client_credentials(platform.value)
        status[platform.value] = "configured" if client_id and client_secret else "missing"
    return status


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns overall system health status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "platforms": _configured_platforms(),
    }

    try:
        from database import engine

        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    try:
        r = redis.from_url(settings.REDIS_URL)
        await r.ping()
        await r.aclose()
        health_status["redis"] = "up"
    except Exception as e:
        health_status["redis"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once the credential cipher can be built from ENCRYPTION_KEY."""
    missing = []
    try:
        get_cipher()
    except ConfigurationError:
        missing.append("ENCRYPTION_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
