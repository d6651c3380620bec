import logging
from datetime import datetime, timezone
from typing import Dict, Any

import redis
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...core.config import settings
from ...core.database import get_db, get_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])

VERSION = "0.1.0"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("/health", summary="Health Check")
async def health_check() -> Dict[str, Any]:
    """Liveness probe; does not touch dependencies."""
    return {
        "status": "healthy",
        "timestamp": _now(),
        "service": settings.PROJECT_NAME,
        "version": VERSION,
        "environment": settings.ENVIRONMENT
    }


@router.get("/ready", summary="Readiness Check")
async def readiness_check(
    db: Session = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis_client)
) -> Dict[str, Any]:
    """Readiness probe: the database and redis must both answer."""
    checks = {"database": False, "redis": False}

    try:
        db.execute(text("SELECT 1"))
        checks["database"] = True
    except SQLAlchemyError as e:
        logger.error(f"Database readiness check failed: {e}")

    try:
        checks["redis"] = bool(redis_client.ping())
    except redis.RedisError as e:
        logger.error(f"Redis readiness check failed: {e}")

    ready = all(checks.values())
    body = {
        "status": "ready" if ready else "not_ready",
        "timestamp": _now(),
        "checks": {**checks, "overall": ready},
        "service": settings.PROJECT_NAME,
        "environment": settings.ENVIRONMENT
    }

    if not ready:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=body)
    return body


@router.get("/version", summary="Version Information")
async def version_info() -> Dict[str, Any]:
    return {
        "service": settings.PROJECT_NAME,
        "version": VERSION,
        "api_version": settings.API_V1_STR,
        "environment": settings.ENVIRONMENT,
        "debug": settings.DEBUG,
        "timestamp": _now()
    }
