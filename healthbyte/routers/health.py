"""Health check endpoint — public, no auth required."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from healthbyte.config import get_settings

router = APIRouter(tags=["system"])
logger = logging.getLogger("healthbyte.api.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also reports whether the health source is available and, when a
    database pool is configured, whether Postgres answers.
    """
    settings = get_settings()
    engine = getattr(request.app.state, "engine", None)
    source_ok = bool(engine and engine.source.is_health_data_available())

    database = "not_configured"
    pool = getattr(request.app.state, "db_pool", None)
    if pool is not None:
        try:
            async with pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            database = "connected"
        except Exception as exc:
            logger.warning("Health check DB probe failed: %s", exc)
            database = "unreachable"

    healthy = source_ok and database != "unreachable"
    return {
        "status": "healthy" if healthy else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "health_source": "available" if source_ok else "unavailable",
        "database": database,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
