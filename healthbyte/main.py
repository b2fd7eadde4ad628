"""HealthByte API — FastAPI application entry point.

Run locally:
    uvicorn healthbyte.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from healthbyte.config import get_settings
from healthbyte.health.catalog import get_metric_catalog
from healthbyte.health.engine import HealthByteEngine
from healthbyte.health.sources.apple_health import import_export_file
from healthbyte.health.sources.memory import InMemoryHealthSource
from healthbyte.routers import health, metrics
from healthbyte.services.supabase import close_pool, init_pool
from healthbyte.services.supabase_rest import SupabaseRestStore

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("healthbyte")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks."""
    settings = get_settings()
    logger.info(
        "Starting HealthByte API v%s [%s, tz=%s]",
        settings.app_version,
        settings.environment,
        settings.timezone,
    )

    # A bad catalog is fatal at start-up
    catalog = get_metric_catalog()
    # One device, one sample store
    source = InMemoryHealthSource()
    if settings.health_export_path:
        import_export_file(settings.health_export_path, source, catalog)

    http_client = httpx.AsyncClient(timeout=settings.http_timeout_seconds)
    app.state.http_client = http_client
    app.state.db_pool = await init_pool(settings) if settings.supabase_db_url else None

    # Default store has no session; uploads use the caller's bearer token
    store = SupabaseRestStore(
        settings.supabase_url,
        settings.supabase_anon_key,
        http_client=http_client,
        timeout=settings.http_timeout_seconds,
    )
    app.state.engine = HealthByteEngine(
        source,
        catalog,
        store,
        tz=settings.timezone,
        window_days=settings.window_days,
        table=settings.patient_table,
        id_column=settings.identity_column,
    )
    logger.info("Engine ready: %d metrics (%d synced)", len(catalog), len(catalog.synced()))

    yield

    app.state.engine.shutdown()
    await http_client.aclose()
    if app.state.db_pool is not None:
        await close_pool()
    logger.info("HealthByte API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="HealthByte API",
        description=(
            "Weekly health metric aggregation — daily buckets over a trailing "
            "window, kept live and uploaded to the patient record."
        ),
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    app.include_router(metrics.router, prefix="/api/v1")

    return app


app = create_app()
