"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from healthbyte.config import Settings, get_settings
from healthbyte.health.base import RemoteStore
from healthbyte.health.engine import HealthByteEngine
from healthbyte.health.errors import RemoteStoreError
from healthbyte.services.supabase import SupabaseDatabaseStore
from healthbyte.services.supabase_rest import SupabaseRestStore


def bearer_token(request: Request) -> str | None:
    """Return the Supabase access token from ``Authorization: Bearer ...``."""
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_engine(request: Request) -> HealthByteEngine:
    engine: HealthByteEngine | None = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Engine not initialized")
    return engine


async def get_remote_store(
    request: Request, settings: Annotated[Settings, Depends(get_settings)]
) -> RemoteStore:
    """Build the session-scoped store for the caller.

    The bearer token identifies the user.  With a database pool configured,
    writes go straight to Postgres under that user's RLS context; otherwise
    they go through the REST API with the token attached.
    """
    store = SupabaseRestStore(
        settings.supabase_url,
        settings.supabase_anon_key,
        access_token=bearer_token(request),
        http_client=getattr(request.app.state, "http_client", None),
        timeout=settings.http_timeout_seconds,
    )
    pool = getattr(request.app.state, "db_pool", None)
    if pool is None or not store.is_signed_in:
        return store

    try:
        user_id = await store.current_user_id()
    except RemoteStoreError as exc:
        raise HTTPException(status_code=502, detail=f"Identity lookup failed: {exc}") from exc
    return SupabaseDatabaseStore(pool, user_id=user_id)


# Annotated shortcuts for route signatures
Engine = Annotated[HealthByteEngine, Depends(get_engine)]
CurrentStore = Annotated[RemoteStore, Depends(get_remote_store)]
AppSettings = Annotated[Settings, Depends(get_settings)]
