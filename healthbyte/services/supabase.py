"""Direct Postgres access to the Supabase database.

Every connection runs inside a transaction where ``app.current_user_id`` is
set transaction-locally via ``set_config()``, so Row-Level Security policies
see the signed-in user.  ``SupabaseDatabaseStore`` implements ``RemoteStore``
on top of it for deployments that hold a database URL instead of a client key.

Uses ``asyncpg`` directly because the REST API cannot set session variables.
"""

from __future__ import annotations

import logging
import re
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import asyncpg

from healthbyte.config import Settings, get_settings
from healthbyte.health.base import RemoteStore
from healthbyte.health.errors import RemoteStoreError

logger = logging.getLogger("healthbyte.db")

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Module-level connection pool, initialized once at app startup
_pool: asyncpg.Pool | None = None


def quote_identifier(name: str) -> str:
    """Double-quote a table/column name after validating it.

    Raises:
        ValueError: If ``name`` is not a plain identifier.
    """
    if not _IDENTIFIER_RE.match(name):
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    return f'"{name}"'


def rows_from_status(status: str) -> int:
    """Parse the row count out of a command tag such as ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        logger.warning("Unexpected command status: %r", status)
        return 0


async def init_pool(settings: Settings | None = None) -> asyncpg.Pool:
    """Create the asyncpg connection pool.  Call once at app startup."""
    global _pool
    s = settings or get_settings()
    if not s.supabase_db_url:
        raise RuntimeError("SUPABASE_DB_URL is not configured")
    _pool = await asyncpg.create_pool(
        s.supabase_db_url,
        min_size=1,
        max_size=5,
        command_timeout=30,
    )
    logger.info("Database pool initialized (min=1, max=5)")
    return _pool


async def close_pool() -> None:
    """Drain the pool.  Call at app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
        logger.info("Database pool closed")


def get_pool() -> asyncpg.Pool:
    if _pool is None:
        raise RuntimeError("Database pool not initialized — call init_pool() first")
    return _pool


@asynccontextmanager
async def get_connection(
    user_id: uuid.UUID | None = None,
    pool: asyncpg.Pool | None = None,
) -> AsyncGenerator[asyncpg.Connection, None]:
    """Acquire a connection with the RLS session variable set.

    Usage::

        async with get_connection(user_id=user_id) as conn:
            await conn.execute('UPDATE "Patient" SET ...')

    ``set_config(..., true)`` is transaction-local, so the setting disappears
    when the connection returns to the pool.  ``SET`` cannot take bind
    parameters, hence the function form.
    """
    pool = pool or get_pool()
    async with pool.acquire() as conn:
        async with conn.transaction():
            if user_id:
                await conn.execute(
                    "SELECT set_config('app.current_user_id', $1, true)", str(user_id)
                )
            yield conn


class SupabaseDatabaseStore(RemoteStore):
    """RemoteStore over a direct Postgres connection.

    The user identity is supplied by the caller (already authenticated
    upstream); the store never signs anybody in.
    """

    def __init__(
        self, pool: asyncpg.Pool | None = None, user_id: uuid.UUID | None = None
    ) -> None:
        self._pool = pool
        self._user_id = user_id

    async def current_user_id(self) -> uuid.UUID | None:
        return self._user_id

    async def update(
        self,
        table: str,
        column: str,
        value: int | float,
        *,
        auth_id: uuid.UUID,
        id_column: str = "authId",
    ) -> int:
        query = (
            f"UPDATE {quote_identifier(table)} SET {quote_identifier(column)} = $1 "
            f"WHERE {quote_identifier(id_column)} = $2"
        )
        try:
            async with get_connection(user_id=self._user_id, pool=self._pool) as conn:
                status = await conn.execute(query, value, str(auth_id).lower())
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RemoteStoreError(f"Database update failed: {exc}") from exc
        return rows_from_status(status)

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        if not row:
            raise ValueError("Cannot insert an empty row")
        columns = ", ".join(quote_identifier(c) for c in row)
        placeholders = ", ".join(f"${i}" for i in range(1, len(row) + 1))
        query = f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})"
        try:
            async with get_connection(user_id=self._user_id, pool=self._pool) as conn:
                await conn.execute(query, *row.values())
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise RemoteStoreError(f"Database insert failed: {exc}") from exc
