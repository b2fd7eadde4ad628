"""Supabase REST client (PostgREST + GoTrue) implementing ``RemoteStore``.

Requests carry the project's anon key plus the signed-in user's access
token, so the same RLS policies that protect the mobile app apply here.

Endpoints used:
    GET   /auth/v1/user          — resolve the session's user id
    PATCH /rest/v1/{table}       — update-if-exists, filtered by the id column
    POST  /rest/v1/{table}       — insert at account creation
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

import httpx

from healthbyte.health.base import RemoteStore
from healthbyte.health.errors import RemoteStoreError
from healthbyte.services.supabase import quote_identifier

logger = logging.getLogger("healthbyte.supabase")


class SupabaseRestStore(RemoteStore):
    """Session-scoped Supabase client.

    One instance per signed-in session.  Without an access token
    ``current_user_id()`` returns None.
    """

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        access_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ) -> None:
        """Initialize the client.

        Args:
            url:          Project URL, e.g. https://xyz.supabase.co.
            anon_key:     Project anon (public) key.
            access_token: The user's session JWT.
            http_client:  Optional pre-configured httpx client (for testing).
            timeout:      Per-request timeout in seconds.
        """
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._access_token = access_token
        self._http_client = http_client
        self._timeout = timeout
        self._user_id: UUID | None = None

    @property
    def is_signed_in(self) -> bool:
        return bool(self._access_token)

    # ------------------------------------------------------------------
    # RemoteStore interface
    # ------------------------------------------------------------------

    async def current_user_id(self) -> UUID | None:
        if not self._access_token:
            return None
        if self._user_id is not None:
            return self._user_id

        response = await self._request("GET", "/auth/v1/user", allow=(401, 403))
        if response.status_code in (401, 403):
            logger.info("Supabase session rejected (%d)", response.status_code)
            return None
        try:
            self._user_id = UUID(response.json()["id"])
        except (KeyError, TypeError, ValueError) as exc:
            raise RemoteStoreError(f"Malformed user payload: {exc}") from exc
        return self._user_id

    async def update(
        self,
        table: str,
        column: str,
        value: int | float,
        *,
        auth_id: UUID,
        id_column: str = "authId",
    ) -> int:
        for name in (table, column, id_column):
            quote_identifier(name)
        response = await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params={id_column: f"eq.{str(auth_id).lower()}"},
            json={column: value},
            headers={"Prefer": "return=representation"},
        )
        rows = response.json()
        if not isinstance(rows, list):
            raise RemoteStoreError(f"Unexpected PATCH response: {rows!r}")
        return len(rows)

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        quote_identifier(table)
        await self._request(
            "POST",
            f"/rest/v1/{table}",
            json=row,
            headers={"Prefer": "return=minimal"},
        )

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "apikey": self._anon_key,
            "Authorization": f"Bearer {self._access_token or self._anon_key}",
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        allow: tuple[int, ...] = (),
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send one request; any transport error or unexpected status raises."""
        merged = {**self._headers(), **(headers or {})}
        url = f"{self._url}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.request(
                    method, url, headers=merged, timeout=self._timeout, **kwargs
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=merged, **kwargs)
        except httpx.HTTPError as exc:
            raise RemoteStoreError(f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400 and response.status_code not in allow:
            raise RemoteStoreError(
                f"{method} {path} returned {response.status_code}: {response.text[:200]}"
            )
        return response
