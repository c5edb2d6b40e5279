"""PostgREST access for the database-backed history store and leases.

Only the calls those two backends make are exposed: row inserts, filtered
selects, status patches and the lease functions from
``supabase/migrations``. Transport and HTTP failures surface as
:class:`~deploy_autofix.errors.DatabaseError`.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol, runtime_checkable

import httpx

from .config import SupabaseConfig, get_config
from .errors import DatabaseError

logger = logging.getLogger(__name__)


@runtime_checkable
class DatabaseClient(Protocol):
    """What DatabaseStore and DatabaseLeaseService need from a backend."""

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any: ...

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, table: str, row: dict[str, Any]) -> None: ...

    async def update(self, table: str, match: dict[str, Any], changes: dict[str, Any]) -> None: ...

    async def close(self) -> None: ...


class PostgrestClient:
    """Async client for a Supabase project's REST endpoint."""

    def __init__(
        self,
        config: SupabaseConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self._config = config
        self._client = client

    @property
    def config(self) -> SupabaseConfig:
        if self._config is None:
            config = get_config().supabase
            if config is None:
                raise DatabaseError("Database backend selected but SUPABASE_URL is not set")
            self._config = config
        return self._config

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=f"{self.config.url}{self.config.rest_prefix}",
                headers={
                    "apikey": self.config.service_key,
                    "Authorization": f"Bearer {self.config.service_key}",
                },
                timeout=30.0,
            )
        return self._client

    async def _send(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DatabaseError(
                f"{method} {path} returned {e.response.status_code}: {e.response.text[:200]}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise DatabaseError(f"{method} {path} failed: {e}") from e
        return response

    async def rpc(self, function_name: str, params: dict[str, Any]) -> Any:
        response = await self._send("POST", f"/rpc/{function_name}", json=params)
        return response.json()

    async def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        order: str | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Rows of *table*; *filters* are equality matches."""
        params: dict[str, Any] = {"select": "*"}
        params.update({column: f"eq.{value}" for column, value in (filters or {}).items()})
        if order:
            params["order"] = order
        if limit:
            params["limit"] = limit
        response = await self._send("GET", f"/{table}", params=params)
        return response.json()  # type: ignore[no-any-return]

    async def insert(self, table: str, row: dict[str, Any]) -> None:
        await self._send("POST", f"/{table}", json=row, headers={"Prefer": "return=minimal"})

    async def update(self, table: str, match: dict[str, Any], changes: dict[str, Any]) -> None:
        params = {column: f"eq.{value}" for column, value in match.items()}
        await self._send(
            "PATCH", f"/{table}", params=params, json=changes, headers={"Prefer": "return=minimal"}
        )

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None


# Global client instance (lazy-loaded)
_db: DatabaseClient | None = None


def get_db() -> DatabaseClient:
    global _db
    if _db is None:
        _db = PostgrestClient()
    return _db


async def close_db() -> None:
    global _db
    if _db is not None:
        await _db.close()
        _db = None


def reset_db() -> None:
    """Reset the global database client (for testing)."""
    global _db
    _db = None
