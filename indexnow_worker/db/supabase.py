"""Async client for the Supabase PostgREST API.

Only the small subset the workers need: filtered select, insert, upsert,
update, delete and RPC calls, authenticated with the service-role key.
"""

import logging
from typing import Any, Iterable, Optional, Sequence

import httpx

from indexnow_worker.errors import DatabaseError

logger = logging.getLogger(__name__)

# (column, operator, value); operators: eq, neq, lt, lte, gt, gte, is, in
Filter = tuple[str, str, Any]

SUPPORTED_OPERATORS = {"eq", "neq", "lt", "lte", "gt", "gte", "is", "in"}


def _format_value(op: str, value: Any) -> str:
    if op == "in":
        return "(" + ",".join(str(v) for v in value) + ")"
    if op == "is":
        return "null" if value is None else str(value).lower()
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def build_filter_params(filters: Iterable[Filter]) -> list[tuple[str, str]]:
    """Translate filter tuples into PostgREST query parameters."""
    params = []
    for column, op, value in filters:
        if op not in SUPPORTED_OPERATORS:
            raise ValueError(f"Unsupported filter operator: {op}")
        params.append((column, f"{op}.{_format_value(op, value)}"))
    return params


class SupabaseClient:
    """Thin PostgREST client over httpx."""

    def __init__(
        self,
        url: str,
        service_key: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = url.rstrip("/")
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=10.0),
            headers={
                "apikey": service_key,
                "Authorization": f"Bearer {service_key}",
                "Content-Type": "application/json",
            },
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Sequence[tuple[str, str]]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> Any:
        headers = {"Prefer": prefer} if prefer else None
        try:
            response = await self._client.request(
                method, f"{self.base_url}{path}", params=params, json=json, headers=headers
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise DatabaseError(f"{method} {path} timed out") from e
        except httpx.HTTPStatusError as e:
            raise DatabaseError(
                f"{method} {path} failed with HTTP {e.response.status_code}: {e.response.text[:200]}",
                details={"status_code": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            raise DatabaseError(f"{method} {path} failed: {e}") from e

        if not response.content:
            return None
        return response.json()

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: Iterable[Filter] = (),
        order: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[dict]:
        """
        Select rows.

        Args:
            order: PostgREST order clause, e.g. ``"created_at.asc"``
        """
        params = [("select", columns), *build_filter_params(filters)]
        if order:
            params.append(("order", order))
        if limit is not None:
            params.append(("limit", str(limit)))
        return await self._request("GET", f"/rest/v1/{table}", params=params) or []

    async def select_one(self, table: str, columns: str = "*", filters: Iterable[Filter] = ()) -> Optional[dict]:
        rows = await self.select(table, columns, filters, limit=1)
        return rows[0] if rows else None

    async def insert(self, table: str, rows: dict | list[dict]) -> list[dict]:
        return await self._request(
            "POST", f"/rest/v1/{table}", json=rows, prefer="return=representation"
        ) or []

    async def upsert(self, table: str, rows: dict | list[dict], on_conflict: str) -> list[dict]:
        return await self._request(
            "POST",
            f"/rest/v1/{table}",
            params=[("on_conflict", on_conflict)],
            json=rows,
            prefer="resolution=merge-duplicates,return=representation",
        ) or []

    async def update(self, table: str, values: dict, filters: Iterable[Filter]) -> list[dict]:
        """Update matching rows; returns the rows actually changed."""
        return await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=build_filter_params(filters),
            json=values,
            prefer="return=representation",
        ) or []

    async def delete(self, table: str, filters: Iterable[Filter]) -> list[dict]:
        return await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=build_filter_params(filters),
            prefer="return=representation",
        ) or []

    async def rpc(self, function: str, params: Optional[dict] = None) -> Any:
        return await self._request("POST", f"/rest/v1/rpc/{function}", json=params or {})

    async def ping(self) -> bool:
        """True if the REST endpoint answers."""
        try:
            response = await self._client.get(f"{self.base_url}/rest/v1/", timeout=5.0)
            return response.status_code < 500
        except httpx.HTTPError as e:
            logger.warning(f"Supabase ping failed: {e}")
            return False
