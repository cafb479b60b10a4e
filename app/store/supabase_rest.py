from __future__ import annotations

from typing import Any, Optional, Sequence, Union

import httpx


DEFAULT_TIMEOUT_S = 20.0

QueryParams = Union[dict[str, Any], Sequence[tuple[str, Any]]]


class SupabaseRestError(RuntimeError):
    pass


class SupabaseRestClient:
    def __init__(
        self,
        *,
        supabase_url: Optional[str],
        service_key: Optional[str],
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        url = (supabase_url or "").strip().rstrip("/")
        key = (service_key or "").strip()
        self.base_url = f"{url}/rest/v1" if url else ""
        self.timeout_s = timeout_s
        self._configured = bool(url and key)
        self.common_headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Content-Type": "application/json",
        }

    @property
    def configured(self) -> bool:
        return self._configured

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[QueryParams] = None,
        payload: Any = None,
        headers: Optional[dict[str, str]] = None,
    ) -> Any:
        if not self.configured:
            raise SupabaseRestError("Supabase is not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY.")

        merged_headers = dict(self.common_headers)
        if headers:
            merged_headers.update(headers)

        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                res = await client.request(
                    method,
                    f"{self.base_url}{path}",
                    params=params,
                    json=payload,
                    headers=merged_headers,
                )
        except httpx.HTTPError as exc:
            raise SupabaseRestError(f"Supabase {method} {path} failed: {exc}") from exc

        if res.status_code >= 400:
            raise SupabaseRestError(f"Supabase {method} {path} failed ({res.status_code}): {res.text[:1200]}")
        if res.text and "application/json" in res.headers.get("content-type", ""):
            return res.json()
        return None

    async def select(self, table: str, *, params: QueryParams) -> list[dict[str, Any]]:
        rows = await self._request("GET", f"/{table}", params=params)
        if not isinstance(rows, list):
            raise SupabaseRestError(f"Unexpected response type for table {table}")
        return [r for r in rows if isinstance(r, dict)]

    async def insert_rows(self, table: str, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        await self._request("POST", f"/{table}", payload=rows, headers={"Prefer": "return=minimal"})

    async def update_rows(self, table: str, *, filters: dict[str, str], patch: dict[str, Any]) -> None:
        await self._request("PATCH", f"/{table}", params=filters, payload=patch, headers={"Prefer": "return=minimal"})
