"""Thin aiohttp client for the portal backend's REST and storage APIs.

Tables are exposed PostgREST style (``/rest/v1/<table>?col=eq.value``) and
binary objects through ``/storage/v1/object/<bucket>/<path>``.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import quote

import aiohttp

from .errors import StoreError


class PortalRestClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        http: aiohttp.ClientSession,
        timeout_sec: float = 30.0,
    ) -> None:
        if not base_url:
            raise ValueError("portal backend URL is not configured")
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._http = http
        self._timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._log = logging.getLogger("portal_rest")

    @classmethod
    def from_cfg(cls, cfg: Mapping[str, Any], http: aiohttp.ClientSession) -> "PortalRestClient":
        backend = cfg.get("backend") or {}
        return cls(
            str(backend.get("url") or ""),
            str(backend.get("api_key") or ""),
            http=http,
            timeout_sec=float(backend.get("timeout_sec", 30.0)),
        )

    def _headers(self, extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {"apikey": self._api_key}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        if extra:
            headers.update(extra)
        return headers

    @staticmethod
    def _filters(filters: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for column, value in (filters or {}).items():
            params[column] = "is.null" if value is None else f"eq.{value}"
        return params

    async def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        try:
            async with self._http.request(method, url, timeout=self._timeout, **kwargs) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise StoreError(
                        f"{method} {url} failed with HTTP {resp.status}",
                        status=resp.status,
                        body=body[:500],
                    )
                if not body:
                    return None
                if resp.content_type != "application/json":
                    return body
                try:
                    return json.loads(body)
                except ValueError as exc:
                    raise StoreError(
                        f"{method} {url} returned malformed JSON",
                        status=resp.status,
                        body=body[:500],
                    ) from exc
        except aiohttp.ClientError as exc:
            raise StoreError(f"{method} {url} failed: {exc!r}") from exc

    # --- tables ---
    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        *,
        columns: str = "*",
        order: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        params = {"select": columns, **self._filters(filters)}
        if order:
            params["order"] = f"{order}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(int(limit))
        rows = await self._request(
            "GET", f"{self.base_url}/rest/v1/{table}", params=params, headers=self._headers()
        )
        return list(rows or [])

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        rows = await self._request(
            "POST",
            f"{self.base_url}/rest/v1/{table}",
            json=[dict(record)],
            headers=self._headers({"Prefer": "return=representation"}),
        )
        if not rows:
            raise StoreError(f"insert into {table} returned no row")
        return dict(rows[0])

    async def update(
        self, table: str, match: Mapping[str, Any], values: Mapping[str, Any]
    ) -> List[Dict[str, Any]]:
        if not match:
            raise ValueError("update requires at least one match column")
        rows = await self._request(
            "PATCH",
            f"{self.base_url}/rest/v1/{table}",
            params=self._filters(match),
            json=dict(values),
            headers=self._headers({"Prefer": "return=representation"}),
        )
        return list(rows or [])

    # --- storage ---
    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{quote(path)}"

    async def upload(self, bucket: str, path: str, data: bytes, content_type: str) -> str:
        await self._request(
            "POST",
            f"{self.base_url}/storage/v1/object/{bucket}/{quote(path)}",
            data=data,
            headers=self._headers({"Content-Type": content_type, "x-upsert": "false"}),
        )
        self._log.info("Uploaded %s/%s (%d bytes, %s)", bucket, path, len(data), content_type)
        return self.public_url(bucket, path)
