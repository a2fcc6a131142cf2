"""Store backed by the hosted backend's PostgREST-style HTTP API."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence, Tuple

import aiohttp

from .errors import StoreError, StoreQueryFailed, StoreWriteFailed
from .lifecycle import Credentials
from .store import Filter, Order, Row, to_wire

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


def format_value(value: Any) -> str:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _quote(value: Any) -> str:
    text = format_value(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def build_params(
    filters: Sequence[Filter],
    order: Optional[Order] = None,
    limit: Optional[int] = None,
    *,
    select: str | None = "*",
) -> List[Tuple[str, str]]:
    params: List[Tuple[str, str]] = []
    if select is not None:
        params.append(("select", select))
    for item in filters:
        if item.op == "in":
            params.append((item.column, "in.(" + ",".join(_quote(v) for v in item.value) + ")"))
        else:
            params.append((item.column, f"{item.op}.{format_value(item.value)}"))
    if order is not None:
        params.append(("order", f"{order.column}.{'desc' if order.descending else 'asc'}"))
    if limit is not None:
        params.append(("limit", str(max(limit, 0))))
    return params


class RestStore:
    def __init__(
        self,
        rest_url: str,
        credentials: Credentials,
        *,
        http: aiohttp.ClientSession | None = None,
        timeout_s: float = DEFAULT_TIMEOUT_S,
    ) -> None:
        self.rest_url = rest_url.rstrip("/")
        self.credentials = credentials
        self._http = http
        self._owns_http = http is None
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)

    async def __aenter__(self) -> "RestStore":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
        self._http = None

    def _session(self) -> aiohttp.ClientSession:
        if self._http is None:
            self._http = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_http = True
        return self._http

    def _url(self, table: str) -> str:
        return f"{self.rest_url}/{table}"

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        params = build_params(filters, order, limit)
        return await self._request("GET", table, StoreQueryFailed, params=params)

    async def insert(self, table: str, row: Row) -> Row:
        rows = await self._request(
            "POST",
            table,
            StoreWriteFailed,
            json=to_wire(row),
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise StoreWriteFailed(table, "insert returned no row")
        return rows[0]

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        if not filters:
            raise StoreWriteFailed(table, "refusing to delete without filters")
        rows = await self._request(
            "DELETE",
            table,
            StoreWriteFailed,
            params=build_params(filters, select=None),
            headers={"Prefer": "return=representation"},
        )
        return len(rows)

    async def _request(
        self,
        method: str,
        table: str,
        error: type[StoreError],
        *,
        params: List[Tuple[str, str]] | None = None,
        json: Any = None,
        headers: dict | None = None,
    ) -> List[Row]:
        request_headers = self.credentials.headers()
        if headers:
            request_headers.update(headers)
        try:
            async with self._session().request(
                method,
                self._url(table),
                params=params,
                json=json,
                headers=request_headers,
                timeout=self._timeout,
            ) as response:
                if response.status >= 400:
                    detail = (await response.text())[:200]
                    raise error(table, f"HTTP {response.status}: {detail}")
                if response.status == 204:
                    return []
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.debug("%s %s failed", method, table, exc_info=True)
            raise error(table, f"{method} failed: {exc}") from exc
        except ValueError as exc:
            raise error(table, "response was not JSON") from exc
        if payload is None:
            return []
        if isinstance(payload, dict):
            payload = [payload]
        if not isinstance(payload, list) or any(not isinstance(row, dict) for row in payload):
            raise error(table, "unexpected response shape")
        return payload
