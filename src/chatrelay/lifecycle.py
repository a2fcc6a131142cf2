"""Process-wide credentials and the foreground-driven token refresher.

One :class:`AppLifecycle` is created at startup and handed to whatever needs
it; nothing here registers itself globally.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict

import aiohttp

from .errors import RelayError

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL_S = 60.0


@dataclass
class Credentials:
    api_key: str | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)

    def headers(self) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.api_key:
            headers["apikey"] = self.api_key
        token = self.access_token or self.api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers


TokenRefresh = Callable[[Credentials], Awaitable[None]]


class AppLifecycle:
    """Runs token refresh only while the app is started and in the foreground."""

    def __init__(
        self,
        credentials: Credentials,
        refresh: TokenRefresh,
        *,
        refresh_interval_s: float = DEFAULT_REFRESH_INTERVAL_S,
    ) -> None:
        self.credentials = credentials
        self._refresh = refresh
        self.refresh_interval_s = refresh_interval_s
        self._started = False
        self._foreground = True
        self._refresh_task: asyncio.Task | None = None

    @property
    def refreshing(self) -> bool:
        return self._refresh_task is not None

    async def startup(self) -> None:
        self._started = True
        if self._foreground:
            self._start_refresh()

    async def shutdown(self) -> None:
        self._started = False
        await self._stop_refresh()

    async def set_foreground(self, foreground: bool) -> None:
        self._foreground = foreground
        if foreground and self._started:
            self._start_refresh()
        else:
            await self._stop_refresh()

    async def refresh_now(self) -> None:
        await self._refresh(self.credentials)

    def _start_refresh(self) -> None:
        if self._refresh_task is None:
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _stop_refresh(self) -> None:
        if self._refresh_task is None:
            return
        self._refresh_task.cancel()
        try:
            await self._refresh_task
        except asyncio.CancelledError:
            pass
        self._refresh_task = None

    async def _refresh_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.refresh_interval_s)
                try:
                    await self._refresh(self.credentials)
                except (RelayError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
                    logger.warning("token refresh failed: %s", exc)
        except asyncio.CancelledError:
            return


def backend_token_refresher(http: aiohttp.ClientSession, backend_url: str) -> TokenRefresh:
    """Refresh ``Credentials`` against the hosted backend's auth endpoint."""

    url = f"{backend_url.rstrip('/')}/auth/v1/token"

    async def refresh(credentials: Credentials) -> None:
        if not credentials.refresh_token:
            return
        async with http.post(
            url,
            params={"grant_type": "refresh_token"},
            json={"refresh_token": credentials.refresh_token},
            headers={"apikey": credentials.api_key or ""},
        ) as response:
            if response.status >= 400:
                raise RelayError(f"token refresh rejected with HTTP {response.status}")
            body = await response.json()
        credentials.access_token = body.get("access_token") or credentials.access_token
        credentials.refresh_token = body.get("refresh_token") or credentials.refresh_token
        logger.debug("access token refreshed")

    return refresh
