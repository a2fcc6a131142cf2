"""Realtime channels over the hosted backend's websocket.

A single :class:`RealtimeClient` multiplexes channel topics over one
websocket using Phoenix-style frames::

    {"topic": "...", "event": "...", "payload": {...}, "ref": "..."}

:class:`RealtimeChangeFeed` and :class:`RealtimePeerBroadcast` wrap it in the
ChangeFeed and PeerBroadcast shapes the reconciler consumes.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict

import aiohttp
from aiohttp import WSMsgType

from .errors import SubscriptionFailed
from .lifecycle import Credentials

logger = logging.getLogger(__name__)

PROTOCOL_VSN = "1.0.0"
HEARTBEAT_TOPIC = "phoenix"

Handler = Callable[[str, Dict[str, Any]], None]


@dataclass(eq=False)
class RealtimeChannel:
    topic: str
    handler: Handler
    client: "RealtimeClient" = field(repr=False)

    async def unsubscribe(self) -> None:
        await self.client.leave(self)


class RealtimeClient:
    def __init__(
        self,
        url: str,
        credentials: Credentials,
        *,
        http: aiohttp.ClientSession | None = None,
        heartbeat_interval_s: float = 30.0,
        join_timeout_s: float = 10.0,
    ) -> None:
        self.url = url
        self.credentials = credentials
        self.heartbeat_interval_s = heartbeat_interval_s
        self.join_timeout_s = join_timeout_s
        self._http = http
        self._owns_http = http is None
        self._refs = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._channels: Dict[str, RealtimeChannel] = {}
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    def topics(self) -> list[str]:
        return sorted(self._channels)

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.connected:
                return
            if self._http is None:
                self._http = aiohttp.ClientSession()
                self._owns_http = True
            params = {"vsn": PROTOCOL_VSN}
            if self.credentials.api_key:
                params["apikey"] = self.credentials.api_key
            try:
                self._ws = await self._http.ws_connect(self.url, params=params)
            except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
                raise SubscriptionFailed("realtime", f"connect failed: {exc}") from exc
            self._reader_task = asyncio.create_task(self._read(self._ws))
            self._heartbeat_task = asyncio.create_task(self._heartbeat())
            logger.info("realtime connected to %s", self.url)

    async def join(self, topic: str, config: Dict[str, Any], handler: Handler) -> RealtimeChannel:
        """Join ``topic`` and wait for the server's ok reply."""

        await self.connect()
        channel = RealtimeChannel(topic=topic, handler=handler, client=self)
        self._channels[topic] = channel
        ref = str(next(self._refs))
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[ref] = future
        payload: Dict[str, Any] = {"config": config}
        if self.credentials.access_token:
            payload["access_token"] = self.credentials.access_token
        try:
            await self._send(topic, "phx_join", payload, ref=ref)
            reply = await asyncio.wait_for(future, self.join_timeout_s)
        except asyncio.TimeoutError as exc:
            self._drop(channel)
            raise SubscriptionFailed(topic, "join timed out") from exc
        except (aiohttp.ClientError, ConnectionError) as exc:
            self._drop(channel)
            raise SubscriptionFailed(topic, f"join failed: {exc}") from exc
        except SubscriptionFailed:
            self._drop(channel)
            raise
        finally:
            self._pending.pop(ref, None)
        if reply.get("status") != "ok":
            self._drop(channel)
            raise SubscriptionFailed(topic, f"join rejected: {reply.get('response')}")
        logger.info("joined realtime topic %s", topic)
        return channel

    async def leave(self, channel: RealtimeChannel) -> None:
        self._drop(channel)
        if self.connected:
            await self._send(channel.topic, "phx_leave", {})
        logger.info("left realtime topic %s", channel.topic)

    async def push(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        if topic not in self._channels:
            raise SubscriptionFailed(topic, "not joined")
        if not self.connected:
            raise SubscriptionFailed(topic, "not connected")
        await self._send(topic, event, payload)

    async def close(self) -> None:
        tasks = [task for task in (self._heartbeat_task, self._reader_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._heartbeat_task = None
        self._reader_task = None
        self._channels.clear()
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    def _drop(self, channel: RealtimeChannel) -> None:
        if self._channels.get(channel.topic) is channel:
            self._channels.pop(channel.topic, None)

    async def _send(self, topic: str, event: str, payload: Dict[str, Any], *, ref: str | None = None) -> None:
        if self._ws is None:
            raise SubscriptionFailed(topic, "not connected")
        frame = {
            "topic": topic,
            "event": event,
            "payload": payload,
            "ref": ref or str(next(self._refs)),
        }
        await self._ws.send_json(frame)

    async def _read(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        try:
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    try:
                        frame = msg.json()
                    except ValueError:
                        logger.warning("dropping malformed realtime frame")
                        continue
                    self._dispatch(frame)
                elif msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                    break
        except asyncio.CancelledError:
            return
        finally:
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(SubscriptionFailed("realtime", "connection closed"))
        logger.info("realtime connection to %s closed", self.url)

    def _dispatch(self, frame: Any) -> None:
        if not isinstance(frame, dict):
            return
        event = frame.get("event")
        payload = frame.get("payload")
        if not isinstance(payload, dict):
            payload = {}
        if event == "phx_reply":
            future = self._pending.get(str(frame.get("ref")))
            if future is not None and not future.done():
                future.set_result(payload)
            return
        channel = self._channels.get(frame.get("topic"))
        if channel is None:
            return
        if event in ("phx_error", "phx_close"):
            logger.warning("realtime topic %s reported %s", channel.topic, event)
            return
        try:
            channel.handler(event, payload)
        except Exception:
            logger.exception("realtime handler for %s failed", channel.topic)

    async def _heartbeat(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.heartbeat_interval_s)
                if not self.connected:
                    return
                await self._send(HEARTBEAT_TOPIC, "heartbeat", {})
        except asyncio.CancelledError:
            return
        except (aiohttp.ClientError, ConnectionError, SubscriptionFailed) as exc:
            logger.warning("realtime heartbeat stopped: %s", exc)


class RealtimeChangeFeed:
    """INSERT notifications for the messages table, filtered by conversation."""

    def __init__(self, client: RealtimeClient, *, schema: str = "public", table: str = "messages") -> None:
        self.client = client
        self.schema = schema
        self.table = table

    @staticmethod
    def topic(conversation_id: str) -> str:
        return f"realtime:messages:{conversation_id}"

    async def subscribe(self, conversation_id: str, on_insert: Callable[[Any], None]) -> RealtimeChannel:
        def handle(event: str, payload: Dict[str, Any]) -> None:
            if event != "postgres_changes":
                return
            data = payload.get("data")
            if not isinstance(data, dict) or data.get("type", "INSERT") != "INSERT":
                return
            on_insert(data.get("record"))

        config = {
            "broadcast": {"self": False},
            "presence": {"key": ""},
            "postgres_changes": [
                {
                    "event": "INSERT",
                    "schema": self.schema,
                    "table": self.table,
                    "filter": f"conversation_id=eq.{conversation_id}",
                }
            ],
        }
        return await self.client.join(self.topic(conversation_id), config, handle)


class RealtimePeerBroadcast:
    """Client-to-client broadcast per conversation, echoed back to the sender."""

    def __init__(self, client: RealtimeClient, *, event: str = "message") -> None:
        self.client = client
        self.event = event

    @staticmethod
    def topic(conversation_id: str) -> str:
        return f"realtime:broadcast:messages:{conversation_id}"

    async def subscribe(self, conversation_id: str, on_message: Callable[[Any], None]) -> RealtimeChannel:
        def handle(event: str, payload: Dict[str, Any]) -> None:
            if event != "broadcast" or payload.get("event") != self.event:
                return
            on_message(payload.get("payload"))

        config = {"broadcast": {"self": True, "ack": False}, "presence": {"key": ""}, "postgres_changes": []}
        return await self.client.join(self.topic(conversation_id), config, handle)

    async def publish(self, conversation_id: str, payload: Dict[str, Any]) -> None:
        await self.client.push(
            self.topic(conversation_id),
            "broadcast",
            {"type": "broadcast", "event": self.event, "payload": payload},
        )
