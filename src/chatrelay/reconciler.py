"""Merge every delivery channel of one conversation into a single timeline.

Messages can reach a client four ways: the bulk load on open, the server's
change feed, the peer broadcast channel (which echoes our own publishes back)
and the polling fallback. Each of them may duplicate, delay or drop events,
so the merge is keyed solely on ``message.id``: an arrival whose id is
already in the timeline is a no-op no matter which channel it came from.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping

from .errors import MalformedEvent, StoreError, StoreWriteFailed
from .store import MESSAGES, Order, Store, eq, gt
from .timeline import Message, Timeline
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 5.0
DEFAULT_INITIAL_LOAD_LIMIT = 100


class ChannelSource(str, enum.Enum):
    INITIAL = "initial"
    CHANGE_FEED = "change_feed"
    BROADCAST = "broadcast"
    POLL = "poll"
    SELF = "self"


Listener = Callable[[Message, ChannelSource], None]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    def __init__(
        self,
        store: Store,
        conversation_id: str,
        *,
        change_feed: Any = None,
        broadcast: Any = None,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        initial_load_limit: int = DEFAULT_INITIAL_LOAD_LIMIT,
        watermarks: WatermarkStore | None = None,
        now_func: Callable[[], datetime] = utc_now,
    ) -> None:
        if not conversation_id:
            raise ValueError("conversation_id is required")
        self.store = store
        self.conversation_id = conversation_id
        self.change_feed = change_feed
        self.broadcast = broadcast
        self.poll_interval_s = poll_interval_s
        self.initial_load_limit = initial_load_limit
        self.watermarks = watermarks or WatermarkStore()
        self.timeline = Timeline()
        self._now = now_func
        self._listeners: List[Listener] = []
        self._subscriptions: Dict[str, Any] = {}
        self._poll_task: asyncio.Task | None = None
        self._opened = False
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    @property
    def watermark(self) -> datetime | None:
        return self.watermarks.get(self.conversation_id)

    @property
    def active_channels(self) -> List[str]:
        return sorted(self._subscriptions)

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    async def open(self) -> Timeline:
        """Bulk-load recent history, subscribe the realtime channels, start polling."""

        if self._opened:
            raise RuntimeError("reconciler already opened")
        self._opened = True

        rows = await self.store.query(
            MESSAGES,
            [eq("conversation_id", self.conversation_id)],
            order=Order("created_at", descending=True),
            limit=self.initial_load_limit,
        )
        if self._closed:
            logger.debug("conversation %s closed during initial load", self.conversation_id)
            return self.timeline
        for row in reversed(rows):
            message = self._parse(row, ChannelSource.INITIAL)
            if message is not None:
                self.timeline.insert(message)

        latest = self.timeline.latest()
        # Empty history starts at "now" so the first poll does not refetch everything.
        self.watermarks.initialize(self.conversation_id, latest.created_at if latest else self._now())
        logger.info(
            "opened conversation %s with %d messages, watermark %s",
            self.conversation_id,
            len(self.timeline),
            self.watermark.isoformat(),
        )

        await self._subscribe_channels()
        if self._closed:
            return self.timeline
        self._poll_task = asyncio.create_task(self._poll_loop())
        return self.timeline

    async def _subscribe_channels(self) -> None:
        channels = (
            ("change_feed", self.change_feed, self._on_change_feed),
            ("broadcast", self.broadcast, self._on_broadcast),
        )
        for name, channel, callback in channels:
            if channel is None or self._closed:
                continue
            try:
                subscription = await channel.subscribe(self.conversation_id, callback)
            except Exception:
                logger.warning(
                    "%s subscription failed for %s; relying on remaining channels",
                    name,
                    self.conversation_id,
                    exc_info=True,
                )
                continue
            if self._closed:
                # close() already ran and will not see this handle.
                await self._release(name, subscription)
                continue
            self._subscriptions[name] = subscription

    async def _release(self, name: str, subscription: Any) -> None:
        try:
            await subscription.unsubscribe()
        except Exception:
            logger.warning("failed to release %s subscription for %s", name, self.conversation_id, exc_info=True)

    def _on_change_feed(self, row: Any) -> None:
        self.ingest(row, ChannelSource.CHANGE_FEED)

    def _on_broadcast(self, payload: Any) -> None:
        row = payload.get("message") if isinstance(payload, Mapping) else None
        self.ingest(row, ChannelSource.BROADCAST)

    def _parse(self, row: Any, source: ChannelSource) -> Message | None:
        try:
            message = Message.from_row(row, conversation_id=self.conversation_id)
        except MalformedEvent as exc:
            logger.warning("dropping malformed %s event for %s: %s", source.value, self.conversation_id, exc)
            return None
        if message.conversation_id != self.conversation_id:
            logger.debug(
                "ignoring %s event for conversation %s", source.value, message.conversation_id
            )
            return None
        return message

    def ingest(self, row: Any, source: ChannelSource) -> bool:
        """Parse a raw row from ``source`` and merge it; malformed rows are dropped."""

        message = self._parse(row, source)
        if message is None:
            return False
        return self.on_arrival(message, source)

    def on_arrival(self, message: Message, source: ChannelSource) -> bool:
        """Merge ``message`` into the timeline.

        Idempotent and order-agnostic across channels; returns ``True`` only
        when the message was new. Arrivals after close are ignored.
        """

        if self._closed:
            return False
        if not self.timeline.insert(message):
            logger.debug("duplicate %s arrival for message %s", source.value, message.id)
            return False
        self.watermarks.advance(self.conversation_id, message.created_at)
        for listener in list(self._listeners):
            listener(message, source)
        return True

    async def poll_once(self) -> int:
        """Fetch messages newer than the watermark; returns how many were new."""

        if not self.is_open:
            return 0
        since = self.watermark
        try:
            rows = await self.store.query(
                MESSAGES,
                [eq("conversation_id", self.conversation_id), gt("created_at", since)],
                order=Order("created_at"),
            )
        except StoreError as exc:
            logger.warning("poll failed for %s: %s", self.conversation_id, exc)
            return 0
        if self._closed:
            logger.debug("discarding poll response for closed conversation %s", self.conversation_id)
            return 0
        added = 0
        for row in rows:
            if self.ingest(row, ChannelSource.POLL):
                added += 1
        if added:
            logger.info("poll recovered %d message(s) for %s", added, self.conversation_id)
        return added

    async def _poll_loop(self) -> None:
        try:
            while not self._closed:
                await asyncio.sleep(self.poll_interval_s)
                if self._closed:
                    return
                try:
                    await self.poll_once()
                except Exception:
                    logger.exception("poll tick failed for %s", self.conversation_id)
        except asyncio.CancelledError:
            return

    async def send(self, body: str, author_id: str, *, reply_to: str | None = None) -> Message:
        """Insert a message, show it locally at once, then publish it to peers.

        Store failures propagate to the caller and are not retried.
        """

        if not self.is_open:
            raise RuntimeError("conversation is not open")
        content = (body or "").strip()
        if not content:
            raise ValueError("message body required")
        row: Dict[str, Any] = {
            "conversation_id": self.conversation_id,
            "author_id": author_id,
            "body": content,
        }
        if reply_to is not None:
            row["reply_to"] = reply_to

        inserted = await self.store.insert(MESSAGES, row)
        try:
            message = Message.from_row(inserted, conversation_id=self.conversation_id)
        except MalformedEvent as exc:
            raise StoreWriteFailed(MESSAGES, f"insert returned malformed row: {exc}") from exc
        self.on_arrival(message, ChannelSource.SELF)

        if self.broadcast is not None and "broadcast" in self._subscriptions:
            try:
                await self.broadcast.publish(self.conversation_id, {"message": message.to_row()})
            except Exception:
                logger.warning("broadcast publish failed for message %s", message.id, exc_info=True)
        return message

    async def close(self) -> None:
        """Stop polling and release both subscriptions, each independently."""

        if self._closed:
            return
        self._closed = True

        task, self._poll_task = self._poll_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        subscriptions, self._subscriptions = self._subscriptions, {}
        for name, subscription in subscriptions.items():
            await self._release(name, subscription)
        logger.info("closed conversation %s", self.conversation_id)
