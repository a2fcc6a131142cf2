"""Conversation-scoped façade seen by the presentation layer."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, List

from .config import RelayConfig
from .errors import StoreError
from .pins import PinRegistry
from .profiles import ProfileDirectory
from .reactions import ReactionAggregator, ReactionSummary
from .reconciler import ChannelSource, Reconciler, utc_now
from .store import Store
from .timeline import Message

logger = logging.getLogger(__name__)


class ConversationSession:
    """Reconciled timeline plus reaction, pin and author state for one conversation.

    Every timeline change schedules a refresh of reactions, pins and author
    names over the whole loaded id set. Refreshes run one at a time on a
    background task; changes that land while one is running fold into a
    single follow-up refresh.
    """

    def __init__(
        self,
        store: Store,
        config: RelayConfig,
        user_id: str,
        *,
        change_feed: Any = None,
        broadcast: Any = None,
        now_func: Callable[[], datetime] = utc_now,
    ) -> None:
        if not user_id:
            raise ValueError("user_id is required")
        self.config = config
        self.user_id = user_id
        self.reconciler = Reconciler(
            store,
            config.conversation_id,
            change_feed=change_feed,
            broadcast=broadcast,
            poll_interval_s=config.poll_interval_s,
            initial_load_limit=config.initial_load_limit,
            now_func=now_func,
        )
        self.reactions = ReactionAggregator(store)
        self.pins = PinRegistry(store, config.conversation_id)
        self.profiles = ProfileDirectory(store)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._refresh_task: asyncio.Task | None = None
        self._refresh_pending = False
        self._closed = False

    @property
    def conversation_id(self) -> str:
        return self.config.conversation_id

    @property
    def is_open(self) -> bool:
        return self.reconciler.is_open and not self._closed

    async def open(self) -> "ConversationSession":
        self._loop = asyncio.get_running_loop()
        self.reconciler.add_listener(self._on_timeline_change)
        try:
            await self.reconciler.open()
        except BaseException:
            await self.close()
            raise
        if self._closed:
            return self
        try:
            await self.refresh()
        except StoreError as exc:
            logger.warning("initial refresh failed for %s: %s", self.conversation_id, exc)
        except Exception:
            logger.exception("initial refresh failed for %s", self.conversation_id)
        return self

    async def __aenter__(self) -> "ConversationSession":
        return await self.open()

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    def timeline(self) -> List[Message]:
        return self.reconciler.timeline.snapshot()

    def is_own(self, message: Message) -> bool:
        return message.author_id == self.user_id

    async def send(self, text: str, *, reply_to: str | None = None) -> Message:
        return await self.reconciler.send(text, self.user_id, reply_to=reply_to)

    def reactions_for(self, message_id: str) -> List[ReactionSummary]:
        return self.reactions.view(message_id, self.user_id, self.config.emojis)

    def is_pinned(self, message_id: str) -> bool:
        return self.pins.is_pinned(message_id)

    def display_name(self, user_id: str) -> str:
        return self.profiles.display_name(user_id)

    async def toggle_reaction(self, message_id: str, emoji: str) -> bool:
        if emoji not in self.config.emojis:
            raise ValueError(f"unsupported emoji: {emoji}")
        self._require_message(message_id)
        return await self.reactions.toggle(message_id, self.user_id, emoji)

    async def toggle_pin(self, message_id: str) -> bool:
        self._require_message(message_id)
        return await self.pins.toggle(message_id, self.user_id)

    async def refresh(self) -> None:
        messages = self.reconciler.timeline.snapshot()
        ids = [message.id for message in messages]
        await self.reactions.refresh(ids)
        await self.pins.refresh(ids)
        await self.profiles.refresh(message.author_id for message in messages)

    async def wait_for_refresh(self) -> None:
        """Wait until no background refresh is running or queued."""

        while self._refresh_task is not None and not self._refresh_task.done():
            await asyncio.shield(self._refresh_task)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.reconciler.remove_listener(self._on_timeline_change)
        task, self._refresh_task = self._refresh_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self.reconciler.close()

    def _require_message(self, message_id: str) -> None:
        if message_id not in self.reconciler.timeline:
            raise ValueError(f"unknown message: {message_id}")

    def _on_timeline_change(self, message: Message, source: ChannelSource) -> None:
        loop = self._loop
        if loop is None or self._closed:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._request_refresh()
        else:
            loop.call_soon_threadsafe(self._request_refresh)

    def _request_refresh(self) -> None:
        if self._closed:
            return
        self._refresh_pending = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._refresh_loop())

    async def _refresh_loop(self) -> None:
        while self._refresh_pending and not self._closed:
            self._refresh_pending = False
            try:
                await self.refresh()
            except StoreError as exc:
                logger.warning("refresh failed for %s: %s", self.conversation_id, exc)
            except Exception:
                logger.exception("refresh failed for %s", self.conversation_id)
