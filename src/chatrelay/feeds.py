"""In-process change feed and peer broadcast channels."""

from __future__ import annotations

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .errors import SubscriptionFailed

Callback = Callable[[Any], None]


@dataclass(eq=False)
class Subscription:
    """Handle returned by :meth:`SubscriptionHub.subscribe`."""

    key: int
    conversation_id: str
    callback: Callback = field(repr=False)
    hub: "SubscriptionHub" = field(repr=False)

    @property
    def active(self) -> bool:
        return self.hub.is_registered(self)

    async def unsubscribe(self) -> None:
        self.hub.unsubscribe(self)


class SubscriptionHub:
    """Callbacks per conversation, delivered in subscription order."""

    def __init__(self, channel: str) -> None:
        self.channel = channel
        self._keys = itertools.count(1)
        self._rooms: Dict[str, Dict[int, Subscription]] = {}

    def subscribe(self, conversation_id: str, callback: Callback) -> Subscription:
        subscription = Subscription(next(self._keys), conversation_id, callback, self)
        self._rooms.setdefault(conversation_id, {})[subscription.key] = subscription
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        room = self._rooms.get(subscription.conversation_id, {})
        if room.pop(subscription.key, None) is not None and not room:
            del self._rooms[subscription.conversation_id]

    def is_registered(self, subscription: Subscription) -> bool:
        return subscription.key in self._rooms.get(subscription.conversation_id, {})

    def broadcast(self, conversation_id: str, payload: Any) -> int:
        """Hand ``payload`` to every subscriber of the conversation; returns how many."""

        targets = list(self._rooms.get(conversation_id, {}).values())
        for subscription in targets:
            subscription.callback(payload)
        return len(targets)

    def subscriber_count(self, conversation_id: str) -> int:
        return len(self._rooms.get(conversation_id, {}))


class InMemoryChangeFeed:
    """Change feed fed by store inserts.

    ``connected`` set to ``False`` drops events and refuses new subscriptions,
    which is how a broken realtime connection is simulated.
    """

    def __init__(self) -> None:
        self._hub = SubscriptionHub("change_feed")
        self.connected = True

    async def subscribe(self, conversation_id: str, on_insert: Callback) -> Subscription:
        if not self.connected:
            raise SubscriptionFailed("change_feed", "not connected")
        return self._hub.subscribe(conversation_id, on_insert)

    def notify_insert(self, row: Dict[str, Any]) -> int:
        if not self.connected:
            return 0
        conversation_id = row.get("conversation_id")
        if conversation_id is None:
            return 0
        return self._hub.broadcast(str(conversation_id), dict(row))

    def subscriber_count(self, conversation_id: str) -> int:
        return self._hub.subscriber_count(conversation_id)


class InMemoryPeerBroadcast:
    """Pub/sub channel per conversation with self-delivery enabled."""

    def __init__(self) -> None:
        self._hub = SubscriptionHub("broadcast")
        self.connected = True
        self.published: List[Dict[str, Any]] = []

    async def subscribe(self, conversation_id: str, on_message: Callback) -> Subscription:
        if not self.connected:
            raise SubscriptionFailed("broadcast", "not connected")
        return self._hub.subscribe(conversation_id, on_message)

    async def publish(self, conversation_id: str, payload: Dict[str, Any]) -> None:
        if not self.connected:
            raise SubscriptionFailed("broadcast", "not connected")
        self.published.append(payload)
        self._hub.broadcast(conversation_id, payload)

    def subscriber_count(self, conversation_id: str) -> int:
        return self._hub.subscriber_count(conversation_id)
