"""Realtime message delivery relay with delivery reconciliation."""

from .config import RelayConfig, load_config_from_env
from .errors import (
    MalformedEvent,
    RelayError,
    StoreError,
    StoreQueryFailed,
    StoreWriteFailed,
    SubscriptionFailed,
)
from .feeds import InMemoryChangeFeed, InMemoryPeerBroadcast
from .reconciler import ChannelSource, Reconciler
from .session import ConversationSession
from .store import InMemoryStore
from .timeline import Message, Timeline

__all__ = [
    "ChannelSource",
    "ConversationSession",
    "InMemoryChangeFeed",
    "InMemoryPeerBroadcast",
    "InMemoryStore",
    "MalformedEvent",
    "Message",
    "Reconciler",
    "RelayConfig",
    "RelayError",
    "StoreError",
    "StoreQueryFailed",
    "StoreWriteFailed",
    "SubscriptionFailed",
    "Timeline",
    "load_config_from_env",
]
