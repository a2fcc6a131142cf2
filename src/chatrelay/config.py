from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Tuple

DEFAULT_EMOJIS: Tuple[str, ...] = ("👍", "❤️", "😂", "🙏")


@dataclass(frozen=True)
class RelayConfig:
    conversation_id: str
    poll_interval_s: float = 5.0
    initial_load_limit: int = 100
    emojis: Tuple[str, ...] = DEFAULT_EMOJIS
    backend_url: str | None = None
    api_key: str | None = None
    access_token: str | None = field(default=None, repr=False)
    refresh_token: str | None = field(default=None, repr=False)
    heartbeat_interval_s: float = 30.0

    def __post_init__(self) -> None:
        if not self.conversation_id:
            raise ValueError("conversation_id is required")
        if self.poll_interval_s <= 0:
            raise ValueError("poll_interval_s must be positive")
        if self.initial_load_limit < 1:
            raise ValueError("initial_load_limit must be at least 1")
        if not self.emojis:
            raise ValueError("emojis must not be empty")

    @property
    def rest_url(self) -> str | None:
        if self.backend_url is None:
            return None
        return f"{self.backend_url.rstrip('/')}/rest/v1"

    @property
    def realtime_url(self) -> str | None:
        if self.backend_url is None:
            return None
        base = self.backend_url.rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://") :]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://") :]
        return f"{base}/realtime/v1/websocket"

    def with_conversation(self, conversation_id: str) -> "RelayConfig":
        return replace(self, conversation_id=conversation_id)


def _parse_positive_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_emojis(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    emojis = tuple(item.strip() for item in raw.split(",") if item.strip())
    if not emojis:
        raise ValueError(f"{name} must list at least one emoji")
    return emojis


def _optional(name: str) -> str | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw.strip()


def load_config_from_env(conversation_id: str | None = None) -> RelayConfig:
    """Build a :class:`RelayConfig` from ``RELAY_*`` environment variables.

    ``conversation_id`` overrides ``RELAY_CONVERSATION_ID`` when given.
    """

    conv_id = conversation_id or _optional("RELAY_CONVERSATION_ID")
    if not conv_id:
        raise ValueError("RELAY_CONVERSATION_ID is required")
    return RelayConfig(
        conversation_id=conv_id,
        poll_interval_s=_parse_positive_float("RELAY_POLL_INTERVAL_S", 5.0),
        initial_load_limit=_parse_positive_int("RELAY_INITIAL_LOAD_LIMIT", 100),
        emojis=_parse_emojis("RELAY_EMOJIS", DEFAULT_EMOJIS),
        backend_url=_optional("RELAY_BACKEND_URL"),
        api_key=_optional("RELAY_API_KEY"),
        access_token=_optional("RELAY_ACCESS_TOKEN"),
        refresh_token=_optional("RELAY_REFRESH_TOKEN"),
        heartbeat_interval_s=_parse_positive_float("RELAY_HEARTBEAT_INTERVAL_S", 30.0),
    )
