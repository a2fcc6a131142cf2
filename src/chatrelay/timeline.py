from __future__ import annotations

import bisect
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Tuple

from .errors import MalformedEvent

REQUIRED_FIELDS = ("id", "author_id", "created_at")

# Postgres trims trailing zeros from fractional seconds.
_FRACTION = re.compile(r"(?<=\d\d:\d\d:\d\d)\.(\d+)")


def parse_timestamp(value: Any) -> datetime:
    """Return ``value`` as an aware UTC-comparable datetime.

    Accepts ``datetime`` instances and ISO-8601 strings, including the
    trailing ``Z`` form and fractions of any precision. Naive values are
    taken as UTC.
    """

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        text = _FRACTION.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedEvent(f"invalid created_at: {value!r}") from exc
    else:
        raise MalformedEvent(f"invalid created_at: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def id_sort_key(message_id: str) -> Tuple[int, int, str]:
    if message_id.isdigit():
        return (0, int(message_id), "")
    return (1, 0, message_id)


@dataclass(frozen=True)
class Message:
    """A single conversation message as delivered by any channel."""

    id: str
    conversation_id: str
    author_id: str
    body: str | None
    created_at: datetime
    reply_to: str | None = None

    @property
    def sort_key(self) -> tuple:
        return (self.created_at, id_sort_key(self.id))

    @classmethod
    def from_row(cls, row: Any, *, conversation_id: str | None = None) -> "Message":
        """Build a message from a store / feed row.

        ``conversation_id`` fills the field when the row omits it, which is
        what broadcast payloads from older clients look like.
        """

        if not isinstance(row, Mapping):
            raise MalformedEvent("message row must be an object")
        missing = [name for name in REQUIRED_FIELDS if row.get(name) in (None, "")]
        if missing:
            raise MalformedEvent(f"message row missing {', '.join(missing)}")
        conv_id = row.get("conversation_id") or conversation_id
        if not conv_id:
            raise MalformedEvent("message row missing conversation_id")
        body = row.get("body")
        reply_to = row.get("reply_to")
        return cls(
            id=str(row["id"]),
            conversation_id=str(conv_id),
            author_id=str(row["author_id"]),
            body=None if body is None else str(body),
            created_at=parse_timestamp(row["created_at"]),
            reply_to=None if reply_to in (None, "") else str(reply_to),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "author_id": self.author_id,
            "body": self.body,
            "created_at": self.created_at.isoformat(),
            "reply_to": self.reply_to,
        }


class Timeline:
    """Ordered, id-deduplicated message sequence.

    Messages live in a list sorted by ``(created_at, id)`` with a parallel
    list of sort keys for bisection; the id index gives constant-time
    duplicate checks. Inserts are serialised by an internal lock so feed
    callbacks arriving from other threads cannot interleave a mutation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._messages: List[Message] = []
        self._keys: List[tuple] = []
        self._ids: Dict[str, Message] = {}

    def insert(self, message: Message) -> bool:
        """Insert ``message`` unless its id is already present.

        Returns ``True`` when the timeline changed.
        """

        with self._lock:
            if message.id in self._ids:
                return False
            key = message.sort_key
            index = bisect.bisect_right(self._keys, key)
            self._keys.insert(index, key)
            self._messages.insert(index, message)
            self._ids[message.id] = message
            return True

    def get(self, message_id: str) -> Message | None:
        return self._ids.get(str(message_id))

    def ids(self) -> List[str]:
        with self._lock:
            return [message.id for message in self._messages]

    def snapshot(self) -> List[Message]:
        with self._lock:
            return list(self._messages)

    def latest(self) -> Message | None:
        with self._lock:
            return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        with self._lock:
            self._messages.clear()
            self._keys.clear()
            self._ids.clear()

    def __contains__(self, message_id: object) -> bool:
        return str(message_id) in self._ids

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self.snapshot())
