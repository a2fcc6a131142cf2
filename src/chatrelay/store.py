"""Store interface and an in-memory implementation.

The relay core treats durable storage as a black box reached through three
coroutines: ``query``, ``insert`` and ``delete``. Rows are plain dicts keyed
by column name. Filters cover the predicates the core needs: equality,
greater-than and membership.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .errors import MalformedEvent, StoreQueryFailed, StoreWriteFailed
from .timeline import parse_timestamp

MESSAGES = "messages"
REACTIONS = "message_reactions"
PINS = "message_pins"
PROFILES = "profiles"

Row = Dict[str, Any]

UNIQUE_KEYS: Dict[str, Tuple[str, ...]] = {
    MESSAGES: ("id",),
    REACTIONS: ("message_id", "user_id", "emoji"),
    PINS: ("conversation_id", "message_id"),
    PROFILES: ("id",),
}

FILTER_OPS = ("eq", "gt", "in")


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op: {self.op}")


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def gt(column: str, value: Any) -> Filter:
    return Filter(column, "gt", value)


def in_(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


class Store(Protocol):
    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...

    async def insert(self, table: str, row: Row) -> Row: ...

    async def delete(self, table: str, filters: Sequence[Filter]) -> int: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, datetime) or isinstance(right, datetime):
        return parse_timestamp(left) == parse_timestamp(right)
    return str(left) == str(right)


def _greater(left: Any, right: Any) -> bool:
    if isinstance(left, datetime) or isinstance(right, datetime):
        return parse_timestamp(left) > parse_timestamp(right)
    return left > right


def matches(row: Row, filters: Sequence[Filter]) -> bool:
    for item in filters:
        value = row.get(item.column)
        if value is None:
            return False
        if item.op == "eq" and not _same(value, item.value):
            return False
        if item.op == "gt" and not _greater(value, item.value):
            return False
        if item.op == "in" and not any(_same(value, candidate) for candidate in item.value):
            return False
    return True


def to_wire(row: Row) -> Row:
    """Return a JSON-friendly copy of ``row`` as the hosted backend emits it."""

    return {key: value.isoformat() if isinstance(value, datetime) else value for key, value in row.items()}


class InMemoryStore:
    """Process-local Store used for simulation and tests.

    Message inserts get an auto-incrementing id and a non-decreasing
    ``created_at`` when the row omits them, mirroring a server-assigned
    order. When ``on_message_insert`` is given it receives the wire form of
    every inserted message, which is how an in-memory change feed is driven.
    """

    def __init__(
        self,
        *,
        now_func: Callable[[], datetime] = _now,
        on_message_insert: Callable[[Row], None] | None = None,
    ) -> None:
        self._now = now_func
        self._tables: Dict[str, List[Row]] = {}
        self._ids = itertools.count(1)
        self._last_created_at: datetime | None = None
        self._failures: Dict[Tuple[str, str], int] = {}
        self.on_message_insert = on_message_insert
        self.calls: List[Tuple[str, str]] = []

    def fail(self, operation: str, table: str, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` on ``table`` fail."""

        self._failures[(operation, table)] = self._failures.get((operation, table), 0) + times

    def rows(self, table: str) -> List[Row]:
        return [dict(row) for row in self._tables.get(table, [])]

    def seed(self, table: str, rows: Iterable[Row]) -> None:
        for row in rows:
            self._tables.setdefault(table, []).append(dict(row))

    def count(self, operation: str, table: str | None = None) -> int:
        return sum(1 for op, name in self.calls if op == operation and (table is None or name == table))

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        self._record("query", table, StoreQueryFailed)
        rows = [dict(row) for row in self._tables.get(table, []) if matches(row, filters)]
        if order is not None:
            rows.sort(key=lambda row: _order_key(row.get(order.column)), reverse=order.descending)
        if limit is not None:
            rows = rows[: max(limit, 0)]
        return rows

    async def insert(self, table: str, row: Row) -> Row:
        self._record("insert", table, StoreWriteFailed)
        stored = dict(row)
        if table == MESSAGES:
            stored.setdefault("id", next(self._ids))
            stored.setdefault("created_at", self._next_created_at())
            stored.setdefault("body", None)
            stored.setdefault("reply_to", None)
        key_columns = UNIQUE_KEYS.get(table, ())
        if key_columns:
            key = [eq(column, stored.get(column)) for column in key_columns]
            if any(matches(existing, key) for existing in self._tables.get(table, [])):
                raise StoreWriteFailed(table, "duplicate key")
        self._tables.setdefault(table, []).append(stored)
        if table == MESSAGES and self.on_message_insert is not None:
            self.on_message_insert(to_wire(stored))
        return dict(stored)

    async def delete(self, table: str, filters: Sequence[Filter]) -> int:
        self._record("delete", table, StoreWriteFailed)
        if not filters:
            raise StoreWriteFailed(table, "refusing to delete without filters")
        rows = self._tables.get(table, [])
        kept = [row for row in rows if not matches(row, filters)]
        self._tables[table] = kept
        return len(rows) - len(kept)

    def _record(self, operation: str, table: str, error: type) -> None:
        self.calls.append((operation, table))
        remaining = self._failures.get((operation, table), 0)
        if remaining:
            self._failures[(operation, table)] = remaining - 1
            raise error(table, f"injected {operation} failure")

    def _next_created_at(self) -> datetime:
        now = self._now()
        if self._last_created_at is not None and now < self._last_created_at:
            now = self._last_created_at
        self._last_created_at = now
        return now


def _order_key(value: Any) -> tuple:
    if value is None:
        return (0, "")
    if isinstance(value, datetime):
        return (1, value)
    if isinstance(value, str):
        try:
            return (1, parse_timestamp(value))
        except MalformedEvent:
            return (2, value)
    return (1, value)
