from __future__ import annotations

import threading
from datetime import datetime
from typing import Dict


class WatermarkStore:
    """Tracks the latest observed ``created_at`` per conversation."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._positions: Dict[str, datetime] = {}

    def initialize(self, conversation_id: str, value: datetime) -> datetime:
        """Seed the watermark, keeping monotonicity if one already exists."""

        return self.advance(conversation_id, value)

    def advance(self, conversation_id: str, candidate: datetime) -> datetime:
        """Move the watermark forward to ``candidate`` if it is newer."""

        with self._lock:
            current = self._positions.get(conversation_id)
            if current is None or candidate > current:
                self._positions[conversation_id] = candidate
                return candidate
            return current

    def get(self, conversation_id: str) -> datetime | None:
        return self._positions.get(conversation_id)

    def reset(self, conversation_id: str) -> None:
        with self._lock:
            self._positions.pop(conversation_id, None)
