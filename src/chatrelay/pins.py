from __future__ import annotations

from typing import Dict, Iterable

from .store import PINS, Store, eq, in_


class PinRegistry:
    """Pinned state per message within one conversation.

    Any conversation member may pin or unpin any message; there is no
    ownership check on ``pinned_by``.
    """

    def __init__(self, store: Store, conversation_id: str) -> None:
        self.store = store
        self.conversation_id = conversation_id
        self._pins: Dict[str, bool] = {}

    async def refresh(self, message_ids: Iterable[str]) -> None:
        ids = sorted({str(message_id) for message_id in message_ids})
        if not ids:
            self._pins = {}
            return
        rows = await self.store.query(
            PINS,
            [eq("conversation_id", self.conversation_id), in_("message_id", ids)],
        )
        self._pins = {str(row["message_id"]): True for row in rows}

    async def refresh_message(self, message_id: str) -> bool:
        rows = await self.store.query(
            PINS,
            [eq("conversation_id", self.conversation_id), eq("message_id", message_id)],
        )
        pinned = bool(rows)
        self._pins[str(message_id)] = pinned
        return pinned

    def is_pinned(self, message_id: str) -> bool:
        return self._pins.get(str(message_id), False)

    def pinned_ids(self) -> list[str]:
        return sorted(message_id for message_id, pinned in self._pins.items() if pinned)

    async def toggle(self, message_id: str, user_id: str) -> bool:
        message_id = str(message_id)
        if self.is_pinned(message_id):
            await self.store.delete(
                PINS,
                [eq("conversation_id", self.conversation_id), eq("message_id", message_id)],
            )
        else:
            await self.store.insert(
                PINS,
                {"conversation_id": self.conversation_id, "message_id": message_id, "pinned_by": user_id},
            )
        return await self.refresh_message(message_id)
