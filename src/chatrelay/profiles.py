from __future__ import annotations

from typing import Dict, Iterable

from .store import PROFILES, Store, in_

DEFAULT_DISPLAY_NAME = "User"


class ProfileDirectory:
    """Read-only author display names for the loaded messages."""

    def __init__(self, store: Store, default_name: str = DEFAULT_DISPLAY_NAME) -> None:
        self.store = store
        self.default_name = default_name
        self._names: Dict[str, str] = {}

    async def refresh(self, user_ids: Iterable[str]) -> None:
        ids = sorted({str(user_id) for user_id in user_ids})
        if not ids:
            return
        rows = await self.store.query(PROFILES, [in_("id", ids)])
        self._names = {
            str(row["id"]): str(row["display_name"]) for row in rows if row.get("display_name")
        }

    def display_name(self, user_id: str) -> str:
        return self._names.get(str(user_id), self.default_name)
