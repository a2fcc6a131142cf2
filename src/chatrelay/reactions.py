from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List

from .store import REACTIONS, Store, eq, in_

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Reaction:
    message_id: str
    user_id: str
    emoji: str

    @classmethod
    def from_row(cls, row: dict) -> "Reaction":
        return cls(message_id=str(row["message_id"]), user_id=str(row["user_id"]), emoji=str(row["emoji"]))


@dataclass(frozen=True)
class ReactionSummary:
    emoji: str
    count: int
    reacted: bool


class ReactionAggregator:
    """Per-message reaction rows, replaced wholesale on refresh."""

    def __init__(self, store: Store) -> None:
        self.store = store
        self._reactions: Dict[str, List[Reaction]] = {}

    async def refresh(self, message_ids: Iterable[str]) -> None:
        ids = sorted({str(message_id) for message_id in message_ids})
        if not ids:
            self._reactions = {}
            return
        rows = await self.store.query(REACTIONS, [in_("message_id", ids)])
        reactions: Dict[str, List[Reaction]] = {}
        for row in rows:
            reaction = Reaction.from_row(row)
            reactions.setdefault(reaction.message_id, []).append(reaction)
        self._reactions = reactions

    async def refresh_message(self, message_id: str) -> None:
        rows = await self.store.query(REACTIONS, [eq("message_id", message_id)])
        self._reactions[str(message_id)] = [Reaction.from_row(row) for row in rows]

    def has_reacted(self, message_id: str, user_id: str, emoji: str) -> bool:
        return any(
            reaction.user_id == user_id and reaction.emoji == emoji
            for reaction in self._reactions.get(str(message_id), [])
        )

    async def toggle(self, message_id: str, user_id: str, emoji: str) -> bool:
        """Remove the reaction if present, add it otherwise; returns the new state.

        Two toggles racing for the same triple are not serialised: whichever
        store response lands last wins.
        """

        message_id = str(message_id)
        if self.has_reacted(message_id, user_id, emoji):
            await self.store.delete(
                REACTIONS,
                [eq("message_id", message_id), eq("user_id", user_id), eq("emoji", emoji)],
            )
        else:
            await self.store.insert(REACTIONS, {"message_id": message_id, "user_id": user_id, "emoji": emoji})
        await self.refresh_message(message_id)
        return self.has_reacted(message_id, user_id, emoji)

    def rows(self, message_id: str) -> List[Reaction]:
        return list(self._reactions.get(str(message_id), []))

    def view(self, message_id: str, user_id: str | None, emojis: Iterable[str]) -> List[ReactionSummary]:
        reactions = self._reactions.get(str(message_id), [])
        summaries = []
        for emoji in emojis:
            matching = [reaction for reaction in reactions if reaction.emoji == emoji]
            summaries.append(
                ReactionSummary(
                    emoji=emoji,
                    count=len(matching),
                    reacted=user_id is not None and any(r.user_id == user_id for r in matching),
                )
            )
        return summaries

    def visible(self, message_id: str, user_id: str | None, emojis: Iterable[str]) -> List[ReactionSummary]:
        return [summary for summary in self.view(message_id, user_id, emojis) if summary.count > 0]
