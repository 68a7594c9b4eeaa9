"""Leaderboard position tracking between successive reads."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Sequence

from pydantic import BaseModel


class RankingChange(BaseModel):
    user_id: str
    old_position: int
    new_position: int
    direction: str  # "up" or "down"


class RankingTracker:
    """Remember the last leaderboard order and report who moved.

    Positions are zero-based indexes into the leaderboard list. Users that
    are new to the board are not reported.
    """

    def __init__(self, user_field: str = "user_id"):
        self.user_field = user_field
        self._previous: Dict[str, int] = {}

    def update(self, leaderboard: Sequence[Mapping[str, Any]]) -> List[RankingChange]:
        if not leaderboard:
            return []
        changes = []
        current: Dict[str, int] = {}
        for index, row in enumerate(leaderboard):
            user_id = str(row[self.user_field])
            current[user_id] = index
            old = self._previous.get(user_id)
            if old is not None and old != index:
                changes.append(
                    RankingChange(
                        user_id=user_id,
                        old_position=old,
                        new_position=index,
                        direction="up" if index < old else "down",
                    )
                )
        self._previous = current
        return changes
