"""In-memory index of which live sessions are joined to which conversation."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, FrozenSet, Set


class RoomIndex:
    """Conversation id -> set of session ids.

    Only the session gateway mutates an index; everyone else reads snapshots
    through ``members_of``.
    """

    def __init__(self) -> None:
        self._rooms: Dict[int, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    async def add(self, conversation_id: int, session_id: str) -> None:
        async with self._lock:
            self._rooms[conversation_id].add(session_id)

    async def remove(self, conversation_id: int, session_id: str) -> bool:
        async with self._lock:
            return self._discard(conversation_id, session_id)

    async def remove_everywhere(self, session_id: str, rooms: Set[int]) -> None:
        async with self._lock:
            for conversation_id in rooms:
                self._discard(conversation_id, session_id)

    def _discard(self, conversation_id: int, session_id: str) -> bool:
        sessions = self._rooms.get(conversation_id)
        if not sessions or session_id not in sessions:
            return False
        sessions.discard(session_id)
        if not sessions:
            self._rooms.pop(conversation_id, None)
        return True

    async def members_of(self, conversation_id: int) -> FrozenSet[str]:
        async with self._lock:
            return frozenset(self._rooms.get(conversation_id, ()))
