"""Live session lifecycle and outbound delivery.

The gateway owns the room index: every join, leave and disconnect goes through
it, and it is the only place that writes to a session's transport.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Protocol, Set

from rooms import RoomIndex

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send_json(self, data: Any) -> None: ...


@dataclass
class Session:
    id: str
    user_id: str
    transport: Transport
    rooms: Set[int] = field(default_factory=set)

    @property
    def current_room(self) -> Optional[int]:
        return next(iter(self.rooms), None)


@dataclass(frozen=True)
class Delivery:
    """One outbound event and the sessions that should receive it."""

    targets: FrozenSet[str]
    event: str
    data: Any

    def frame(self) -> Dict[str, Any]:
        return {"type": self.event, "data": self.data}


class SessionGateway:
    def __init__(self, rooms: Optional[RoomIndex] = None) -> None:
        self._rooms = rooms if rooms is not None else RoomIndex()
        self._sessions: Dict[str, Session] = {}

    def session(self, session_id: str) -> Optional[Session]:
        return self._sessions.get(session_id)

    async def connect(self, user_id: str, transport: Transport) -> str:
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = Session(id=session_id, user_id=user_id, transport=transport)
        logger.info("Session %s connected for user %s", session_id, user_id)
        return session_id

    async def join(self, session_id: str, conversation_id: int) -> bool:
        """Move the session into ``conversation_id``, leaving its previous room.

        Returns False when the session was already there.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False
        if conversation_id in session.rooms:
            return False
        for previous in list(session.rooms):
            await self.leave(session_id, previous)
        await self._rooms.add(conversation_id, session_id)
        session.rooms.add(conversation_id)
        logger.debug("Session %s joined room %s", session_id, conversation_id)
        return True

    async def leave(self, session_id: str, conversation_id: int) -> bool:
        session = self._sessions.get(session_id)
        if session is not None:
            session.rooms.discard(conversation_id)
        removed = await self._rooms.remove(conversation_id, session_id)
        if removed:
            logger.debug("Session %s left room %s", session_id, conversation_id)
        return removed

    async def disconnect(self, session_id: str) -> None:
        session = self._sessions.pop(session_id, None)
        if session is None:
            return
        await self._rooms.remove_everywhere(session_id, set(session.rooms))
        session.rooms.clear()
        logger.info("Session %s disconnected (user %s)", session_id, session.user_id)

    async def members_of(self, conversation_id: int) -> FrozenSet[str]:
        return await self._rooms.members_of(conversation_id)

    async def deliver(self, deliveries: Iterable[Delivery]) -> None:
        sends = []
        for delivery in deliveries:
            frame = delivery.frame()
            for session_id in delivery.targets:
                session = self._sessions.get(session_id)
                if session is None:
                    # Disconnected after the snapshot was taken.
                    continue
                sends.append(self._safe_send(session, frame))
        if sends:
            await asyncio.gather(*sends)

    async def _safe_send(self, session: Session, frame: Dict[str, Any]) -> None:
        try:
            await session.transport.send_json(frame)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Delivery of %s to session %s failed: %s", frame["type"], session.id, exc)
