"""Inbound real-time events of one session, routed to the gateway and engine."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Union

from fastapi.concurrency import run_in_threadpool
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from broadcast import BroadcastEngine
from database import ChatStore
from errors import AuthorizationError, ChatError, NotFoundError, ValidationError
from gateway import Delivery, Session, SessionGateway
from schemas import DeleteMessageEvent, EditMessageEvent, Envelope, SendMessageEvent

logger = logging.getLogger(__name__)

JOIN_ROOM = "joinRoom"
LEAVE_ROOM = "leaveRoom"
SEND_MESSAGE = "sendMessage"
EDIT_MESSAGE = "editMessage"
DELETE_MESSAGE = "deleteMessage"

CONNECTED = "connected"
ROOM_JOINED = "roomJoined"
ROOM_LEFT = "roomLeft"
ERROR = "error"

Handler = Callable[[Session, Any], Awaitable[List[Delivery]]]

_conversation_id = TypeAdapter(int)


def _room_id(data: Any) -> int:
    if isinstance(data, dict):
        data = data.get("conversationId")
    return _conversation_id.validate_python(data)


def _to_self(session: Session, event: str, data: Any) -> Delivery:
    return Delivery(targets=frozenset({session.id}), event=event, data=data)


class EventChannel:
    def __init__(
        self,
        store: ChatStore,
        gateway: SessionGateway,
        engine: BroadcastEngine,
        *,
        strict_room_join: bool = True,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.engine = engine
        self.strict_room_join = strict_room_join
        self._handlers: Dict[str, Handler] = {
            JOIN_ROOM: self._on_join,
            LEAVE_ROOM: self._on_leave,
            SEND_MESSAGE: self._on_send,
            EDIT_MESSAGE: self._on_edit,
            DELETE_MESSAGE: self._on_delete,
        }

    async def open(self, user_id: str, transport) -> str:
        session_id = await self.gateway.connect(user_id, transport)
        session = self.gateway.session(session_id)
        await self.gateway.deliver([_to_self(session, CONNECTED, {"sessionId": session_id, "userId": user_id})])
        return session_id

    async def close(self, session_id: str) -> None:
        await self.gateway.disconnect(session_id)

    async def handle(self, session_id: str, raw: Union[str, bytes]) -> None:
        """Process one inbound frame; failures become an ``error`` event for the sender only."""
        session = self.gateway.session(session_id)
        if session is None:
            return
        try:
            envelope = Envelope.model_validate_json(raw)
            handler = self._handlers.get(envelope.type)
            if handler is None:
                raise ValidationError(f"Unknown event {envelope.type!r}", code="unknown_event")
            deliveries = await handler(session, envelope.data)
        except PydanticValidationError as exc:
            details = [{"loc": list(e["loc"]), "msg": e["msg"]} for e in exc.errors()]
            await self._reject(session, ValidationError("Invalid event payload", details=details))
            return
        except ChatError as exc:
            await self._reject(session, exc)
            return
        await self.gateway.deliver(deliveries)

    async def _reject(self, session: Session, exc: ChatError) -> None:
        logger.info("Rejected event from session %s: %s", session.id, exc.message)
        await self.gateway.deliver([_to_self(session, ERROR, exc.to_payload())])

    async def _on_join(self, session: Session, data: Any) -> List[Delivery]:
        conversation_id = _room_id(data)
        if self.strict_room_join:
            if await run_in_threadpool(self.store.get_conversation, conversation_id) is None:
                raise NotFoundError(f"Conversation {conversation_id} not found")
            if not await run_in_threadpool(self.store.is_member, conversation_id, session.user_id):
                raise AuthorizationError("You are not a member of this conversation", code="not_a_member")
        await self.gateway.join(session.id, conversation_id)
        return [_to_self(session, ROOM_JOINED, {"conversationId": conversation_id})]

    async def _on_leave(self, session: Session, data: Any) -> List[Delivery]:
        conversation_id = _room_id(data)
        await self.gateway.leave(session.id, conversation_id)
        return [_to_self(session, ROOM_LEFT, {"conversationId": conversation_id})]

    async def _on_send(self, session: Session, data: Any) -> List[Delivery]:
        event = SendMessageEvent.model_validate(data)
        if session.current_room != event.conversation_id:
            raise ValidationError("Join the conversation before sending to it", code="not_joined")
        outcome = await self.engine.send_message(session, event.conversation_id, event.text, event.client_timestamp)
        return outcome.deliveries

    async def _on_edit(self, session: Session, data: Any) -> List[Delivery]:
        event = EditMessageEvent.model_validate(data)
        outcome = await self.engine.edit_message(session.user_id, event.message_id, event.new_text)
        return outcome.deliveries

    async def _on_delete(self, session: Session, data: Any) -> List[Delivery]:
        event = DeleteMessageEvent.model_validate(data)
        outcome = await self.engine.delete_message(session.user_id, event.message_id)
        return outcome.deliveries
