"""Persist-then-broadcast handling of send, edit and delete.

Each operation writes to the store first and only then computes who should
hear about it. The result is a list of ``Delivery`` effects which the caller
hands to ``SessionGateway.deliver``; nothing here touches a socket.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from fastapi.concurrency import run_in_threadpool

from database import ChatStore
from errors import StoreError, ValidationError
from gateway import Delivery, Session, SessionGateway
from schemas import (
    Message,
    MessageAckPayload,
    MessageDeletedPayload,
    MessageEditedPayload,
    MessagePayload,
)

logger = logging.getLogger(__name__)

NEW_MESSAGE = "newMessage"
MESSAGE_ACK = "messageAck"
MESSAGE_EDITED = "messageEdited"
MESSAGE_DELETED = "messageDeleted"


@dataclass
class Outcome:
    message: Message
    deliveries: List[Delivery] = field(default_factory=list)


def _require_text(text: Optional[str]) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise ValidationError("Message text must not be empty", code="empty_text")
    return cleaned


class BroadcastEngine:
    def __init__(self, store: ChatStore, gateway: SessionGateway, *, unknown_author_name: str = "Unknown") -> None:
        self.store = store
        self.gateway = gateway
        self.unknown_author_name = unknown_author_name

    async def _author_name(self, user_id: str) -> str:
        try:
            names = await run_in_threadpool(self.store.user_names, [user_id])
        except StoreError:
            logger.warning("Name lookup for %s failed, using placeholder", user_id)
            return self.unknown_author_name
        name = names.get(user_id)
        if name is None:
            logger.warning("No user %s for message author, using placeholder", user_id)
            return self.unknown_author_name
        return name

    async def send_message(
        self,
        session: Session,
        conversation_id: int,
        text: str,
        client_timestamp: Optional[datetime] = None,
    ) -> Outcome:
        cleaned = _require_text(text)
        message = await run_in_threadpool(
            self.store.insert_message,
            conversation_id,
            session.user_id,
            cleaned,
            client_timestamp=client_timestamp,
        )
        logger.info("Message %s stored in conversation %s by %s", message.id, conversation_id, session.user_id)

        payload = MessagePayload(
            id=message.id,
            text=message.text,
            conversation_id=conversation_id,
            author_user_id=session.user_id,
            author_name=await self._author_name(session.user_id),
            timestamp=message.timestamp,
        )
        ack = MessageAckPayload(**payload.model_dump(), client_timestamp=message.client_timestamp)

        room = await self.gateway.members_of(conversation_id)
        return Outcome(
            message=message,
            deliveries=[
                Delivery(targets=room - {session.id}, event=NEW_MESSAGE, data=payload.to_wire()),
                Delivery(targets=frozenset({session.id}), event=MESSAGE_ACK, data=ack.to_wire()),
            ],
        )

    async def edit_message(self, user_id: str, message_id: int, new_text: str) -> Outcome:
        cleaned = _require_text(new_text)
        message = await run_in_threadpool(self.store.edit_message, message_id, user_id, cleaned)
        logger.info("Message %s edited by %s", message_id, user_id)
        room = await self.gateway.members_of(message.conversation_id)
        payload = MessageEditedPayload(message_id=message.id, new_text=message.text)
        return Outcome(message=message, deliveries=[Delivery(targets=room, event=MESSAGE_EDITED, data=payload.to_wire())])

    async def delete_message(self, user_id: str, message_id: int) -> Outcome:
        message = await run_in_threadpool(self.store.delete_message, message_id, user_id)
        logger.info("Message %s deleted by %s", message_id, user_id)
        room = await self.gateway.members_of(message.conversation_id)
        payload = MessageDeletedPayload(message_id=message.id)
        return Outcome(message=message, deliveries=[Delivery(targets=room, event=MESSAGE_DELETED, data=payload.to_wire())])
