"""Conversation and membership management behind the REST surface."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

from database import ChatStore
from errors import NotFoundError, ValidationError
from schemas import Conversation, ConversationSummary, ConversationView, Message, MessageView, Participant

logger = logging.getLogger(__name__)


def default_group_name(conversation_id: int) -> str:
    return f"Group {conversation_id}"


def display_name_for(conversation: Conversation, participants: List[Participant], viewer_id: str) -> str:
    """Name of a conversation as seen by ``viewer_id``.

    A two-person conversation without a group name shows the other person's
    name, so each side sees its peer.
    """
    if conversation.group_name:
        return conversation.group_name
    if conversation.display_name:
        return conversation.display_name
    if len(participants) > 2:
        return default_group_name(conversation.id)
    others = [p for p in participants if p.user_id != viewer_id]
    if others:
        return others[0].name
    if participants:
        return participants[0].name
    return f"Conversation {conversation.id}"


def _require_user(store: ChatStore, user_id: str) -> None:
    if store.get_user(user_id) is None:
        raise NotFoundError(f"User {user_id} not found")


def _require_conversation(store: ChatStore, conversation_id: int) -> Conversation:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise NotFoundError(f"Conversation {conversation_id} not found")
    return conversation


def _resolve_names(store: ChatStore, member_names: List[str]) -> List[str]:
    names = [n.strip() for n in member_names if n and n.strip()]
    return [store.find_user_by_name(name).id for name in names]


def _participants(store: ChatStore, member_ids: List[str], names: Optional[Dict[str, str]] = None) -> List[Participant]:
    if names is None:
        names = store.user_names(member_ids)
    return [Participant(user_id=uid, name=names.get(uid, uid)) for uid in member_ids]


def _summary(store: ChatStore, conversation_id: int) -> ConversationSummary:
    conversation = _require_conversation(store, conversation_id)
    return ConversationSummary(
        conversation_id=conversation.id,
        group_name=conversation.group_name,
        participants=_participants(store, store.member_ids(conversation.id)),
    )


def _name_if_crowded(store: ChatStore, conversation: Conversation) -> None:
    if conversation.group_name:
        return
    if len(store.member_ids(conversation.id)) > 2:
        store.rename_conversation(conversation.id, default_group_name(conversation.id))


def open_direct(store: ChatStore, user_a: str, user_b: str) -> ConversationSummary:
    """Return the one-to-one conversation between two users, creating it if needed."""
    if user_a == user_b:
        raise ValidationError("Cannot create a conversation with yourself", code="self_conversation")
    _require_user(store, user_a)
    _require_user(store, user_b)

    conversation = store.open_direct_conversation(user_a, user_b)
    logger.info("Opened conversation %s between %s and %s", conversation.id, user_a, user_b)
    return _summary(store, conversation.id)


def create_group(
    store: ChatStore,
    creator_id: str,
    group_name: Optional[str],
    member_names: List[str],
) -> ConversationSummary:
    _require_user(store, creator_id)
    member_ids = [creator_id] + _resolve_names(store, member_names)
    conversation = store.create_conversation(member_ids, group_name=(group_name or "").strip() or None)
    _name_if_crowded(store, conversation)
    logger.info("Created group conversation %s with %d members", conversation.id, len(set(member_ids)))
    return _summary(store, conversation.id)


def add_members(
    store: ChatStore,
    conversation_id: int,
    member_names: List[str],
    group_name: Optional[str] = None,
) -> ConversationSummary:
    conversation = _require_conversation(store, conversation_id)
    member_ids = _resolve_names(store, member_names)
    added = store.add_members(conversation_id, member_ids)
    group_name = (group_name or "").strip()
    if group_name:
        store.rename_conversation(conversation_id, group_name)
    else:
        _name_if_crowded(store, conversation)
    logger.info("Added %d members to conversation %s", added, conversation_id)
    return _summary(store, conversation_id)


def _message_view(message: Message, names: Dict[str, str], unknown_author_name: str) -> MessageView:
    return MessageView(
        id=message.id,
        conversation_id=message.conversation_id,
        author_user_id=message.author_id,
        author_name=names.get(message.author_id, unknown_author_name),
        text=message.text,
        timestamp=message.timestamp,
        edited=message.edited,
    )


def history(
    store: ChatStore,
    conversation_id: int,
    *,
    limit: int = 200,
    unknown_author_name: str = "Unknown",
) -> List[MessageView]:
    _require_conversation(store, conversation_id)
    messages = store.messages_for(conversation_id, limit=limit)
    names = store.user_names(m.author_id for m in messages)
    return [_message_view(m, names, unknown_author_name) for m in messages]


def list_for_user(
    store: ChatStore,
    user_id: str,
    *,
    limit: int = 200,
    unknown_author_name: str = "Unknown",
) -> List[ConversationView]:
    _require_user(store, user_id)
    views = []
    for conversation in store.get_conversations(store.conversation_ids_for(user_id)):
        member_ids = store.member_ids(conversation.id)
        messages = store.messages_for(conversation.id, limit=limit)
        names = store.user_names(member_ids + [m.author_id for m in messages])
        participants = _participants(store, member_ids, names)
        views.append(
            ConversationView(
                conversation_id=conversation.id,
                display_name=display_name_for(conversation, participants, user_id),
                messages=[_message_view(m, names, unknown_author_name) for m in messages],
                participants=participants,
            )
        )
    return views
