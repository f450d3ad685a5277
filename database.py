"""MongoDB persistence for users, conversations, membership and messages.

All reads and writes of the chat backend go through ``ChatStore``. Methods are
blocking (pymongo); async callers wrap them in ``run_in_threadpool``.
"""

from __future__ import annotations

import functools
import logging
import secrets
import string
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ASCENDING, MongoClient, ReturnDocument
from pymongo.collection import Collection
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import AuthorizationError, NotFoundError, StoreError
from schemas import Conversation, Message, User

logger = logging.getLogger(__name__)

USERS = "user"
CONVERSATIONS = "conversation"
MEMBERSHIP = "membership"
MESSAGES = "message"
COUNTERS = "counter"
DIRECT_PAIRS = "direct_pair"

USER_ID_LENGTH = 5
USER_ID_ALPHABET = string.ascii_uppercase + string.digits
_USER_ID_ATTEMPTS = 20


def connect(database_url: str, database_name: str) -> Database:
    """Return a database handle; the client connects on first use."""
    client = MongoClient(database_url, connect=False, tz_aware=True)
    return client[database_name]


def to_bson_time(value: datetime) -> datetime:
    """UTC-aware datetime at the millisecond precision BSON stores."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def _now() -> datetime:
    return to_bson_time(datetime.now(timezone.utc))


def _pair_key(user_a: str, user_b: str) -> str:
    return ":".join(sorted([user_a, user_b]))


def _store_call(func):
    """Translate pymongo failures into StoreError."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except PyMongoError as exc:
            logger.exception("Store operation %s failed", func.__name__)
            raise StoreError("Storage is unavailable, please retry") from exc

    return wrapper


def _user(doc: Dict[str, Any]) -> User:
    return User(id=doc["_id"], name=doc["name"], password_hash=doc["password_hash"])


def _conversation(doc: Dict[str, Any]) -> Conversation:
    return Conversation(
        id=doc["_id"],
        display_name=doc.get("display_name"),
        group_name=doc.get("group_name"),
    )


def _message(doc: Dict[str, Any]) -> Message:
    return Message(
        id=doc["_id"],
        conversation_id=doc["conversation_id"],
        author_id=doc["author_id"],
        text=doc["text"],
        timestamp=to_bson_time(doc["timestamp"]),
        client_timestamp=to_bson_time(doc["client_timestamp"]) if doc.get("client_timestamp") else None,
        edited=doc.get("edited", False),
    )


class ChatStore:
    def __init__(self, db: Database):
        self.db = db

    def _collection(self, name: str) -> Collection:
        if self.db is None:
            raise StoreError("Database is not initialized")
        return self.db[name]

    # -----------------------------
    # Generic document helpers
    # -----------------------------

    def create_document(self, collection_name: str, data: Dict[str, Any]) -> Any:
        now = _now()
        data["created_at"] = now
        data["updated_at"] = now
        result = self._collection(collection_name).insert_one(data)
        return result.inserted_id

    def get_documents(
        self,
        collection_name: str,
        filter_dict: Dict[str, Any] | None = None,
        limit: int = 100,
        sort: Optional[list] = None,
    ) -> List[Dict[str, Any]]:
        cursor = self._collection(collection_name).find(filter_dict or {})
        if sort:
            cursor = cursor.sort(sort)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def update_document(self, collection_name: str, filter_dict: Dict[str, Any], update_dict: Dict[str, Any]) -> int:
        update_dict["updated_at"] = _now()
        result = self._collection(collection_name).update_one(filter_dict, {"$set": update_dict})
        return result.modified_count

    def next_id(self, counter: str) -> int:
        doc = self._collection(COUNTERS).find_one_and_update(
            {"_id": counter},
            {"$inc": {"seq": 1}},
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        return int(doc["seq"])

    @_store_call
    def ensure_indexes(self) -> None:
        self._collection(MEMBERSHIP).create_index(
            [("conversation_id", ASCENDING), ("user_id", ASCENDING)], unique=True
        )
        self._collection(MEMBERSHIP).create_index([("user_id", ASCENDING)])
        self._collection(MESSAGES).create_index([("conversation_id", ASCENDING), ("timestamp", ASCENDING)])
        self._collection(USERS).create_index([("name", ASCENDING)])

    # -----------------------------
    # Users
    # -----------------------------

    @_store_call
    def create_user(self, name: str, password_hash: str) -> User:
        for _ in range(_USER_ID_ATTEMPTS):
            user_id = "".join(secrets.choice(USER_ID_ALPHABET) for _ in range(USER_ID_LENGTH))
            doc = {"_id": user_id, "name": name, "password_hash": password_hash}
            try:
                self.create_document(USERS, doc)
            except DuplicateKeyError:
                continue
            return _user(doc)
        raise StoreError("Could not allocate a user id")

    @_store_call
    def get_user(self, user_id: str) -> Optional[User]:
        doc = self._collection(USERS).find_one({"_id": user_id})
        return _user(doc) if doc else None

    @_store_call
    def user_names(self, user_ids: Iterable[str]) -> Dict[str, str]:
        ids = list(set(user_ids))
        if not ids:
            return {}
        docs = self._collection(USERS).find({"_id": {"$in": ids}}, {"name": 1})
        return {doc["_id"]: doc["name"] for doc in docs}

    @_store_call
    def find_user_by_name(self, name: str) -> User:
        """Resolve a display name to exactly one user; ambiguity counts as not found."""
        docs = self.get_documents(USERS, {"name": name}, limit=2)
        if len(docs) != 1:
            raise NotFoundError(f"No single user named {name!r}", details={"name": name, "matches": len(docs)})
        return _user(docs[0])

    # -----------------------------
    # Conversations & membership
    # -----------------------------

    @_store_call
    def create_conversation(
        self,
        member_ids: List[str],
        *,
        group_name: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Conversation:
        conversation_id = self.next_id(CONVERSATIONS)
        self.create_document(
            CONVERSATIONS,
            {"_id": conversation_id, "display_name": display_name, "group_name": group_name},
        )
        self.add_members(conversation_id, member_ids)
        return Conversation(id=conversation_id, display_name=display_name, group_name=group_name)

    @_store_call
    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        doc = self._collection(CONVERSATIONS).find_one({"_id": conversation_id})
        return _conversation(doc) if doc else None

    @_store_call
    def get_conversations(self, conversation_ids: Iterable[int]) -> List[Conversation]:
        docs = self._collection(CONVERSATIONS).find({"_id": {"$in": list(conversation_ids)}}).sort("_id", ASCENDING)
        return [_conversation(doc) for doc in docs]

    @_store_call
    def rename_conversation(self, conversation_id: int, group_name: str) -> None:
        """Give a conversation a group name; it stops being the direct chat of its pair."""
        self.update_document(CONVERSATIONS, {"_id": conversation_id}, {"group_name": group_name})
        self._collection(DIRECT_PAIRS).delete_many({"conversation_id": conversation_id})

    @_store_call
    def open_direct_conversation(self, user_a: str, user_b: str) -> Conversation:
        """Return the one-to-one conversation of a pair, creating it if needed.

        The pair key is the ``_id`` of a ``direct_pair`` document, so of two
        concurrent creators only one insert succeeds; the other drops its fresh
        conversation and returns the winner's.
        """
        key = _pair_key(user_a, user_b)
        pairs = self._collection(DIRECT_PAIRS)
        pair = pairs.find_one({"_id": key})
        if pair is not None:
            existing = self.get_conversation(pair["conversation_id"])
            if existing is not None:
                return existing
            pairs.delete_one({"_id": key, "conversation_id": pair["conversation_id"]})

        conversation = self.create_conversation([user_a, user_b])
        try:
            pairs.insert_one({"_id": key, "conversation_id": conversation.id, "created_at": _now()})
        except DuplicateKeyError:
            self._collection(MEMBERSHIP).delete_many({"conversation_id": conversation.id})
            self._collection(CONVERSATIONS).delete_one({"_id": conversation.id})
            winner = pairs.find_one({"_id": key})
            logger.info("Direct conversation for %s already created as %s", key, winner["conversation_id"])
            return self.get_conversation(winner["conversation_id"])
        return conversation

    @_store_call
    def add_members(self, conversation_id: int, user_ids: Iterable[str]) -> int:
        """Add users to a conversation; existing members are left as they are."""
        added = 0
        col = self._collection(MEMBERSHIP)
        for user_id in dict.fromkeys(user_ids):
            key = {"conversation_id": conversation_id, "user_id": user_id}
            result = col.update_one(key, {"$setOnInsert": {"created_at": _now()}}, upsert=True)
            if result.upserted_id is not None:
                added += 1
        return added

    @_store_call
    def member_ids(self, conversation_id: int) -> List[str]:
        docs = self._collection(MEMBERSHIP).find({"conversation_id": conversation_id}).sort("created_at", ASCENDING)
        return [doc["user_id"] for doc in docs]

    @_store_call
    def is_member(self, conversation_id: int, user_id: str) -> bool:
        return self._collection(MEMBERSHIP).find_one({"conversation_id": conversation_id, "user_id": user_id}) is not None

    @_store_call
    def conversation_ids_for(self, user_id: str) -> List[int]:
        docs = self._collection(MEMBERSHIP).find({"user_id": user_id})
        return sorted(doc["conversation_id"] for doc in docs)

    # -----------------------------
    # Messages
    # -----------------------------

    @_store_call
    def insert_message(
        self,
        conversation_id: int,
        author_id: str,
        text: str,
        *,
        timestamp: Optional[datetime] = None,
        client_timestamp: Optional[datetime] = None,
    ) -> Message:
        message_id = self.next_id(MESSAGES)
        doc = {
            "_id": message_id,
            "conversation_id": conversation_id,
            "author_id": author_id,
            "text": text,
            "timestamp": to_bson_time(timestamp) if timestamp else _now(),
            "client_timestamp": to_bson_time(client_timestamp) if client_timestamp else None,
            "edited": False,
        }
        self.create_document(MESSAGES, doc)
        return _message(doc)

    @_store_call
    def get_message(self, message_id: int) -> Optional[Message]:
        doc = self._collection(MESSAGES).find_one({"_id": message_id})
        return _message(doc) if doc else None

    def _missing_or_forbidden(self, message_id: int) -> Exception:
        if self._collection(MESSAGES).find_one({"_id": message_id}, {"_id": 1}) is None:
            return NotFoundError(f"Message {message_id} not found")
        return AuthorizationError("Only the author can change this message")

    @_store_call
    def edit_message(self, message_id: int, author_id: str, new_text: str) -> Message:
        """Atomically replace the text of a message owned by ``author_id``."""
        doc = self._collection(MESSAGES).find_one_and_update(
            {"_id": message_id, "author_id": author_id},
            {"$set": {"text": new_text, "edited": True, "updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            raise self._missing_or_forbidden(message_id)
        return _message(doc)

    @_store_call
    def delete_message(self, message_id: int, author_id: str) -> Message:
        """Atomically remove a message owned by ``author_id`` and return it."""
        doc = self._collection(MESSAGES).find_one_and_delete({"_id": message_id, "author_id": author_id})
        if doc is None:
            raise self._missing_or_forbidden(message_id)
        return _message(doc)

    @_store_call
    def messages_for(self, conversation_id: int, limit: int = 200) -> List[Message]:
        """Most recent ``limit`` messages of a conversation, oldest first."""
        docs = self.get_documents(
            MESSAGES,
            {"conversation_id": conversation_id},
            limit=limit,
            sort=[("timestamp", -1), ("_id", -1)],
        )
        return [_message(doc) for doc in reversed(docs)]
