from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case attributes in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# -----------------------------
# Stored entities
# -----------------------------

class User(BaseModel):
    id: str = Field(..., description="5-character alphanumeric user id")
    name: str = Field(..., description="Display name (not unique)")
    password_hash: str = Field(..., description="SHA-256 hex digest of the password")


class Conversation(BaseModel):
    id: int = Field(..., description="Store-assigned conversation id")
    display_name: Optional[str] = Field(None, description="Explicit display name")
    group_name: Optional[str] = Field(None, description="Group name for 3+ participants")


class Message(BaseModel):
    id: int = Field(..., description="Store-assigned message id")
    conversation_id: int = Field(..., description="Conversation the message belongs to")
    author_id: str = Field(..., description="User id of the author")
    text: str = Field(..., description="Message text content")
    timestamp: datetime = Field(..., description="Server-assigned creation time")
    client_timestamp: Optional[datetime] = Field(None, description="Send time reported by the client")
    edited: bool = Field(False, description="Whether the text was edited")


# -----------------------------
# REST requests
# -----------------------------

class AuthRequest(CamelModel):
    user_id: Optional[str] = None
    password: str
    name: Optional[str] = None


class DirectConversationRequest(CamelModel):
    user_a: str
    user_b: str


class GroupConversationRequest(CamelModel):
    creator_id: str
    group_name: Optional[str] = None
    member_names: List[str] = Field(default_factory=list)


class AddMembersRequest(CamelModel):
    member_names: List[str] = Field(default_factory=list)
    group_name: Optional[str] = None


class EditMessageRequest(CamelModel):
    user_id: str
    new_text: str


class DeleteMessageRequest(CamelModel):
    user_id: str


# -----------------------------
# REST responses
# -----------------------------

class AuthResponse(CamelModel):
    user_id: str
    name: str


class Participant(CamelModel):
    user_id: str
    name: str


class MessageView(CamelModel):
    id: int
    conversation_id: int
    author_user_id: str
    author_name: str
    text: str
    timestamp: datetime
    edited: bool = False


class ConversationView(CamelModel):
    conversation_id: int
    display_name: str
    messages: List[MessageView] = Field(default_factory=list)
    participants: List[Participant] = Field(default_factory=list)


class ConversationSummary(CamelModel):
    conversation_id: int
    group_name: Optional[str] = None
    participants: List[Participant] = Field(default_factory=list)


# -----------------------------
# Real-time events
# -----------------------------

class Envelope(BaseModel):
    """A single WebSocket frame: {"type": ..., "data": ...}."""

    type: str
    data: Any = None


class SendMessageEvent(CamelModel):
    text: str
    conversation_id: int
    client_timestamp: Optional[datetime] = None


class EditMessageEvent(CamelModel):
    message_id: int
    new_text: str


class DeleteMessageEvent(CamelModel):
    message_id: int


class MessagePayload(CamelModel):
    id: int
    text: str
    conversation_id: int
    author_user_id: str
    author_name: str
    timestamp: datetime


class MessageAckPayload(MessagePayload):
    client_timestamp: Optional[datetime] = None


class MessageEditedPayload(CamelModel):
    message_id: int
    new_text: str


class MessageDeletedPayload(CamelModel):
    message_id: int
