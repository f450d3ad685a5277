from __future__ import annotations

import os
import socket
from datetime import datetime, timezone
from typing import Any, List, Optional

import mongomock
import pytest

# Keep .env files of a developer checkout out of the test run.
os.environ.setdefault("APP_ENV", "test")

from accounts import hash_password  # noqa: E402
from config import Settings  # noqa: E402
from database import CONVERSATIONS, MESSAGES, USERS, ChatStore, to_bson_time  # noqa: E402
from main import create_app  # noqa: E402


class NetworkBlockedError(RuntimeError):
    pass


def _blocked(*_args: Any, **_kwargs: Any) -> Any:
    raise NetworkBlockedError(
        "Network access is disabled during tests. "
        "Mark the test with @pytest.mark.integration/@pytest.mark.network or set ALLOW_NETWORK=1."
    )


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest) -> None:
    """Prevent accidental outbound network calls (e.g. a real MongoDB) in unit tests."""

    if os.getenv("ALLOW_NETWORK") == "1":
        return

    if request.node.get_closest_marker("integration") or request.node.get_closest_marker("network"):
        return

    monkeypatch.setattr(socket, "create_connection", _blocked)
    monkeypatch.setattr(socket, "getaddrinfo", _blocked)


class RecordingTransport:
    """Stands in for a WebSocket; keeps every frame sent to it."""

    def __init__(self, *, fail: bool = False) -> None:
        self.frames: List[dict] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(data)

    def of_type(self, event: str) -> List[Any]:
        return [f["data"] for f in self.frames if f["type"] == event]


class Seeder:
    def __init__(self, store: ChatStore) -> None:
        self.store = store

    def user(self, user_id: str, name: str, password: str = "secret") -> str:
        self.store.create_document(USERS, {"_id": user_id, "name": name, "password_hash": hash_password(password)})
        return user_id

    def conversation(self, conversation_id: int, members: List[str], group_name: Optional[str] = None) -> int:
        self.store.create_document(
            CONVERSATIONS, {"_id": conversation_id, "display_name": None, "group_name": group_name}
        )
        self.store.add_members(conversation_id, members)
        return conversation_id

    def message(self, message_id: int, conversation_id: int, author_id: str, text: str) -> int:
        self.store.create_document(
            MESSAGES,
            {
                "_id": message_id,
                "conversation_id": conversation_id,
                "author_id": author_id,
                "text": text,
                "timestamp": to_bson_time(datetime.now(timezone.utc)),
                "client_timestamp": None,
                "edited": False,
            },
        )
        return message_id


@pytest.fixture
def store() -> ChatStore:
    chat_store = ChatStore(mongomock.MongoClient(tz_aware=True)["chat_test"])
    chat_store.ensure_indexes()
    return chat_store


@pytest.fixture
def seed(store: ChatStore) -> Seeder:
    return Seeder(store)


@pytest.fixture
def make_transport():
    return RecordingTransport


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def app(store: ChatStore, settings: Settings):
    return create_app(store=store, settings=settings)


@pytest.fixture
def client(app):
    from fastapi.testclient import TestClient

    with TestClient(app) as test_client:
        yield test_client
