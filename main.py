import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request, WebSocket, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware

import accounts
import conversations
from broadcast import BroadcastEngine
from channel import EventChannel
from config import Settings, get_settings
from database import ChatStore, connect
from errors import StoreError, register_exception_handlers
from gateway import SessionGateway
from log_config import setup_logging
from schemas import (
    AddMembersRequest,
    AuthRequest,
    AuthResponse,
    ConversationSummary,
    ConversationView,
    DeleteMessageRequest,
    DirectConversationRequest,
    EditMessageRequest,
    GroupConversationRequest,
    MessageDeletedPayload,
    MessageEditedPayload,
    MessageView,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def create_app(store: Optional[ChatStore] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)
    if store is None:
        store = ChatStore(connect(settings.database_url, settings.database_name))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            await run_in_threadpool(store.ensure_indexes)
        except StoreError:
            logger.warning("Database unreachable at startup; indexes not ensured")
        yield

    app = FastAPI(title="Chat API", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    gateway = SessionGateway()
    engine = BroadcastEngine(store, gateway, unknown_author_name=settings.unknown_author_name)
    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.engine = engine
    app.state.channel = EventChannel(store, gateway, engine, strict_room_join=settings.strict_room_join)

    app.include_router(router)
    return app


# -----------------------------
# Routes
# -----------------------------
def _store(request: Request) -> ChatStore:
    return request.app.state.store


@router.get("/")
def read_root():
    return {"message": "Chat API running"}


@router.get("/test")
def test_database(request: Request):
    store = _store(request)
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "❌ Not Set",
        "collections": [],
    }
    try:
        response["database_name"] = store.db.name
        response["collections"] = store.db.list_collection_names()
        response["database"] = "✅ Connected"
    except Exception as e:  # noqa: BLE001
        response["database"] = f"⚠️ {str(e)[:80]}"
    return response


# Auth
@router.post("/auth", response_model=AuthResponse)
def authenticate(payload: AuthRequest, request: Request):
    store = _store(request)
    if payload.user_id:
        user = accounts.login(store, payload.user_id, payload.password)
    else:
        user = accounts.register(store, payload.name, payload.password)
    return AuthResponse(user_id=user.id, name=user.name)


# Conversations
@router.get("/conversations/{user_id}", response_model=List[ConversationView])
def list_conversations(user_id: str, request: Request):
    settings = request.app.state.settings
    return conversations.list_for_user(
        _store(request),
        user_id,
        limit=settings.history_limit,
        unknown_author_name=settings.unknown_author_name,
    )


@router.get("/conversations/{conversation_id}/messages", response_model=List[MessageView])
def conversation_history(conversation_id: int, request: Request):
    settings = request.app.state.settings
    return conversations.history(
        _store(request),
        conversation_id,
        limit=settings.history_limit,
        unknown_author_name=settings.unknown_author_name,
    )


@router.post("/conversations", response_model=ConversationSummary)
def open_direct_conversation(payload: DirectConversationRequest, request: Request):
    return conversations.open_direct(_store(request), payload.user_a, payload.user_b)


@router.post("/conversations/group", response_model=ConversationSummary)
def create_group_conversation(payload: GroupConversationRequest, request: Request):
    return conversations.create_group(_store(request), payload.creator_id, payload.group_name, payload.member_names)


@router.post("/conversations/{conversation_id}/members", response_model=ConversationSummary)
def add_conversation_members(conversation_id: int, payload: AddMembersRequest, request: Request):
    return conversations.add_members(_store(request), conversation_id, payload.member_names, payload.group_name)


# Messages
@router.put("/messages/{message_id}", response_model=MessageEditedPayload)
async def edit_message(message_id: int, payload: EditMessageRequest, request: Request):
    state = request.app.state
    outcome = await state.engine.edit_message(payload.user_id, message_id, payload.new_text)
    await state.gateway.deliver(outcome.deliveries)
    return MessageEditedPayload(message_id=outcome.message.id, new_text=outcome.message.text)


@router.delete("/messages/{message_id}", response_model=MessageDeletedPayload)
async def delete_message(message_id: int, payload: DeleteMessageRequest, request: Request):
    state = request.app.state
    outcome = await state.engine.delete_message(payload.user_id, message_id)
    await state.gateway.deliver(outcome.deliveries)
    return MessageDeletedPayload(message_id=outcome.message.id)


# -----------------------------
# WebSocket
# -----------------------------
@router.websocket("/ws/{user_id}")
async def websocket_endpoint(websocket: WebSocket, user_id: str):
    state = websocket.app.state
    try:
        user = await run_in_threadpool(state.store.get_user, user_id)
    except StoreError:
        await websocket.close(code=status.WS_1011_INTERNAL_ERROR)
        return
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return
    await websocket.accept()
    channel: EventChannel = state.channel
    session_id = await channel.open(user.id, websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            # Text and binary frames both carry a JSON envelope.
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await channel.handle(session_id, raw)
    finally:
        await channel.close(session_id)


app = create_app()


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
