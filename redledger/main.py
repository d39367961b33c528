"""
FastAPI application exposing conversations and the streaming chat surface.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, TypeAdapter, ValidationError

from redledger.config import settings
from redledger.conversation_service import ConversationService
from redledger.database import init_database
from redledger.errors import NotFoundError, StorageError, format_error
from redledger.models import Attachment, Conversation, ConversationUpdate, Message
from redledger.notify import QueueNotifier
from redledger.store import ConversationStore
from redledger.streaming import ChatStreamer
from redledger.transport import ClaudeTransport, Transport

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

_attachments = TypeAdapter(List[Attachment])


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database on startup."""
    await init_database(settings.database_path)
    yield


app = FastAPI(
    title="Red Ledger Chat",
    version="1.0.0",
    lifespan=lifespan
)


def get_gateway() -> ConversationService:
    return ConversationService(settings.database_path)


def get_transport() -> Transport:
    return ClaudeTransport(oauth_token=settings.claude_code_oauth_token)


class ConversationCreateRequest(BaseModel):
    title: Optional[str] = None


class ConversationRenameRequest(BaseModel):
    title: str


class ForkRequest(BaseModel):
    message_id: str


def _storage_failure(e: StorageError) -> HTTPException:
    return HTTPException(status_code=500, detail=format_error(e))


@app.get("/api/conversations", response_model=List[Conversation])
async def list_conversations(gateway: ConversationService = Depends(get_gateway)):
    try:
        return await gateway.list_conversations()
    except StorageError as e:
        raise _storage_failure(e)


@app.post("/api/conversations", response_model=Conversation)
async def create_conversation(
    body: ConversationCreateRequest,
    gateway: ConversationService = Depends(get_gateway),
):
    try:
        return await gateway.create_conversation(title=body.title)
    except StorageError as e:
        raise _storage_failure(e)


@app.patch("/api/conversations/{conversation_id}", response_model=Conversation)
async def rename_conversation(
    conversation_id: str,
    body: ConversationRenameRequest,
    gateway: ConversationService = Depends(get_gateway),
):
    title = body.title.strip()
    if not title:
        raise HTTPException(status_code=422, detail="Title must not be empty")
    try:
        return await gateway.update_conversation(conversation_id, ConversationUpdate(title=title))
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except StorageError as e:
        raise _storage_failure(e)


@app.delete("/api/conversations/{conversation_id}")
async def delete_conversation(conversation_id: str, gateway: ConversationService = Depends(get_gateway)):
    try:
        await gateway.delete_conversation(conversation_id)
    except StorageError as e:
        raise _storage_failure(e)
    return {"status": "deleted"}


@app.get("/api/conversations/{conversation_id}/messages", response_model=List[Message])
async def list_messages(conversation_id: str, gateway: ConversationService = Depends(get_gateway)):
    try:
        if await gateway.get_conversation(conversation_id) is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return await gateway.list_messages(conversation_id)
    except StorageError as e:
        raise _storage_failure(e)


@app.post("/api/conversations/{conversation_id}/fork", response_model=Conversation)
async def fork_conversation(
    conversation_id: str,
    body: ForkRequest,
    gateway: ConversationService = Depends(get_gateway),
):
    try:
        return await gateway.fork_conversation(conversation_id, body.message_id)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except StorageError as e:
        raise _storage_failure(e)


def _messages_event(store: ConversationStore) -> dict[str, Any]:
    return {
        "type": "messages",
        "messages": [m.model_dump(mode="json") for m in store.messages],
    }


async def _drain_events(
    websocket: WebSocket,
    events: asyncio.Queue,
    notifier: QueueNotifier,
    stop: asyncio.Event,
):
    """Forward store events and notifications to the websocket until stop is set."""
    while not stop.is_set():
        try:
            while not notifier.queue.empty():
                notification = notifier.queue.get_nowait()
                await websocket.send_json({"type": "notification", **notification.model_dump()})
            try:
                event = await asyncio.wait_for(events.get(), timeout=0.05)
            except asyncio.TimeoutError:
                continue
            await websocket.send_json(event)
        except Exception:
            logger.exception("Event drain error")
            break


async def _dispatch(streamer: ChatStreamer, data: dict[str, Any]) -> None:
    event_type = data.get("type")

    if event_type == "user_message":
        content = str(data.get("content", "")).strip()
        try:
            attachments = _attachments.validate_python(data.get("attachments") or [])
        except ValidationError:
            logger.warning("Rejecting malformed attachments")
            return
        if content or attachments:
            await streamer.send_message(content, attachments or None)
    elif event_type == "cancel":
        streamer.cancel()
    elif event_type == "retry":
        await streamer.retry()
    elif event_type == "edit":
        await streamer.edit_and_resend(str(data.get("content", "")))
    elif event_type == "resave":
        message_id = data.get("message_id")
        if isinstance(message_id, str):
            await streamer.resave(message_id)
    else:
        logger.warning("Unknown client event type: %s", event_type)


@app.websocket("/ws/chat/{conversation_id}")
async def websocket_chat(
    websocket: WebSocket,
    conversation_id: str,
    gateway: ConversationService = Depends(get_gateway),
    transport: Transport = Depends(get_transport),
):
    """WebSocket endpoint for chat."""
    await websocket.accept()
    logger.info("WebSocket accepted for conversation %s", conversation_id[:8])

    if await gateway.get_conversation(conversation_id) is None:
        await websocket.send_json({"type": "error", "content": "Conversation not found"})
        await websocket.close()
        return

    events: asyncio.Queue = asyncio.Queue()
    notifier = QueueNotifier()
    store = ConversationStore(gateway, notifier)
    store.load_settings(settings.chat_settings())
    await store.load_conversations()
    await store.set_active_conversation(conversation_id)

    await websocket.send_json({
        "type": "history",
        "messages": [m.model_dump(mode="json") for m in store.messages],
    })

    def on_store_event(event: str):
        if event == "messages":
            events.put_nowait(_messages_event(store))

    def on_thinking_change(active: bool):
        events.put_nowait({"type": "thinking", "active": active})

    streamer = ChatStreamer(
        store,
        transport,
        notifier,
        flush_interval=settings.stream_flush_interval_ms / 1000,
        thinking_window=settings.thinking_idle_window_ms / 1000,
        on_thinking_change=on_thinking_change,
    )
    unsubscribe = store.subscribe(on_store_event)

    stop_drain = asyncio.Event()
    drain_task = asyncio.create_task(_drain_events(websocket, events, notifier, stop_drain))

    try:
        while True:
            data = await websocket.receive_json()
            if isinstance(data, dict):
                await _dispatch(streamer, data)
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for conversation %s", conversation_id[:8])
    except Exception:
        logger.exception("WebSocket error for conversation %s", conversation_id[:8])
    finally:
        streamer.cancel()
        unsubscribe()
        stop_drain.set()
        await drain_task
        await streamer.wait_persisted()


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "service": "redledger-chat",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
