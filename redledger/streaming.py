"""
Streaming lifecycle for assistant replies.

``StreamSession`` owns one request/response cycle: the ephemeral message,
the accumulation buffers, the throttle and thinking timers, and the
transport cleanup handle. ``ChatStreamer`` is the long-lived object a chat
surface talks to; it allows at most one live session at a time.
"""
import enum
import logging
import uuid
from datetime import datetime, timezone
from typing import Callable, List, Optional, Tuple

from redledger.buffers import AccumulationBuffers
from redledger.chunks import (
    DoneChunk,
    ErrorChunk,
    StreamChunk,
    TextChunk,
    ThinkingChunk,
    ToolCallChunk,
    ToolResultChunk,
)
from redledger.errors import NotFoundError, format_error
from redledger.finalizer import Finalizer
from redledger.history import HistoryEditor
from redledger.models import (
    Attachment,
    ChatSettings,
    Conversation,
    ConversationUpdate,
    LLMRequest,
    Message,
    RequestMessage,
    now_ms,
    serialize_tool_calls,
)
from redledger.notify import Notification, Notifier
from redledger.scheduling import LoopScheduler, Scheduler, ThinkingActivityTracker, ThrottleScheduler
from redledger.store import ConversationStore
from redledger.titles import DEFAULT_CHAT_TITLE, sanitize_title
from redledger.transport import Transport

logger = logging.getLogger(__name__)

EPHEMERAL_ID_PREFIX = "streaming-"

DEFAULT_FLUSH_INTERVAL = 0.05
DEFAULT_THINKING_WINDOW = 1.5


class SessionState(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"


def is_ephemeral_id(message_id: str) -> bool:
    return message_id.startswith(EPHEMERAL_ID_PREFIX)


class StreamSession:
    """One assistant reply, from the user's send to finalize or discard."""

    def __init__(
        self,
        conversation_id: str,
        store: ConversationStore,
        notifier: Notifier,
        finalizer: Finalizer,
        scheduler: Scheduler,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        thinking_window: float = DEFAULT_THINKING_WINDOW,
        on_thinking_change: Optional[Callable[[bool], None]] = None,
        on_closed: Optional[Callable[["StreamSession"], None]] = None,
    ):
        self.conversation_id: Optional[str] = conversation_id
        self.message_id: Optional[str] = f"{EPHEMERAL_ID_PREFIX}{uuid.uuid4().hex}"
        self.state = SessionState.SENDING
        self.buffers = AccumulationBuffers()

        self.store = store
        self.notifier = notifier
        self._finalizer = finalizer
        self._on_closed = on_closed
        self._cleanup: Optional[Callable[[], None]] = None

        self.throttle = ThrottleScheduler(scheduler, flush_interval, self.flush)
        self.thinking = ThinkingActivityTracker(scheduler, thinking_window, on_thinking_change)

    def ephemeral_message(self) -> Message:
        return Message(
            id=self.message_id,
            conversation_id=self.conversation_id,
            role="assistant",
            content="",
            created_at=now_ms(),
            timestamp=datetime.now(timezone.utc),
            status="streaming",
        )

    def begin_streaming(self) -> None:
        self.state = SessionState.STREAMING

    def attach(self, cleanup: Callable[[], None]) -> None:
        """Take ownership of the transport's cleanup handle."""
        if self.state is SessionState.IDLE:
            # Transport finished before returning its handle
            cleanup()
            return
        self._cleanup = cleanup

    def release(self) -> Tuple[Optional[str], Optional[str]]:
        """Hand the identifiers to the caller and forget them."""
        ids = (self.message_id, self.conversation_id)
        self.message_id = None
        self.conversation_id = None
        return ids

    # ------------------------------------------------------------------
    # Chunk handling
    # ------------------------------------------------------------------

    def handle_chunk(self, chunk: StreamChunk) -> None:
        """Apply one chunk. Called by the transport on the event loop."""
        if self.state is not SessionState.STREAMING or self.message_id is None:
            logger.debug("Dropping %s chunk for a closed session", chunk.type)
            return

        if isinstance(chunk, ThinkingChunk):
            self.buffers.append_thinking(chunk.content)
            self.thinking.mark()
            self.throttle.arm()
        elif isinstance(chunk, TextChunk):
            self.buffers.append_text(chunk.content)
            self.throttle.arm()
        elif isinstance(chunk, ToolCallChunk):
            self.buffers.add_tool_call(chunk.tool_call)
            self.throttle.fire_now()
        elif isinstance(chunk, ToolResultChunk):
            if not self.buffers.apply_tool_result(chunk.tool_call):
                logger.warning("Ignoring result for unknown tool call %s", chunk.tool_call.id)
            self.throttle.fire_now()
        elif isinstance(chunk, ErrorChunk):
            self.thinking.clear()
            self.notifier.notify(Notification(type="error", message=chunk.message))
        elif isinstance(chunk, DoneChunk):
            self._cleanup = None
            self._finish()
            return
        else:
            raise TypeError(f"Unsupported stream chunk: {chunk!r}")

        self.buffers.last_chunk_type = chunk.type

    def flush(self) -> None:
        """Write the current buffers onto the ephemeral message."""
        if self.message_id is None:
            return
        logger.debug("Flushing reply %s (%d chars)", self.message_id, len(self.buffers.content))
        self.store.update_message(
            self.message_id,
            content=self.buffers.content,
            thinking=self.buffers.thinking or None,
            tool_calls=serialize_tool_calls(self.buffers.tool_calls),
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop the stream and keep whatever has accumulated so far."""
        if self.state is not SessionState.STREAMING:
            return
        cleanup, self._cleanup = self._cleanup, None
        if cleanup is not None:
            cleanup()
        logger.info("Cancelled reply %s", self.message_id)
        self._finish()

    def abort(self) -> None:
        """Tear down a session that never reached streaming."""
        self.thinking.clear()
        self.throttle.cancel()
        self.release()
        self.buffers.reset()
        self._close()

    def _finish(self) -> None:
        self.state = SessionState.FINALIZING
        self.thinking.clear()
        self.throttle.cancel()
        try:
            self._finalizer.finalize(self)
        finally:
            self.buffers.reset()
            self._close()

    def _close(self) -> None:
        self.state = SessionState.IDLE
        if self._on_closed is not None:
            self._on_closed(self)


def _request_content(message: Message) -> str:
    if not message.attachments:
        return message.content
    blocks = [
        f'<attachment name="{attachment.name}">\n{attachment.content}\n</attachment>'
        for attachment in message.attachments
    ]
    return "\n\n".join([message.content, *blocks]) if message.content else "\n\n".join(blocks)


class ChatStreamer:
    """Sends user messages and streams replies for the store's active conversation."""

    def __init__(
        self,
        store: ConversationStore,
        transport: Transport,
        notifier: Notifier,
        scheduler: Optional[Scheduler] = None,
        flush_interval: float = DEFAULT_FLUSH_INTERVAL,
        thinking_window: float = DEFAULT_THINKING_WINDOW,
        on_thinking_change: Optional[Callable[[bool], None]] = None,
    ):
        self.store = store
        self.transport = transport
        self.notifier = notifier
        self.scheduler = scheduler or LoopScheduler()
        self.flush_interval = flush_interval
        self.thinking_window = thinking_window
        self.on_thinking_change = on_thinking_change

        self.finalizer = Finalizer(store, notifier)
        self.history = HistoryEditor(self, store, notifier)
        self._session: Optional[StreamSession] = None

    @property
    def session(self) -> Optional[StreamSession]:
        return self._session

    @property
    def is_streaming(self) -> bool:
        return self._session is not None

    @property
    def thinking_active(self) -> bool:
        return self._session is not None and self._session.thinking.active

    async def send_message(self, content: str, attachments: Optional[List[Attachment]] = None) -> None:
        """Save the user's message and start streaming the reply.

        Does nothing when a reply is already in flight, no conversation is
        active, or settings have not been loaded.
        """
        conversation_id = self.store.active_conversation_id
        settings = self.store.settings
        if self._session is not None or not conversation_id or settings is None:
            logger.debug("Ignoring send: prerequisites not met")
            return

        session = StreamSession(
            conversation_id,
            self.store,
            self.notifier,
            self.finalizer,
            self.scheduler,
            flush_interval=self.flush_interval,
            thinking_window=self.thinking_window,
            on_thinking_change=self.on_thinking_change,
            on_closed=self._on_session_closed,
        )
        self._session = session
        ephemeral_id = session.message_id
        logger.info("Sending message in conversation %s", conversation_id[:8])

        unlocked = self.store.get_conversation(conversation_id)
        try:
            conversation = await self._lock_conversation(conversation_id, settings, content)
            try:
                await self.store.add_message(conversation_id, "user", content, attachments)
            except Exception:
                if unlocked is not None and not unlocked.is_locked:
                    await self._unlock_conversation(unlocked)
                raise
            request = self._build_request(conversation, settings)

            self.store.append_message(session.ephemeral_message())
            session.begin_streaming()
            cleanup = self.transport.send_message(request, session.handle_chunk)
        except Exception as e:
            logger.exception("Failed to start reply in conversation %s", conversation_id[:8])
            self.store.remove_message(ephemeral_id)
            session.abort()
            self.notifier.notify(Notification(type="error", message=format_error(e)))
            return

        session.attach(cleanup)

    def cancel(self) -> None:
        if self._session is not None:
            self._session.cancel()

    async def retry(self) -> None:
        await self.history.retry()

    async def edit_and_resend(self, content: str) -> None:
        await self.history.edit_and_resend(content)

    async def resave(self, message_id: str) -> Optional[Message]:
        return await self.finalizer.resave(message_id)

    async def wait_persisted(self) -> None:
        await self.finalizer.drain()

    def _on_session_closed(self, session: StreamSession) -> None:
        if self._session is session:
            self._session = None

    async def _lock_conversation(
        self,
        conversation_id: str,
        settings: ChatSettings,
        first_content: str,
    ) -> Conversation:
        """Fix provider and model on the conversation at its first message."""
        conversation = self.store.get_conversation(conversation_id)
        if conversation is None:
            conversation = await self.store.gateway.get_conversation(conversation_id)
            if conversation is None:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
        if conversation.is_locked:
            return conversation

        fields = {
            "provider": settings.active_provider,
            "model": settings.default_model,
        }
        if settings.workspace_path is not None:
            fields["workspace_path"] = settings.workspace_path
        if conversation.title == DEFAULT_CHAT_TITLE:
            title = sanitize_title(first_content)
            if title:
                fields["title"] = title

        logger.info(
            "Locking conversation %s to %s/%s",
            conversation_id[:8], settings.active_provider, settings.default_model,
        )
        return await self.store.update_conversation(conversation_id, ConversationUpdate(**fields))

    async def _unlock_conversation(self, previous: Conversation) -> None:
        """Restore a conversation whose first message never got saved."""
        try:
            await self.store.update_conversation(previous.id, ConversationUpdate(
                title=previous.title,
                provider=previous.provider,
                model=previous.model,
                workspace_path=previous.workspace_path,
            ))
        except Exception:
            logger.exception("Failed to unlock conversation %s", previous.id[:8])

    def _build_request(self, conversation: Conversation, settings: ChatSettings) -> LLMRequest:
        # Replies that never reached storage are not part of the durable history
        messages = [
            RequestMessage(
                role=message.role,
                content=_request_content(message),
                timestamp=message.timestamp if message.role == "user" else None,
            )
            for message in self.store.messages
            if message.conversation_id == conversation.id and message.status != "failed"
        ]
        return LLMRequest(
            conversation_id=conversation.id,
            messages=messages,
            model=conversation.model,
            provider=conversation.provider,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
        )
