"""
End-of-stream reconciliation: discard an empty reply or persist it and swap
the ephemeral entry for its durable twin.
"""
import asyncio
import logging
from typing import TYPE_CHECKING, Optional, Set

from redledger.errors import format_error
from redledger.models import Message, MessageCreate, serialize_tool_calls
from redledger.notify import Notification, Notifier
from redledger.store import ConversationStore

if TYPE_CHECKING:
    from redledger.streaming import StreamSession

logger = logging.getLogger(__name__)

# Stored when a reply produced only thinking or tool calls
NO_TEXT_PLACEHOLDER = "_(No text response)_"


class Finalizer:
    """Decides discard vs persist for a finished session.

    ``finalize`` runs synchronously; the gateway write it starts completes
    later on the loop. Pending writes are tracked so callers can await them.
    """

    def __init__(self, store: ConversationStore, notifier: Notifier):
        self.store = store
        self.notifier = notifier
        self._pending: Set[asyncio.Future] = set()

    def finalize(self, session: "StreamSession") -> Optional[asyncio.Future]:
        """Finalize ``session``; a second call for the same session does nothing."""
        snapshot = session.buffers.snapshot()
        message_id, conversation_id = session.release()
        if message_id is None or conversation_id is None:
            return None

        if snapshot.is_empty:
            logger.info("Discarding empty reply %s in conversation %s", message_id, conversation_id[:8])
            self.store.remove_message(message_id)
            return None

        tool_calls = serialize_tool_calls(snapshot.tool_calls)
        # Final values must be visible before the write starts
        self.store.update_message(
            message_id,
            content=snapshot.content,
            thinking=snapshot.thinking or None,
            tool_calls=tool_calls,
        )

        data = MessageCreate(
            conversation_id=conversation_id,
            role="assistant",
            content=snapshot.content or NO_TEXT_PLACEHOLDER,
            thinking=snapshot.thinking or None,
            tool_calls=tool_calls,
        )
        return self._schedule(message_id, data)

    async def resave(self, message_id: str) -> Optional[Message]:
        """Retry persistence for an entry left in the ``failed`` state.

        Only the newest message of a conversation can be re-saved: a new row
        always sorts last, so saving an older entry would reorder history.
        """
        message = self.store.find_message(message_id)
        if message is None or message.status != "failed":
            return None

        siblings = [
            m for m in self.store.messages
            if m.conversation_id == message.conversation_id
        ]
        if siblings[-1].id != message_id:
            logger.warning("Refusing to re-save %s: later messages exist", message_id)
            self.notifier.notify(Notification(
                type="warning",
                message="This reply can no longer be saved because the conversation has moved on.",
            ))
            return None

        self.store.update_message(message_id, status="streaming", error=None)
        data = MessageCreate(
            conversation_id=message.conversation_id,
            role=message.role,
            content=message.content or NO_TEXT_PLACEHOLDER,
            thinking=message.thinking,
            tool_calls=message.tool_calls,
        )
        return await self._schedule(message_id, data)

    async def drain(self) -> None:
        """Wait for every in-flight persistence write to settle."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def _schedule(self, message_id: str, data: MessageCreate) -> asyncio.Future:
        task = asyncio.ensure_future(self._persist(message_id, data))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _persist(self, message_id: str, data: MessageCreate) -> Optional[Message]:
        try:
            saved = await self.store.gateway.create_message(data)
        except Exception as e:
            logger.exception("Failed to persist reply %s", message_id)
            message = format_error(e)
            self.store.update_message(message_id, status="failed", error=message)
            self.notifier.notify(Notification(type="error", message=message))
            return None

        if not self.store.replace_message(message_id, saved):
            # Surface moved to another conversation; the reply is still durable
            logger.info("Reply %s persisted as %s after leaving the view", message_id, saved.id)
        self.store.touch_conversation(data.conversation_id, saved.created_at)
        logger.info("Persisted reply %s as %s", message_id, saved.id)
        return saved
