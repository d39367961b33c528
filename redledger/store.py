"""
Visible conversation state shared by the chat surface and the streaming core.

The store is an explicit object handed to whoever needs it. Every write
replaces whole records (``model_copy``) and then notifies listeners with
the event name, so readers never see a half-updated message.
"""
import logging
from typing import Callable, List, Optional

from redledger.conversation_service import PersistenceGateway
from redledger.errors import format_error
from redledger.models import (
    Attachment,
    ChatSettings,
    Conversation,
    ConversationUpdate,
    Message,
    MessageCreate,
    Role,
    now_ms,
)
from redledger.notify import Notification, Notifier

logger = logging.getLogger(__name__)

StoreListener = Callable[[str], None]


def _sort_by_updated_at(conversations: List[Conversation]) -> List[Conversation]:
    return sorted(conversations, key=lambda c: c.updated_at, reverse=True)


class ConversationStore:
    """Owned container for conversations, the active history and settings."""

    def __init__(self, gateway: PersistenceGateway, notifier: Notifier):
        self.gateway = gateway
        self.notifier = notifier

        self.conversations: List[Conversation] = []
        self.active_conversation_id: Optional[str] = None
        self.messages: List[Message] = []
        self.settings: Optional[ChatSettings] = None
        self.is_loading_messages = False

        self._listeners: List[StoreListener] = []

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register ``listener(event)``; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Store listener failed for event %s", event)

    def _error(self, err: Exception) -> None:
        self.notifier.notify(Notification(type="error", message=format_error(err)))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_settings(self, settings: ChatSettings) -> None:
        self.settings = settings
        self._emit("settings")

    # ------------------------------------------------------------------
    # Conversations (surface-driven: failures are notified here)
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        return next((c for c in self.conversations if c.id == conversation_id), None)

    @property
    def active_conversation(self) -> Optional[Conversation]:
        if self.active_conversation_id is None:
            return None
        return self.get_conversation(self.active_conversation_id)

    async def load_conversations(self) -> None:
        try:
            conversations = await self.gateway.list_conversations()
        except Exception as e:
            self._error(e)
            return
        self.conversations = _sort_by_updated_at(conversations)
        self._emit("conversations")

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        """Create a conversation and make it active. Notifies and re-raises on failure."""
        try:
            conversation = await self.gateway.create_conversation(title=title)
        except Exception as e:
            self._error(e)
            raise
        self.conversations = _sort_by_updated_at([conversation, *self.conversations])
        self.active_conversation_id = conversation.id
        self.messages = []
        self._emit("conversations")
        self._emit("messages")
        return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        try:
            await self.gateway.delete_conversation(conversation_id)
        except Exception as e:
            self._error(e)
            return
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None
            self.messages = []
            self._emit("messages")
        self._emit("conversations")

    async def rename_conversation(self, conversation_id: str, title: str) -> None:
        try:
            updated = await self.gateway.update_conversation(
                conversation_id, ConversationUpdate(title=title)
            )
        except Exception as e:
            self._error(e)
            return
        self.replace_conversation(updated)

    async def fork_conversation_from_message(self, message_id: str) -> Optional[Conversation]:
        if self.active_conversation_id is None:
            return None
        try:
            forked = await self.gateway.fork_conversation(self.active_conversation_id, message_id)
            conversations = await self.gateway.list_conversations()
            messages = await self.gateway.list_messages(forked.id)
        except Exception as e:
            self._error(e)
            raise
        self.conversations = _sort_by_updated_at(conversations)
        self.active_conversation_id = forked.id
        self.messages = messages
        self.is_loading_messages = False
        self._emit("conversations")
        self._emit("messages")
        return forked

    async def update_conversation(self, conversation_id: str, update: ConversationUpdate) -> Conversation:
        """Persist a partial update and mirror it. Raises on failure."""
        updated = await self.gateway.update_conversation(conversation_id, update)
        self.replace_conversation(updated)
        return updated

    def replace_conversation(self, conversation: Conversation) -> None:
        others = [c for c in self.conversations if c.id != conversation.id]
        self.conversations = _sort_by_updated_at([conversation, *others])
        self._emit("conversations")

    def touch_conversation(self, conversation_id: str, updated_at: Optional[int] = None) -> None:
        """Move a conversation's ordering timestamp forward in the visible list."""
        updated_at = now_ms() if updated_at is None else updated_at
        self.conversations = _sort_by_updated_at([
            c.model_copy(update={"updated_at": updated_at}) if c.id == conversation_id else c
            for c in self.conversations
        ])
        self._emit("conversations")

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def set_active_conversation(self, conversation_id: Optional[str]) -> None:
        self.active_conversation_id = conversation_id
        self.messages = []
        self.is_loading_messages = conversation_id is not None
        self._emit("messages")
        if conversation_id is not None:
            await self.load_messages(conversation_id)

    async def load_messages(self, conversation_id: str) -> None:
        self.is_loading_messages = True
        try:
            messages = await self.gateway.list_messages(conversation_id)
        except Exception as e:
            self.is_loading_messages = False
            self._error(e)
            return
        # The user may have switched conversations while we were waiting
        if self.active_conversation_id == conversation_id:
            self.messages = messages
            self.is_loading_messages = False
            self._emit("messages")

    async def add_message(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        attachments: Optional[List[Attachment]] = None,
    ) -> Message:
        """Persist a message, append it and bump the conversation. Raises on failure."""
        message = await self.gateway.create_message(MessageCreate(
            conversation_id=conversation_id,
            role=role,
            content=content,
            attachments=attachments or None,
        ))
        self.messages = [*self.messages, message]
        self._emit("messages")
        self.touch_conversation(conversation_id, message.created_at)
        return message

    def find_message(self, message_id: str) -> Optional[Message]:
        return next((m for m in self.messages if m.id == message_id), None)

    def append_message(self, message: Message) -> None:
        self.messages = [*self.messages, message]
        self._emit("messages")

    def update_message(self, message_id: str, **fields) -> None:
        """Local-only replacement of a message with ``fields`` merged in."""
        if self.find_message(message_id) is None:
            return
        self.messages = [
            m.model_copy(update=fields) if m.id == message_id else m
            for m in self.messages
        ]
        self._emit("messages")

    def replace_message(self, message_id: str, replacement: Message) -> bool:
        """Swap one entry for another in place. Returns False if ``message_id`` is gone."""
        if self.find_message(message_id) is None:
            return False
        self.messages = [replacement if m.id == message_id else m for m in self.messages]
        self._emit("messages")
        return True

    def remove_message(self, message_id: str) -> None:
        if self.find_message(message_id) is None:
            return
        self.messages = [m for m in self.messages if m.id != message_id]
        self._emit("messages")

    async def delete_messages_from(self, message_id: str) -> bool:
        """Delete a message and everything after it, durably then in memory.

        The in-memory history is only truncated once the gateway call has
        succeeded. Returns False when there is nothing to cut; raises on
        gateway failure.
        """
        if self.active_conversation_id is None:
            return False
        index = next((i for i, m in enumerate(self.messages) if m.id == message_id), None)
        if index is None:
            return False

        await self.gateway.delete_messages_from(self.active_conversation_id, message_id)
        self.messages = self.messages[:index]
        self._emit("messages")
        return True
