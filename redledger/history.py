"""
Retry and edit-resend: cut the history back to the last user message and
send it again.
"""
import logging
from typing import TYPE_CHECKING, Optional

from redledger.errors import format_error
from redledger.models import Message
from redledger.notify import Notification, Notifier
from redledger.store import ConversationStore

if TYPE_CHECKING:
    from redledger.streaming import ChatStreamer

logger = logging.getLogger(__name__)


class HistoryEditor:
    def __init__(self, streamer: "ChatStreamer", store: ConversationStore, notifier: Notifier):
        self.streamer = streamer
        self.store = store
        self.notifier = notifier

    def last_user_message(self) -> Optional[Message]:
        for message in reversed(self.store.messages):
            if message.role == "user":
                return message
        return None

    async def retry(self) -> None:
        """Resend the most recent user message unchanged."""
        if self.streamer.is_streaming:
            return
        target = self.last_user_message()
        if target is None:
            return

        logger.info("Retrying from message %s", target.id)
        if not await self._truncate_from(target):
            return
        await self.streamer.send_message(target.content, target.attachments)

    async def edit_and_resend(self, content: str) -> None:
        """Replace the most recent user message's text and resend it.

        Attachments of the original message are carried over. Empty text is
        only accepted when there are attachments to send.
        """
        if self.streamer.is_streaming:
            return
        target = self.last_user_message()
        if target is None:
            return

        trimmed = content.strip()
        if not trimmed and not target.attachments:
            return

        logger.info("Editing and resending message %s", target.id)
        if not await self._truncate_from(target):
            return
        await self.streamer.send_message(trimmed, target.attachments)

    async def _truncate_from(self, target: Message) -> bool:
        try:
            return await self.store.delete_messages_from(target.id)
        except Exception as e:
            logger.exception("Failed to truncate history at %s", target.id)
            self.notifier.notify(Notification(type="error", message=format_error(e)))
            return False
