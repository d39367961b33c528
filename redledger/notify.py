"""
User-visible notifications.

The streaming core never reaches into a UI; it is handed a ``Notifier`` and
fires events at it. Delivery is fire-and-forget.
"""
import asyncio
import logging
from typing import Literal, Optional, Protocol

from pydantic import BaseModel

logger = logging.getLogger(__name__)

NotificationType = Literal["success", "error", "warning", "info"]


class Notification(BaseModel):
    type: NotificationType
    message: str
    duration_ms: Optional[int] = None


class Notifier(Protocol):
    def notify(self, notification: Notification) -> None:
        ...


_LOG_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class LoggingNotifier:
    """Routes notifications to the log. Used when no UI is attached."""

    def notify(self, notification: Notification) -> None:
        logger.log(
            _LOG_LEVELS[notification.type],
            "notification type=%s message=%s",
            notification.type,
            notification.message,
        )


class QueueNotifier:
    """Buffers notifications on an asyncio queue for a surface to drain."""

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue[Notification] = asyncio.Queue(maxsize=maxsize)

    def notify(self, notification: Notification) -> None:
        try:
            self.queue.put_nowait(notification)
        except asyncio.QueueFull:
            logger.warning("Notification queue full, dropping: %s", notification.message)
