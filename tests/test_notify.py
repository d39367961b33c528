"""Tests for notification sinks and error formatting."""
import logging

import pytest

from redledger.errors import NotFoundError, StorageError, format_error
from redledger.notify import LoggingNotifier, Notification, QueueNotifier


def test_logging_notifier_uses_matching_level(caplog):
    with caplog.at_level(logging.INFO, logger="redledger.notify"):
        LoggingNotifier().notify(Notification(type="warning", message="workspace missing"))

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    assert "workspace missing" in record.getMessage()


@pytest.mark.asyncio
async def test_queue_notifier_buffers_and_drops_when_full():
    notifier = QueueNotifier(maxsize=1)
    notifier.notify(Notification(type="error", message="first"))
    notifier.notify(Notification(type="error", message="second"))

    assert notifier.queue.qsize() == 1
    assert (await notifier.queue.get()).message == "first"


def test_format_error_shapes():
    assert format_error(StorageError("disk full")) == "Database error: disk full"
    assert format_error(StorageError()) == "Database error"
    assert format_error(NotFoundError("gone")) == "gone"
    assert format_error(ValueError("bad value")) == "bad value"
    assert format_error("plain") == "plain"
    assert format_error({"message": "from ipc"}) == "from ipc"
    assert format_error({"code": "NETWORK_ERROR"}) == "Network error - check your connection"
    assert format_error(42) == "An unexpected error occurred"
