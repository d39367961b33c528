"""Shared fixtures: fake clock, fake transport, recording notifier, temp database."""
from typing import Callable, List, Optional

import pytest
import pytest_asyncio

from redledger.chunks import DoneChunk, StreamChunk
from redledger.conversation_service import ConversationService
from redledger.database import init_database
from redledger.errors import StorageError
from redledger.models import ChatSettings, LLMRequest
from redledger.notify import Notification
from redledger.store import ConversationStore
from redledger.streaming import ChatStreamer


class FakeTimer:
    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeScheduler:
    """Manual clock: timers only fire when ``advance`` moves time past them."""

    def __init__(self):
        self.now = 0.0
        self.timers: List[FakeTimer] = []

    def call_later(self, delay, callback):
        timer = FakeTimer(self.now + delay, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> List[FakeTimer]:
        return [t for t in self.timers if not t.cancelled]

    def advance(self, seconds: float):
        target = self.now + seconds + 1e-9
        while True:
            due = [t for t in self.pending if t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: t.due)
            self.timers.remove(timer)
            self.now = timer.due
            timer.callback()
        self.now = target


class FakeTransport:
    """Captures the chunk callback so tests can play chunks by hand."""

    def __init__(self):
        self.requests: List[LLMRequest] = []
        self.on_chunk: Optional[Callable[[StreamChunk], None]] = None
        self.active = False
        self.cleanups = 0

    def send_message(self, request, on_chunk):
        self.requests.append(request)
        self.on_chunk = on_chunk
        self.active = True

        def cleanup():
            self.cleanups += 1
            self.active = False

        return cleanup

    def emit(self, *chunks: StreamChunk):
        for chunk in chunks:
            if not self.active:
                return
            if isinstance(chunk, DoneChunk):
                self.active = False
            self.on_chunk(chunk)

    def deliver_late(self, chunk: StreamChunk):
        """Invoke the callback even after cleanup, like a chunk already in flight."""
        self.on_chunk(chunk)


class RecordingNotifier:
    def __init__(self):
        self.notifications: List[Notification] = []

    def notify(self, notification: Notification) -> None:
        self.notifications.append(notification)

    @property
    def errors(self) -> List[str]:
        return [n.message for n in self.notifications if n.type == "error"]


class FlakyGateway:
    """Wraps the real gateway, recording calls and failing selected operations."""

    def __init__(self, inner: ConversationService):
        self.inner = inner
        self.fail_on: set = set()
        self.calls: List[str] = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    def __getattr__(self, name):
        attr = getattr(self.inner, name)
        if not callable(attr):
            return attr

        async def wrapper(*args, **kwargs):
            self.calls.append(name)
            if name in self.fail_on:
                raise StorageError(f"{name} failed")
            return await attr(*args, **kwargs)

        return wrapper


TEST_SETTINGS = ChatSettings(
    active_provider="anthropic",
    default_model="claude-test",
    temperature=0.5,
    max_tokens=1024,
)


@pytest_asyncio.fixture
async def service(tmp_path):
    """Real SQLite gateway on a throwaway database file."""
    database_path = tmp_path / "redledger-test.db"
    await init_database(database_path)
    return ConversationService(database_path)


@pytest.fixture
def gateway(service):
    return FlakyGateway(service)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest_asyncio.fixture
async def store(gateway, notifier):
    """Store with settings loaded and a fresh active conversation."""
    store = ConversationStore(gateway, notifier)
    store.load_settings(TEST_SETTINGS)
    await store.create_conversation()
    return store


@pytest.fixture
def streamer(store, transport, notifier, clock):
    return ChatStreamer(
        store,
        transport,
        notifier,
        scheduler=clock,
        flush_interval=0.05,
        thinking_window=1.5,
    )
