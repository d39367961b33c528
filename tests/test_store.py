"""Tests for the visible conversation store."""
from datetime import datetime, timezone

import pytest

from redledger.models import Message, now_ms
from redledger.store import ConversationStore


def make_message(message_id, conversation_id, content="", role="assistant"):
    return Message(
        id=message_id,
        conversation_id=conversation_id,
        role=role,
        content=content,
        created_at=now_ms(),
        timestamp=datetime.now(timezone.utc),
    )


@pytest.mark.asyncio
async def test_create_conversation_activates_it(gateway, notifier):
    store = ConversationStore(gateway, notifier)
    conversation = await store.create_conversation(title="Ideas")

    assert store.active_conversation_id == conversation.id
    assert store.active_conversation == conversation
    assert store.messages == []


@pytest.mark.asyncio
async def test_update_message_replaces_whole_record(store):
    original = make_message("streaming-1", store.active_conversation_id)
    store.append_message(original)

    store.update_message("streaming-1", content="hello")

    assert original.content == ""
    assert store.messages[-1] is not original
    assert store.messages[-1].content == "hello"


@pytest.mark.asyncio
async def test_replace_and_remove_missing_messages(store):
    replacement = make_message("real", store.active_conversation_id)
    assert not store.replace_message("ghost", replacement)

    store.remove_message("ghost")
    store.update_message("ghost", content="x")
    assert store.messages == []


@pytest.mark.asyncio
async def test_listeners_receive_events_until_unsubscribed(store):
    events = []
    unsubscribe = store.subscribe(events.append)

    store.append_message(make_message("streaming-1", store.active_conversation_id))
    unsubscribe()
    store.remove_message("streaming-1")

    assert events == ["messages"]


@pytest.mark.asyncio
async def test_failing_listener_does_not_break_others(store):
    events = []

    def broken(event):
        raise RuntimeError("listener bug")

    store.subscribe(broken)
    store.subscribe(events.append)
    store.append_message(make_message("streaming-1", store.active_conversation_id))

    assert events == ["messages"]


@pytest.mark.asyncio
async def test_delete_messages_from_truncates_after_gateway(store, gateway):
    conversation_id = store.active_conversation_id
    first = await store.add_message(conversation_id, "user", "Q1")
    second = await store.add_message(conversation_id, "user", "Q2")

    assert await store.delete_messages_from(second.id)
    assert store.messages == [first]
    assert not await store.delete_messages_from("missing")
    assert gateway.count("delete_messages_from") == 1


@pytest.mark.asyncio
async def test_touch_conversation_reorders(store, gateway):
    first_id = store.active_conversation_id
    second = await store.create_conversation(title="second")
    assert store.conversations[0].id == second.id

    store.touch_conversation(first_id, second.updated_at + 1000)

    assert store.conversations[0].id == first_id


@pytest.mark.asyncio
async def test_surface_operations_notify_on_failure(store, gateway, notifier):
    gateway.fail_on.update({"list_conversations", "delete_conversation", "update_conversation"})

    await store.load_conversations()
    await store.delete_conversation(store.active_conversation_id)
    await store.rename_conversation(store.active_conversation_id, "x")

    assert len(notifier.errors) == 3
    assert store.active_conversation_id is not None


@pytest.mark.asyncio
async def test_rename_and_delete_conversation(store, gateway):
    conversation_id = store.active_conversation_id

    await store.rename_conversation(conversation_id, "Renamed")
    assert store.active_conversation.title == "Renamed"

    await store.delete_conversation(conversation_id)
    assert store.active_conversation_id is None
    assert store.conversations == []


@pytest.mark.asyncio
async def test_fork_switches_to_new_conversation(store):
    conversation_id = store.active_conversation_id
    cut = await store.add_message(conversation_id, "user", "Q1")
    await store.add_message(conversation_id, "user", "Q2")

    forked = await store.fork_conversation_from_message(cut.id)

    assert store.active_conversation_id == forked.id
    assert [m.content for m in store.messages] == ["Q1"]
    assert {c.id for c in store.conversations} == {conversation_id, forked.id}


@pytest.mark.asyncio
async def test_set_active_conversation_loads_history(store, gateway, notifier):
    conversation_id = store.active_conversation_id
    await store.add_message(conversation_id, "user", "Q1")
    other = await store.create_conversation()
    assert store.messages == []

    await store.set_active_conversation(conversation_id)

    assert [m.content for m in store.messages] == ["Q1"]
    assert not store.is_loading_messages
    assert store.active_conversation_id != other.id
