"""Tests for the SQLite persistence gateway."""
import asyncio

import pytest

from redledger.conversation_service import ConversationService
from redledger.errors import NotFoundError, StorageError
from redledger.models import Attachment, ConversationUpdate, MessageCreate


async def add(service, conversation_id, role, content, **extra):
    return await service.create_message(MessageCreate(
        conversation_id=conversation_id, role=role, content=content, **extra
    ))


@pytest.mark.asyncio
async def test_create_conversation_defaults(service):
    conversation = await service.create_conversation()

    assert conversation.title == "New Chat"
    assert conversation.provider is None
    assert conversation.model is None
    assert not conversation.is_locked
    assert await service.get_conversation(conversation.id) == conversation


@pytest.mark.asyncio
async def test_update_merges_only_set_fields(service):
    conversation = await service.create_conversation(title="Draft", workspace_path="/tmp/ws")

    updated = await service.update_conversation(
        conversation.id, ConversationUpdate(provider="ollama", model="llama3")
    )

    assert updated.title == "Draft"
    assert updated.workspace_path == "/tmp/ws"
    assert updated.provider == "ollama"
    assert updated.model == "llama3"
    assert updated.is_locked
    assert updated.updated_at >= conversation.updated_at


@pytest.mark.asyncio
async def test_update_unknown_conversation_raises(service):
    with pytest.raises(NotFoundError):
        await service.update_conversation("nope", ConversationUpdate(title="x"))


@pytest.mark.asyncio
async def test_messages_round_trip_in_order(service):
    conversation = await service.create_conversation()
    first = await add(service, conversation.id, "user", "Q", attachments=[Attachment(name="a.txt", content="A")])
    second = await add(
        service, conversation.id, "assistant", "A",
        thinking="hmm", tool_calls='[{"id":"1","name":"x","arguments":{},"result":null,"content_offset":0}]',
    )

    messages = await service.list_messages(conversation.id)

    assert [m.id for m in messages] == [first.id, second.id]
    assert messages[0].attachments == [Attachment(name="a.txt", content="A")]
    assert messages[1].thinking == "hmm"
    assert messages[1].parsed_tool_calls()[0].content_offset == 0
    assert messages[1].timestamp == second.timestamp


@pytest.mark.asyncio
async def test_create_message_bumps_conversation(service):
    conversation = await service.create_conversation()
    message = await add(service, conversation.id, "user", "Q")

    reloaded = await service.get_conversation(conversation.id)
    assert reloaded.updated_at == message.created_at


@pytest.mark.asyncio
async def test_list_conversations_most_recent_first(service):
    older = await service.create_conversation(title="older")
    newer = await service.create_conversation(title="newer")
    await asyncio.sleep(0.01)
    await add(service, older.id, "user", "bump")

    titles = [c.title for c in await service.list_conversations()]
    assert titles[0] == "older"
    assert set(titles) == {older.title, newer.title}


@pytest.mark.asyncio
async def test_delete_messages_from_cut_point(service):
    conversation = await service.create_conversation()
    other = await service.create_conversation()
    m1 = await add(service, conversation.id, "user", "1")
    m2 = await add(service, conversation.id, "assistant", "2")
    await add(service, conversation.id, "user", "3")
    await add(service, other.id, "user", "untouched")

    await service.delete_messages_from(conversation.id, m2.id)

    assert [m.id for m in await service.list_messages(conversation.id)] == [m1.id]
    assert len(await service.list_messages(other.id)) == 1


@pytest.mark.asyncio
async def test_delete_messages_from_unknown_message_is_no_op(service):
    conversation = await service.create_conversation()
    await add(service, conversation.id, "user", "1")

    await service.delete_messages_from(conversation.id, "missing")

    assert len(await service.list_messages(conversation.id)) == 1


@pytest.mark.asyncio
async def test_delete_conversation_cascades(service):
    conversation = await service.create_conversation()
    await add(service, conversation.id, "user", "1")

    await service.delete_conversation(conversation.id)

    assert await service.get_conversation(conversation.id) is None
    assert await service.list_messages(conversation.id) == []


@pytest.mark.asyncio
async def test_fork_copies_history_through_message(service):
    conversation = await service.create_conversation(title="Trip")
    await service.update_conversation(conversation.id, ConversationUpdate(provider="openai", model="gpt-4o"))
    await add(service, conversation.id, "user", "1")
    cut = await add(service, conversation.id, "assistant", "2")
    await add(service, conversation.id, "user", "3")

    fork = await service.fork_conversation(conversation.id, cut.id)
    refork = await service.fork_conversation(fork.id, (await service.list_messages(fork.id))[0].id)

    assert fork.title == "Trip (Fork)"
    assert refork.title == "Trip (Fork)"
    assert (fork.provider, fork.model) == ("openai", "gpt-4o")
    copied = await service.list_messages(fork.id)
    assert [m.content for m in copied] == ["1", "2"]
    assert cut.id not in {m.id for m in copied}


@pytest.mark.asyncio
async def test_fork_unknown_message_raises(service):
    conversation = await service.create_conversation()
    with pytest.raises(NotFoundError):
        await service.fork_conversation(conversation.id, "missing")


@pytest.mark.asyncio
async def test_io_failure_surfaces_as_storage_error(tmp_path):
    service = ConversationService(tmp_path / "never-initialised.db")
    with pytest.raises(StorageError):
        await service.list_conversations()
