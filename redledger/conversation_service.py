"""
SQLite-backed persistence gateway for conversations and messages.
"""
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional, Protocol

import aiosqlite

from redledger.database import PathLike, get_db
from redledger.errors import NotFoundError, StorageError
from redledger.models import (
    Attachment,
    Conversation,
    ConversationUpdate,
    Message,
    MessageCreate,
    ProviderName,
    now_ms,
)
from redledger.titles import DEFAULT_CHAT_TITLE

logger = logging.getLogger(__name__)

FORK_SUFFIX = " (Fork)"


class PersistenceGateway(Protocol):
    """Durable storage operations the store and streaming core depend on."""

    async def list_conversations(self) -> List[Conversation]:
        ...

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    async def create_conversation(self, title: Optional[str] = None) -> Conversation:
        ...

    async def delete_conversation(self, conversation_id: str) -> None:
        ...

    async def fork_conversation(self, conversation_id: str, message_id: str) -> Conversation:
        ...

    async def create_message(self, data: MessageCreate) -> Message:
        ...

    async def list_messages(self, conversation_id: str) -> List[Message]:
        ...

    async def delete_messages_from(self, conversation_id: str, message_id: str) -> None:
        ...

    async def update_conversation(self, conversation_id: str, update: ConversationUpdate) -> Conversation:
        ...


def _to_conversation(row: aiosqlite.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        title=row["title"],
        provider=row["provider"],
        model=row["model"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        workspace_path=row["workspace_path"],
    )


def _to_message(row: aiosqlite.Row) -> Message:
    attachments = None
    if row["attachments"]:
        try:
            parsed = json.loads(row["attachments"])
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed attachments on message %s", row["id"])
            parsed = None
        if isinstance(parsed, list):
            attachments = [
                Attachment(**item) for item in parsed
                if isinstance(item, dict)
                and isinstance(item.get("name"), str)
                and isinstance(item.get("content"), str)
            ]

    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        attachments=attachments,
        thinking=row["thinking"],
        tool_calls=row["tool_calls"],
        timestamp=datetime.fromisoformat(row["timestamp"]),
        created_at=row["created_at"],
    )


def _fork_title(source_title: str) -> str:
    base = source_title.strip() or DEFAULT_CHAT_TITLE
    return base if base.endswith(FORK_SUFFIX) else f"{base}{FORK_SUFFIX}"


class ConversationService:
    """CRUD operations on conversations and messages."""

    def __init__(self, database_path: PathLike):
        self.database_path = database_path

    @asynccontextmanager
    async def _connect(self):
        try:
            async with get_db(self.database_path) as db:
                yield db
        except aiosqlite.Error as e:
            logger.exception("Database operation failed")
            raise StorageError(str(e)) from e

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def list_conversations(self) -> List[Conversation]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations ORDER BY updated_at DESC"
            )
            rows = await cursor.fetchall()
        return [_to_conversation(row) for row in rows]

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,)
            )
            row = await cursor.fetchone()
        return _to_conversation(row) if row else None

    async def create_conversation(
        self,
        title: Optional[str] = None,
        provider: Optional[ProviderName] = None,
        model: Optional[str] = None,
        workspace_path: Optional[str] = None,
    ) -> Conversation:
        """Create a conversation. Provider and model stay unset until locked."""
        conversation_id = str(uuid.uuid4())
        now = now_ms()

        async with self._connect() as db:
            await db.execute(
                """INSERT INTO conversations
                   (id, title, provider, model, created_at, updated_at, workspace_path)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conversation_id, title or DEFAULT_CHAT_TITLE, provider, model, now, now, workspace_path)
            )
            await db.commit()

        return Conversation(
            id=conversation_id,
            title=title or DEFAULT_CHAT_TITLE,
            provider=provider,
            model=model,
            created_at=now,
            updated_at=now,
            workspace_path=workspace_path,
        )

    async def update_conversation(self, conversation_id: str, update: ConversationUpdate) -> Conversation:
        """Merge the explicitly-set fields of ``update`` into a conversation."""
        fields = update.model_dump(exclude_unset=True)
        now = now_ms()

        async with self._connect() as db:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            params = list(fields.values())
            sql = "UPDATE conversations SET "
            sql += f"{assignments}, updated_at = ?" if assignments else "updated_at = ?"
            sql += " WHERE id = ?"
            cursor = await db.execute(sql, (*params, now, conversation_id))
            if cursor.rowcount == 0:
                raise NotFoundError(f"Conversation not found: {conversation_id}")
            await db.commit()

            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,)
            )
            row = await cursor.fetchone()

        return _to_conversation(row)

    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and, by cascade, all of its messages."""
        async with self._connect() as db:
            await db.execute(
                "DELETE FROM messages WHERE conversation_id = ?",
                (conversation_id,)
            )
            await db.execute(
                "DELETE FROM conversations WHERE id = ?",
                (conversation_id,)
            )
            await db.commit()

    async def fork_conversation(self, conversation_id: str, message_id: str) -> Conversation:
        """Copy a conversation up to and including ``message_id`` into a new one."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (conversation_id,)
            )
            source = await cursor.fetchone()
            if not source:
                raise NotFoundError(f"Conversation not found: {conversation_id}")

            cursor = await db.execute(
                "SELECT rowid FROM messages WHERE id = ? AND conversation_id = ?",
                (message_id, conversation_id)
            )
            cutoff = await cursor.fetchone()
            if not cutoff:
                raise NotFoundError(f"Message not found in conversation: {message_id}")

            cursor = await db.execute(
                """SELECT role, content, attachments, thinking, tool_calls, timestamp, created_at
                   FROM messages
                   WHERE conversation_id = ? AND rowid <= ?
                   ORDER BY rowid ASC""",
                (conversation_id, cutoff[0])
            )
            source_messages = await cursor.fetchall()

            fork_id = str(uuid.uuid4())
            now = now_ms()
            await db.execute(
                """INSERT INTO conversations
                   (id, title, provider, model, created_at, updated_at, workspace_path)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    fork_id,
                    _fork_title(source["title"]),
                    source["provider"],
                    source["model"],
                    now,
                    now,
                    source["workspace_path"],
                )
            )
            await db.executemany(
                """INSERT INTO messages
                   (id, conversation_id, role, content, attachments, thinking, tool_calls, timestamp, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (
                        str(uuid.uuid4()),
                        fork_id,
                        row["role"],
                        row["content"],
                        row["attachments"],
                        row["thinking"],
                        row["tool_calls"],
                        row["timestamp"],
                        row["created_at"],
                    )
                    for row in source_messages
                ]
            )
            await db.commit()

            cursor = await db.execute(
                "SELECT * FROM conversations WHERE id = ?",
                (fork_id,)
            )
            row = await cursor.fetchone()

        logger.info(
            "Forked conversation %s at message %s into %s (%d messages)",
            conversation_id[:8], message_id[:8], fork_id[:8], len(source_messages),
        )
        return _to_conversation(row)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(self, conversation_id: str) -> List[Message]:
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY created_at ASC, rowid ASC",
                (conversation_id,)
            )
            rows = await cursor.fetchall()
        return [_to_message(row) for row in rows]

    async def create_message(self, data: MessageCreate) -> Message:
        """Save a message and bump its conversation's ``updated_at``."""
        message_id = str(uuid.uuid4())
        now = now_ms()
        timestamp = datetime.now(timezone.utc)
        attachments = (
            json.dumps([a.model_dump() for a in data.attachments])
            if data.attachments else None
        )

        async with self._connect() as db:
            await db.execute(
                """INSERT INTO messages
                   (id, conversation_id, role, content, attachments, thinking, tool_calls, timestamp, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message_id,
                    data.conversation_id,
                    data.role,
                    data.content,
                    attachments,
                    data.thinking,
                    data.tool_calls,
                    timestamp.isoformat(),
                    now,
                )
            )
            await db.execute(
                "UPDATE conversations SET updated_at = ? WHERE id = ?",
                (now, data.conversation_id)
            )
            await db.commit()

        return Message(
            id=message_id,
            conversation_id=data.conversation_id,
            role=data.role,
            content=data.content,
            thinking=data.thinking,
            tool_calls=data.tool_calls,
            attachments=data.attachments or None,
            timestamp=timestamp,
            created_at=now,
        )

    async def delete_messages_from(self, conversation_id: str, message_id: str) -> None:
        """Delete ``message_id`` and every later message in the conversation."""
        async with self._connect() as db:
            cursor = await db.execute(
                "SELECT rowid FROM messages WHERE id = ? AND conversation_id = ?",
                (message_id, conversation_id)
            )
            row = await cursor.fetchone()
            if not row:
                return

            await db.execute(
                "DELETE FROM messages WHERE conversation_id = ? AND rowid >= ?",
                (conversation_id, row[0])
            )
            await db.commit()
