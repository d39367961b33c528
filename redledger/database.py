"""
SQLite database initialization and connection management.
"""
from pathlib import Path
from typing import Union

import aiosqlite

PathLike = Union[str, Path]


def get_db(database_path: PathLike):
    """Get database connection as an async context manager.

    Rows come back as ``aiosqlite.Row`` and foreign keys are enforced so
    deleting a conversation cascades to its messages.
    """
    class DBConnection:
        async def __aenter__(self):
            self.conn = await aiosqlite.connect(database_path)
            self.conn.row_factory = aiosqlite.Row
            await self.conn.execute("PRAGMA foreign_keys = ON")
            return self.conn

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            await self.conn.close()

    return DBConnection()


async def init_database(database_path: PathLike):
    """Initialize database with required tables and indexes."""
    Path(database_path).parent.mkdir(parents=True, exist_ok=True)

    async with aiosqlite.connect(database_path) as db:
        await db.execute("PRAGMA journal_mode = WAL")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL DEFAULT 'New Chat',
                provider TEXT
                    CHECK(provider IN ('anthropic', 'openai', 'openrouter', 'ollama', 'lmstudio')),
                model TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL,
                workspace_path TEXT
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                conversation_id TEXT NOT NULL,
                role TEXT NOT NULL CHECK(role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                attachments TEXT,
                thinking TEXT,
                tool_calls TEXT,
                timestamp TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
            )
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_messages_conversation
            ON messages(conversation_id)
        """)

        await db.execute("""
            CREATE INDEX IF NOT EXISTS idx_conversations_updated
            ON conversations(updated_at DESC)
        """)

        await db.commit()
