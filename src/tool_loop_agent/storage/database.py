"""SQLite database connection manager with schema migration."""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from tool_loop_agent.log import get_logger

logger = get_logger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS conversations (
    id                  TEXT    PRIMARY KEY,
    user_id             TEXT    NOT NULL,
    title               TEXT    NOT NULL,
    model               TEXT    NOT NULL,
    system_prompt       TEXT,
    temperature         REAL    NOT NULL DEFAULT 0.7,
    max_tokens          INTEGER NOT NULL DEFAULT 4096,
    status              TEXT    NOT NULL DEFAULT 'active'
                        CHECK(status IN ('active','archived','deleted')),
    total_input_tokens  INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    metadata_json       TEXT    NOT NULL DEFAULT '{}',
    created_at          TEXT    NOT NULL,
    updated_at          TEXT    NOT NULL,
    last_message_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_conversations_user
    ON conversations(user_id, status, updated_at);

CREATE TABLE IF NOT EXISTS messages (
    id              TEXT    PRIMARY KEY,
    conversation_id TEXT    NOT NULL REFERENCES conversations(id),
    role            TEXT    NOT NULL CHECK(role IN ('user','assistant','system','tool')),
    content         TEXT,
    tool_calls_json TEXT,
    tool_call_id    TEXT,
    model           TEXT,
    input_tokens    INTEGER,
    output_tokens   INTEGER,
    sequence_number INTEGER NOT NULL,
    metadata_json   TEXT    NOT NULL DEFAULT '{}',
    created_at      TEXT    NOT NULL,
    UNIQUE (conversation_id, sequence_number)
);

CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
    content,
    content='messages',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS trg_messages_fts_insert AFTER INSERT ON messages
WHEN new.content IS NOT NULL BEGIN
    INSERT INTO messages_fts(rowid, content) VALUES (new.rowid, new.content);
END;

CREATE TABLE IF NOT EXISTS attachments (
    id              TEXT    PRIMARY KEY,
    conversation_id TEXT    NOT NULL REFERENCES conversations(id),
    message_id      TEXT    REFERENCES messages(id),
    name            TEXT    NOT NULL,
    file_url        TEXT    NOT NULL,
    file_type       TEXT,
    file_size       INTEGER,
    metadata_json   TEXT    NOT NULL DEFAULT '{}',
    created_at      TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_attachments_conversation
    ON attachments(conversation_id);
"""


class Database:
    """Async SQLite database manager."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """Open connection and run migrations."""
        Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(self._db_path)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(SCHEMA_SQL)
        await self._conn.commit()
        logger.info("database_initialized", path=self._db_path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")
        return self._conn

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None
            logger.info("database_closed")
