"""Conversation repository: SQLite-backed store with FTS5 message search."""

from __future__ import annotations

import asyncio
import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Optional

import aiosqlite

from tool_loop_agent.core.types import ConversationStatus, Role
from tool_loop_agent.log import get_logger
from tool_loop_agent.storage.base import ConversationStore
from tool_loop_agent.storage.database import Database
from tool_loop_agent.storage.models import (
    Attachment,
    Conversation,
    Message,
    ToolCallRecord,
    utcnow,
)

logger = get_logger(__name__)

_UPDATABLE_FIELDS = frozenset({
    "title", "model", "system_prompt", "temperature", "max_tokens", "status", "metadata",
})

_NEXT_SEQUENCE_SQL = (
    "(SELECT COALESCE(MAX(sequence_number), 0) + 1 FROM messages WHERE conversation_id = ?)"
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class ConversationRepository(ConversationStore):
    """CRUD over conversations, messages and attachments.

    Message sequence numbers are assigned inside the INSERT statement while
    holding a per-conversation lock, so commits for one conversation are
    serialized and numbers are gap-free in commit order.
    """

    def __init__(self, db: Database):
        self._db = db
        self._locks: dict[str, asyncio.Lock] = {}
        # Every writer shares one connection, so its transaction is guarded here.
        self._write_lock = asyncio.Lock()

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Commit on success; roll back and re-raise on a database error."""
        async with self._write_lock:
            conn = self._db.conn
            try:
                yield conn
                await conn.commit()
            except aiosqlite.Error:
                try:
                    await conn.rollback()
                except aiosqlite.Error as e:
                    logger.error("store_rollback_failed", error=str(e))
                raise

    # ── conversations ───────────────────────────────────────────

    async def create_conversation(self, conversation: Conversation) -> Optional[Conversation]:
        conversation.id = conversation.id or _new_id()
        try:
            async with self._transaction() as conn:
                await self._insert_conversation(conn, conversation)
        except aiosqlite.Error as e:
            logger.error("create_conversation_failed", error=str(e))
            return None
        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    @staticmethod
    async def _insert_conversation(conn: aiosqlite.Connection, c: Conversation) -> None:
        await conn.execute(
            """INSERT INTO conversations
               (id, user_id, title, model, system_prompt, temperature, max_tokens,
                status, total_input_tokens, total_output_tokens, metadata_json,
                created_at, updated_at, last_message_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                c.id,
                c.user_id,
                c.title,
                c.model,
                c.system_prompt,
                c.temperature,
                c.max_tokens,
                c.status.value,
                c.total_input_tokens,
                c.total_output_tokens,
                json.dumps(c.metadata),
                _ts(c.created_at),
                _ts(c.updated_at),
                _ts(c.last_message_at),
            ),
        )

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        try:
            cursor = await self._db.conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error("get_conversation_failed", conversation_id=conversation_id, error=str(e))
            return None
        return self._row_to_conversation(row) if row else None

    async def list_conversations(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> list[Conversation]:
        """List a user's conversations, most recently active first.

        Deleted conversations are only returned when asked for explicitly.
        """
        if status is None:
            where, params = "user_id = ? AND status != 'deleted'", (user_id,)
        else:
            where, params = "user_id = ? AND status = ?", (user_id, status.value)
        try:
            cursor = await self._db.conn.execute(
                f"""SELECT * FROM conversations WHERE {where}
                    ORDER BY COALESCE(last_message_at, created_at) DESC
                    LIMIT ?""",
                (*params, limit),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("list_conversations_failed", user_id=user_id, error=str(e))
            return []
        return [self._row_to_conversation(row) for row in rows]

    async def update_conversation(
        self, conversation_id: str, **changes: Any
    ) -> Optional[Conversation]:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            logger.error("update_conversation_rejected", fields=sorted(unknown))
            return None

        columns: list[str] = []
        values: list[Any] = []
        for name, value in changes.items():
            if name == "metadata":
                columns.append("metadata_json = ?")
                values.append(json.dumps(value))
            elif name == "status":
                columns.append("status = ?")
                values.append(ConversationStatus(value).value)
            else:
                columns.append(f"{name} = ?")
                values.append(value)
        columns.append("updated_at = ?")
        values.append(_ts(utcnow()))

        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    f"UPDATE conversations SET {', '.join(columns)} WHERE id = ?",
                    (*values, conversation_id),
                )
        except aiosqlite.Error as e:
            logger.error("update_conversation_failed", conversation_id=conversation_id, error=str(e))
            return None
        if cursor.rowcount == 0:
            return None
        return await self.get_conversation(conversation_id)

    async def add_token_usage(
        self, conversation_id: str, input_tokens: int, output_tokens: int
    ) -> bool:
        now = _ts(utcnow())
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    """UPDATE conversations
                       SET total_input_tokens = total_input_tokens + ?,
                           total_output_tokens = total_output_tokens + ?,
                           last_message_at = ?,
                           updated_at = ?
                       WHERE id = ?""",
                    (max(input_tokens, 0), max(output_tokens, 0), now, now, conversation_id),
                )
        except aiosqlite.Error as e:
            logger.error("add_token_usage_failed", conversation_id=conversation_id, error=str(e))
            return False
        return cursor.rowcount > 0

    # ── messages ────────────────────────────────────────────────

    async def create_message(self, message: Message) -> Optional[Message]:
        message.id = _new_id()
        try:
            async with self._lock_for(message.conversation_id), self._transaction() as conn:
                await self._insert_message(conn, message)
                cursor = await conn.execute(
                    "SELECT sequence_number FROM messages WHERE id = ?", (message.id,)
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            logger.error(
                "create_message_failed",
                conversation_id=message.conversation_id,
                role=str(message.role),
                error=str(e),
            )
            return None
        message.sequence_number = row["sequence_number"]
        return message

    @staticmethod
    async def _insert_message(
        conn: aiosqlite.Connection, m: Message, sequence_number: int | None = None
    ) -> None:
        tool_calls_json = json.dumps([tc.to_dict() for tc in m.tool_calls]) if m.tool_calls else None
        if sequence_number is None:
            seq_sql, seq_param = _NEXT_SEQUENCE_SQL, m.conversation_id
        else:
            seq_sql, seq_param = "?", sequence_number
        await conn.execute(
            f"""INSERT INTO messages
                (id, conversation_id, role, content, tool_calls_json, tool_call_id, model,
                 input_tokens, output_tokens, sequence_number, metadata_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, {seq_sql}, ?, ?)""",
            (
                m.id,
                m.conversation_id,
                m.role.value,
                m.content,
                tool_calls_json,
                m.tool_call_id,
                m.model,
                m.input_tokens,
                m.output_tokens,
                seq_param,
                json.dumps(m.metadata),
                _ts(m.created_at),
            ),
        )

    async def get_messages(self, conversation_id: str) -> list[Message]:
        try:
            cursor = await self._db.conn.execute(
                """SELECT * FROM messages WHERE conversation_id = ?
                   ORDER BY sequence_number ASC""",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("get_messages_failed", conversation_id=conversation_id, error=str(e))
            return []
        return [self._row_to_message(row) for row in rows]

    async def update_message_tokens(
        self, message_id: str, input_tokens: int, output_tokens: int
    ) -> bool:
        try:
            async with self._transaction() as conn:
                cursor = await conn.execute(
                    "UPDATE messages SET input_tokens = ?, output_tokens = ? WHERE id = ?",
                    (input_tokens, output_tokens, message_id),
                )
        except aiosqlite.Error as e:
            logger.error("update_message_tokens_failed", message_id=message_id, error=str(e))
            return False
        return cursor.rowcount > 0

    async def search_messages(self, user_id: str, query: str, limit: int = 20) -> list[Message]:
        """Full-text search over a user's non-deleted conversations."""
        try:
            cursor = await self._db.conn.execute(
                """SELECT m.* FROM messages m
                   JOIN messages_fts ON messages_fts.rowid = m.rowid
                   JOIN conversations c ON c.id = m.conversation_id
                   WHERE messages_fts MATCH ? AND c.user_id = ? AND c.status != 'deleted'
                   ORDER BY messages_fts.rank
                   LIMIT ?""",
                (query, user_id, limit),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("search_messages_failed", error=str(e))
            return []
        return [self._row_to_message(row) for row in rows]

    # ── attachments ─────────────────────────────────────────────

    async def create_attachment(self, attachment: Attachment) -> Optional[Attachment]:
        attachment.id = attachment.id or _new_id()
        try:
            async with self._transaction() as conn:
                await self._insert_attachment(conn, attachment)
        except aiosqlite.Error as e:
            logger.error("create_attachment_failed", error=str(e))
            return None
        return attachment

    @staticmethod
    async def _insert_attachment(conn: aiosqlite.Connection, a: Attachment) -> None:
        await conn.execute(
            """INSERT INTO attachments
               (id, conversation_id, message_id, name, file_url, file_type, file_size,
                metadata_json, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                a.id,
                a.conversation_id,
                a.message_id,
                a.name,
                a.file_url,
                a.file_type,
                a.file_size,
                json.dumps(a.metadata),
                _ts(a.created_at),
            ),
        )

    async def get_attachments(self, conversation_id: str) -> list[Attachment]:
        try:
            cursor = await self._db.conn.execute(
                "SELECT * FROM attachments WHERE conversation_id = ? ORDER BY created_at ASC",
                (conversation_id,),
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("get_attachments_failed", conversation_id=conversation_id, error=str(e))
            return []
        return [self._row_to_attachment(row) for row in rows]

    # ── branching ───────────────────────────────────────────────

    async def branch_conversation(
        self, source_id: str, up_to_sequence: int, title: Optional[str] = None
    ) -> Optional[Conversation]:
        source = await self.get_conversation(source_id)
        if source is None:
            return None

        branch = Conversation(
            id=_new_id(),
            user_id=source.user_id,
            title=title or source.title,
            model=source.model,
            system_prompt=source.system_prompt,
            temperature=source.temperature,
            max_tokens=source.max_tokens,
            metadata={
                **source.metadata,
                "branched_from": source_id,
                "branch_sequence": up_to_sequence,
            },
        )
        messages = [
            m for m in await self.get_messages(source_id) if m.sequence_number <= up_to_sequence
        ]
        attachments = await self.get_attachments(source_id)

        # Copies get fresh ids; the source rows are never touched.
        id_map: dict[str, str] = {}
        try:
            async with self._transaction() as conn:
                await self._insert_conversation(conn, branch)
                for seq, m in enumerate(messages, start=1):
                    old_id = m.id
                    m.id = id_map[old_id] = _new_id()
                    m.conversation_id = branch.id
                    await self._insert_message(conn, m, sequence_number=seq)
                for a in attachments:
                    if a.message_id is not None and a.message_id not in id_map:
                        continue
                    a.id = _new_id()
                    a.conversation_id = branch.id
                    a.message_id = id_map.get(a.message_id) if a.message_id else None
                    await self._insert_attachment(conn, a)
        except aiosqlite.Error as e:
            logger.error("branch_conversation_failed", source_id=source_id, error=str(e))
            return None

        logger.info(
            "conversation_branched",
            source_id=source_id,
            conversation_id=branch.id,
            message_count=len(messages),
        )
        return branch

    # ── row mapping ─────────────────────────────────────────────

    @staticmethod
    def _row_to_conversation(row) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            title=row["title"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            temperature=row["temperature"],
            max_tokens=row["max_tokens"],
            status=ConversationStatus(row["status"]),
            total_input_tokens=row["total_input_tokens"],
            total_output_tokens=row["total_output_tokens"],
            metadata=json.loads(row["metadata_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            last_message_at=(
                datetime.fromisoformat(row["last_message_at"]) if row["last_message_at"] else None
            ),
        )

    @staticmethod
    def _row_to_message(row) -> Message:
        tool_calls = json.loads(row["tool_calls_json"]) if row["tool_calls_json"] else []
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=Role(row["role"]),
            content=row["content"],
            tool_calls=[ToolCallRecord.from_dict(tc) for tc in tool_calls],
            tool_call_id=row["tool_call_id"],
            model=row["model"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            sequence_number=row["sequence_number"],
            metadata=json.loads(row["metadata_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    @staticmethod
    def _row_to_attachment(row) -> Attachment:
        return Attachment(
            id=row["id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            name=row["name"],
            file_url=row["file_url"],
            file_type=row["file_type"],
            file_size=row["file_size"],
            metadata=json.loads(row["metadata_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
