"""Abstract conversation store interface.

Every operation fails closed: a missing record or a storage failure is
reported as ``None``, ``False`` or an empty list, never as an exception, so
the controller can treat persistence outcomes as ordinary values.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from tool_loop_agent.core.types import ConversationStatus
from tool_loop_agent.storage.models import Attachment, Conversation, Message


class ConversationStore(ABC):
    """Persistence for conversations, messages and attachments."""

    @abstractmethod
    async def create_conversation(self, conversation: Conversation) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def list_conversations(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> list[Conversation]:
        ...

    @abstractmethod
    async def update_conversation(
        self, conversation_id: str, **changes: Any
    ) -> Optional[Conversation]:
        """Update mutable header fields (title, model, system_prompt, temperature,
        max_tokens, status, metadata)."""
        ...

    @abstractmethod
    async def add_token_usage(
        self, conversation_id: str, input_tokens: int, output_tokens: int
    ) -> bool:
        """Atomically increment the cumulative counters and touch last_message_at."""
        ...

    @abstractmethod
    async def create_message(self, message: Message) -> Optional[Message]:
        """Commit a message, assigning its id and next sequence number."""
        ...

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> list[Message]:
        ...

    @abstractmethod
    async def update_message_tokens(
        self, message_id: str, input_tokens: int, output_tokens: int
    ) -> bool:
        """Backfill token counts once usage becomes known after the fact."""
        ...

    @abstractmethod
    async def create_attachment(self, attachment: Attachment) -> Optional[Attachment]:
        ...

    @abstractmethod
    async def get_attachments(self, conversation_id: str) -> list[Attachment]:
        ...

    @abstractmethod
    async def branch_conversation(
        self, source_id: str, up_to_sequence: int, title: Optional[str] = None
    ) -> Optional[Conversation]:
        """Create a new conversation holding a copy of the source's messages
        with sequence number <= ``up_to_sequence``."""
        ...

    @abstractmethod
    async def search_messages(self, user_id: str, query: str, limit: int = 20) -> list[Message]:
        """Full-text search over a user's non-deleted conversations."""
        ...
