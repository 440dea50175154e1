"""Agent service: turn requests in, event streams out, plus conversation management."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from tool_loop_agent.ai.controller import ToolLoopController, TurnOutcome, TurnSettings
from tool_loop_agent.ai.stream import TurnStream
from tool_loop_agent.ai.tools.registry import ToolRegistry
from tool_loop_agent.config import AgentDefaults, TurnOverrides
from tool_loop_agent.core.session import TurnSessionManager
from tool_loop_agent.core.types import ConversationStatus, EventType, Role, TurnState
from tool_loop_agent.errors import PersistenceError, ValidationError
from tool_loop_agent.log import get_logger, turn_context
from tool_loop_agent.storage.base import ConversationStore
from tool_loop_agent.storage.models import Attachment, Conversation, Message

logger = get_logger(__name__)

MAX_TITLE_LENGTH = 100
DEFAULT_TITLE = "New Conversation"


class IncomingAttachment(BaseModel):
    name: str = Field(min_length=1)
    file_url: str = Field(min_length=1)
    file_type: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class IncomingMessage(BaseModel):
    role: Role
    content: str
    attachments: list[IncomingAttachment] = Field(default_factory=list)


class TurnRequest(BaseModel):
    conversation_id: Optional[str] = None
    messages: list[IncomingMessage]
    config: Optional[TurnOverrides] = None


@dataclass
class ConversationView:
    conversation: Conversation
    messages: list[Message] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)


class AgentService:
    """Entry point for clients.

    ``start_turn`` validates synchronously (errors surface before any loop
    state exists), then runs the turn in a background task that feeds the
    returned ``TurnStream``.
    """

    def __init__(
        self,
        repo: ConversationStore,
        controller: ToolLoopController,
        registry: ToolRegistry,
        sessions: TurnSessionManager,
        defaults: AgentDefaults,
    ):
        self._repo = repo
        self._controller = controller
        self._registry = registry
        self._sessions = sessions
        self._defaults = defaults
        self._tasks: set[asyncio.Task] = set()

    # ── turns ───────────────────────────────────────────────────

    async def start_turn(
        self, user_id: str, request: Union[TurnRequest, dict[str, Any]]
    ) -> TurnStream:
        request = self._parse_request(request)
        overrides = request.config or TurnOverrides()
        user_messages = [m for m in request.messages if m.role == Role.USER]
        ignored = len(request.messages) - len(user_messages)
        if ignored:
            logger.debug("non_user_messages_ignored", count=ignored)

        if request.conversation_id:
            conversation = await self._owned_conversation(user_id, request.conversation_id)
            if conversation.status is not ConversationStatus.ACTIVE:
                raise ValidationError(
                    f"Conversation is {conversation.status.value}; only active conversations accept turns"
                )
            created = False
        else:
            conversation = await self._create_conversation(user_id, user_messages, overrides)
            created = True

        settings = self._resolve_settings(conversation, overrides)
        turn_id = self._sessions.new_turn_id()
        self._sessions.claim(conversation.id, turn_id)

        stream = TurnStream(conversation.id, turn_id)
        stream.publish(
            EventType.CONVERSATION,
            conversation_id=conversation.id,
            turn_id=turn_id,
            created=created,
        )
        task = asyncio.create_task(self._drive(stream, conversation, user_messages, settings))
        stream.task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.info(
            "turn_started",
            conversation_id=conversation.id,
            turn_id=turn_id,
            model=settings.model,
            tools=sorted(settings.tool_names),
        )
        return stream

    async def run_turn(self, user_id: str, request: Union[TurnRequest, dict[str, Any]]) -> TurnOutcome:
        """Run a turn to completion without consuming its events."""
        stream = await self.start_turn(user_id, request)
        return await stream.wait()

    @staticmethod
    def _parse_request(request: Union[TurnRequest, dict[str, Any]]) -> TurnRequest:
        if isinstance(request, dict):
            try:
                request = TurnRequest.model_validate(request)
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid request: {e.error_count()} validation error(s)") from e
        if not request.messages:
            raise ValidationError("Messages are required")
        if not any(m.role == Role.USER and m.content.strip() for m in request.messages):
            raise ValidationError("At least one non-empty user message is required")
        return request

    async def _create_conversation(
        self,
        user_id: str,
        user_messages: list[IncomingMessage],
        overrides: TurnOverrides,
    ) -> Conversation:
        first = next((m.content.strip() for m in user_messages if m.content.strip()), "")
        conversation = await self._repo.create_conversation(Conversation(
            user_id=user_id,
            title=first[:MAX_TITLE_LENGTH] or DEFAULT_TITLE,
            model=overrides.model or self._defaults.model,
            system_prompt=overrides.system_prompt or self._defaults.system_prompt,
            temperature=(
                overrides.temperature if overrides.temperature is not None else self._defaults.temperature
            ),
            max_tokens=overrides.max_tokens or self._defaults.max_tokens,
        ))
        if conversation is None:
            raise PersistenceError("Failed to create conversation")
        return conversation

    def _resolve_settings(self, conversation: Conversation, overrides: TurnOverrides) -> TurnSettings:
        """Request overrides win over the conversation header, which wins over defaults."""
        if overrides.tools is not None:
            tool_names: Optional[list[str]] = overrides.tools
        else:
            tool_names = self._defaults.tools or None
        return TurnSettings(
            model=overrides.model or conversation.model or self._defaults.model,
            system_prompt=(
                overrides.system_prompt or conversation.system_prompt or self._defaults.system_prompt
            ),
            temperature=(
                overrides.temperature if overrides.temperature is not None else conversation.temperature
            ),
            max_tokens=overrides.max_tokens or conversation.max_tokens,
            max_steps=overrides.max_steps or self._defaults.max_steps,
            tools=self._registry.describe(tool_names),
            turn_timeout=self._defaults.turn_timeout,
        )

    async def _drive(
        self,
        stream: TurnStream,
        conversation: Conversation,
        user_messages: list[IncomingMessage],
        settings: TurnSettings,
    ) -> TurnOutcome:
        with turn_context(conversation.id, stream.turn_id):
            try:
                async with self._sessions.hold(conversation.id, stream.turn_id):
                    if stream.cancelled:
                        stream.publish(EventType.TURN_CANCELLED, state=TurnState.CANCELLED.value, steps=0)
                        return TurnOutcome(TurnState.CANCELLED, conversation.id, stream.turn_id)
                    try:
                        await self._persist_user_messages(conversation.id, user_messages)
                    except PersistenceError as e:
                        logger.error("user_message_not_persisted", error=str(e))
                        stream.publish(
                            EventType.TURN_FAILED, state=TurnState.FAILED.value, steps=0, error=str(e)
                        )
                        return TurnOutcome(TurnState.FAILED, conversation.id, stream.turn_id, error=str(e))
                    return await self._controller.run_turn(conversation, settings, stream)
            finally:
                stream.close()

    async def _persist_user_messages(
        self, conversation_id: str, user_messages: list[IncomingMessage]
    ) -> None:
        for incoming in user_messages:
            message = await self._repo.create_message(Message(
                conversation_id=conversation_id,
                role=Role.USER,
                content=incoming.content,
            ))
            if message is None:
                raise PersistenceError("Failed to persist user message")
            for att in incoming.attachments:
                saved = await self._repo.create_attachment(Attachment(
                    conversation_id=conversation_id,
                    message_id=message.id,
                    name=att.name,
                    file_url=att.file_url,
                    file_type=att.file_type,
                    file_size=att.file_size,
                    metadata=att.metadata,
                ))
                if saved is None:
                    logger.warning("attachment_not_persisted", name=att.name)

    async def shutdown(self) -> None:
        """Wait for running turns; in-flight tools are allowed to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ── conversations ───────────────────────────────────────────

    async def _owned_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        conversation = await self._repo.get_conversation(conversation_id)
        if conversation is None:
            raise ValidationError("Conversation not found")
        if conversation.user_id != user_id:
            raise ValidationError("Conversation belongs to another user")
        return conversation

    async def get_conversation(self, user_id: str, conversation_id: str) -> ConversationView:
        conversation = await self._owned_conversation(user_id, conversation_id)
        return ConversationView(
            conversation=conversation,
            messages=await self._repo.get_messages(conversation_id),
            attachments=await self._repo.get_attachments(conversation_id),
        )

    async def list_conversations(
        self,
        user_id: str,
        status: Optional[ConversationStatus] = None,
        limit: int = 50,
    ) -> list[Conversation]:
        return await self._repo.list_conversations(user_id, status=status, limit=limit)

    async def rename(self, user_id: str, conversation_id: str, title: str) -> Conversation:
        title = title.strip()
        if not title:
            raise ValidationError("Title must not be empty")
        conversation = await self._owned_conversation(user_id, conversation_id)
        if conversation.status is ConversationStatus.DELETED:
            raise ValidationError("Deleted conversations cannot be edited")
        return await self._update(conversation_id, title=title[:MAX_TITLE_LENGTH])

    async def set_status(
        self, user_id: str, conversation_id: str, status: ConversationStatus
    ) -> Conversation:
        conversation = await self._owned_conversation(user_id, conversation_id)
        if not conversation.status.can_transition_to(status):
            raise ValidationError(
                f"Cannot change status from {conversation.status.value} to {status.value}"
            )
        if conversation.status is status:
            return conversation
        logger.info(
            "conversation_status_changed",
            conversation_id=conversation_id,
            from_status=conversation.status.value,
            to_status=status.value,
        )
        return await self._update(conversation_id, status=status)

    async def archive(self, user_id: str, conversation_id: str) -> Conversation:
        return await self.set_status(user_id, conversation_id, ConversationStatus.ARCHIVED)

    async def unarchive(self, user_id: str, conversation_id: str) -> Conversation:
        return await self.set_status(user_id, conversation_id, ConversationStatus.ACTIVE)

    async def delete(self, user_id: str, conversation_id: str) -> Conversation:
        """Soft delete; the rows stay in the store."""
        return await self.set_status(user_id, conversation_id, ConversationStatus.DELETED)

    async def branch(
        self,
        user_id: str,
        conversation_id: str,
        at_sequence: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Conversation:
        """Copy the transcript up to ``at_sequence`` (default: all of it) into a new conversation."""
        source = await self._owned_conversation(user_id, conversation_id)
        if source.status is ConversationStatus.DELETED:
            raise ValidationError("Deleted conversations cannot be branched")
        messages = await self._repo.get_messages(conversation_id)
        last = messages[-1].sequence_number if messages else 0
        if at_sequence is None:
            at_sequence = last
        if at_sequence < 1 or at_sequence > last:
            raise ValidationError(f"Branch point must be between 1 and {last}")

        branch = await self._repo.branch_conversation(
            conversation_id, at_sequence, title=title or f"Branch of {source.title}"[:MAX_TITLE_LENGTH]
        )
        if branch is None:
            raise PersistenceError("Failed to branch conversation")
        return branch

    async def search(self, user_id: str, query: str, limit: int = 20) -> list[Message]:
        if not query.strip():
            raise ValidationError("Search query must not be empty")
        return await self._repo.search_messages(user_id, query, limit=limit)

    async def _update(self, conversation_id: str, **changes: Any) -> Conversation:
        updated = await self._repo.update_conversation(conversation_id, **changes)
        if updated is None:
            raise PersistenceError("Failed to update conversation")
        return updated
