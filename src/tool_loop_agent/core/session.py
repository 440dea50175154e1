"""Turn session manager: one writer per conversation."""

from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator

from tool_loop_agent.core.types import BusyPolicy
from tool_loop_agent.errors import ConversationBusyError
from tool_loop_agent.log import get_logger

logger = get_logger(__name__)


class TurnSessionManager:
    """Serializes turns per conversation.

    ``claim()`` runs synchronously when a turn is requested. Under the
    ``reject`` policy it refuses a conversation that already has a claimed
    turn; under ``queue`` the turn waits in ``hold()`` behind the earlier
    ones. Turns for different conversations never wait on each other.
    """

    def __init__(self, policy: BusyPolicy = BusyPolicy.QUEUE):
        self._policy = policy
        self._locks: dict[str, asyncio.Lock] = {}
        self._claims: dict[str, list[str]] = {}

    @staticmethod
    def new_turn_id() -> str:
        return uuid.uuid4().hex[:12]

    @property
    def policy(self) -> BusyPolicy:
        return self._policy

    def is_busy(self, conversation_id: str) -> bool:
        return bool(self._claims.get(conversation_id))

    def active_turns(self, conversation_id: str) -> list[str]:
        return list(self._claims.get(conversation_id, []))

    def claim(self, conversation_id: str, turn_id: str) -> None:
        if self._policy is BusyPolicy.REJECT and self.is_busy(conversation_id):
            logger.info("turn_rejected_busy", conversation_id=conversation_id, turn_id=turn_id)
            raise ConversationBusyError(conversation_id)
        self._claims.setdefault(conversation_id, []).append(turn_id)

    def release(self, conversation_id: str, turn_id: str) -> None:
        claims = self._claims.get(conversation_id)
        if not claims:
            return
        if turn_id in claims:
            claims.remove(turn_id)
        if not claims:
            del self._claims[conversation_id]
            lock = self._locks.get(conversation_id)
            if lock is not None and not lock.locked():
                del self._locks[conversation_id]

    @asynccontextmanager
    async def hold(self, conversation_id: str, turn_id: str) -> AsyncIterator[None]:
        """Hold the conversation's writer slot; releases the claim on exit."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = self._locks[conversation_id] = asyncio.Lock()
        try:
            if lock.locked():
                logger.info("turn_queued", conversation_id=conversation_id, turn_id=turn_id)
            async with lock:
                yield
        finally:
            self.release(conversation_id, turn_id)
