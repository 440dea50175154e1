"""Shared types and enumerations."""

from __future__ import annotations

from enum import StrEnum


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


class ConversationStatus(StrEnum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    DELETED = "deleted"

    def can_transition_to(self, target: ConversationStatus) -> bool:
        """active <-> archived in either direction, anything -> deleted, deleted is terminal."""
        if self is ConversationStatus.DELETED:
            return target is ConversationStatus.DELETED
        return True


class TurnState(StrEnum):
    IDLE = "idle"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    FAILED = "failed"
    STEP_LIMIT_REACHED = "step_limit_reached"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset({
    TurnState.DONE,
    TurnState.FAILED,
    TurnState.STEP_LIMIT_REACHED,
    TurnState.CANCELLED,
})


class EventType(StrEnum):
    CONVERSATION = "conversation"
    TEXT_DELTA = "text_delta"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_RESULT = "tool_call_result"
    USAGE = "usage"
    TURN_DONE = "turn_done"
    TURN_FAILED = "turn_failed"
    TURN_CANCELLED = "turn_cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (EventType.TURN_DONE, EventType.TURN_FAILED, EventType.TURN_CANCELLED)


class BusyPolicy(StrEnum):
    QUEUE = "queue"
    REJECT = "reject"
