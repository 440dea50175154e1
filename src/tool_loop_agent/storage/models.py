"""Data models for storage layer."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from tool_loop_agent.core.types import ConversationStatus, Role


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Conversation:
    user_id: str
    model: str
    title: str = "New Conversation"
    system_prompt: Optional[str] = None
    temperature: float = 0.7
    max_tokens: int = 4096
    status: ConversationStatus = ConversationStatus.ACTIVE
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_message_at: Optional[datetime] = None
    id: str = ""


@dataclass
class ToolCallRecord:
    """A tool call requested by the model, embedded in its assistant message.

    ``outcome`` and ``duration_ms`` are filled once the call has executed.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    outcome: Optional[dict[str, Any]] = None
    is_error: bool = False
    duration_ms: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCallRecord:
        return cls(
            id=data["id"],
            name=data["name"],
            arguments=data.get("arguments") or {},
            outcome=data.get("outcome"),
            is_error=bool(data.get("is_error", False)),
            duration_ms=data.get("duration_ms"),
        )


@dataclass
class Message:
    conversation_id: str
    role: Role
    content: Optional[str] = None
    tool_calls: list[ToolCallRecord] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    model: Optional[str] = None
    input_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    # Assigned by the store at commit time, never by callers.
    sequence_number: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = ""

    @property
    def is_orphaned(self) -> bool:
        return bool(self.metadata.get("orphaned"))


@dataclass
class Attachment:
    conversation_id: str
    name: str
    file_url: str
    message_id: Optional[str] = None
    file_type: Optional[str] = None
    file_size: Optional[int] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    id: str = ""
