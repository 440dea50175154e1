"""Error taxonomy for the agent.

Only request validation and gateway failures travel as exceptions past a
component boundary. Tool failures are converted into ``ToolResult`` data by
the executor, and persistence failures are reported by the store as
``None`` / ``False`` return values.
"""

from __future__ import annotations


class AgentError(Exception):
    """Base class for all agent errors."""


class ValidationError(AgentError):
    """Bad request shape, unknown conversation, or ownership mismatch.

    Raised before any loop state is created.
    """


class ConversationBusyError(ValidationError):
    """A turn is already running for the conversation and the busy policy is ``reject``."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' already has a turn in progress")
        self.conversation_id = conversation_id


class DuplicateToolError(AgentError):
    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is already registered")
        self.name = name


class ToolError(AgentError):
    """Base for tool failures. Never propagates past the tool executor."""

    kind = "execution_error"

    def __init__(self, tool_name: str, message: str):
        super().__init__(message)
        self.tool_name = tool_name


class UnknownToolError(ToolError):
    kind = "unknown_tool"


class InvalidArgumentsError(ToolError):
    kind = "invalid_arguments"


class ToolTimeoutError(ToolError):
    kind = "timeout"


class ModelGatewayError(AgentError):
    """Inference call failed or the stream was interrupted. Aborts the turn."""


class UsageUnavailable(AgentError):
    """A finished model step carried no token usage report. Treated as zero."""


class PersistenceError(AgentError):
    """The store failed to commit a message, so sequence integrity is not guaranteed."""
