"""Tool definitions: typed input models, results, and the class-based tool interface."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel

ToolFunction = Callable[..., Awaitable[Any]]


class ToolInput(BaseModel):
    """Base class for tool argument models.

    Subclass with ``Field()`` definitions; the advertised JSON schema is
    generated with ``model_json_schema()``.
    """


class EmptyInput(ToolInput):
    pass


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: name, description, typed input schema and executor."""

    name: str
    description: str
    input_model: type[ToolInput]
    executor: ToolFunction

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.input_model.model_json_schema()

    def to_api_dict(self) -> dict[str, Any]:
        """Serialize to the tool descriptor format advertised to the model."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


@dataclass
class ToolResult:
    """Outcome of one tool execution.

    Failures are data: ``error`` and ``error_kind`` are set instead of an
    exception escaping the executor.
    """

    tool_name: str
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            return {"error": self.error, "kind": self.error_kind, "tool_name": self.tool_name}
        return {"result": self.data}

    def to_content(self) -> str:
        """Serialize for a tool-role message body."""
        return json.dumps(self.to_dict(), default=str)


class Tool(ABC):
    """Base class for tools that need state (HTTP clients, settings)."""

    name: str = ""
    description: str = ""
    input_model: type[ToolInput] = EmptyInput

    @abstractmethod
    async def execute(self, **kwargs: Any) -> Any:
        """Run the tool with validated arguments and return a JSON-serializable value."""
        ...
