"""Tool registry: the capability table advertised to the model."""

from __future__ import annotations

import inspect
from typing import TYPE_CHECKING, Any, Iterable

from tool_loop_agent.ai.tools.base import EmptyInput, Tool, ToolFunction, ToolInput, ToolSpec
from tool_loop_agent.errors import DuplicateToolError
from tool_loop_agent.log import get_logger

if TYPE_CHECKING:
    from tool_loop_agent.config import ToolsConfig

logger = get_logger(__name__)


class ToolRegistry:
    """Registry of all available tools, keyed by name."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        description: str,
        input_model: type[ToolInput] | None,
        executor: ToolFunction,
    ) -> ToolSpec:
        if name in self._tools:
            raise DuplicateToolError(name)
        if not inspect.iscoroutinefunction(executor):
            raise TypeError(f"Tool executor '{name}' must be an async function")

        spec = ToolSpec(
            name=name,
            description=description,
            input_model=input_model or EmptyInput,
            executor=executor,
        )
        self._tools[name] = spec
        logger.info("tool_registered", tool_name=name)
        return spec

    def register_tool(self, tool: Tool) -> ToolSpec:
        """Register a class-based tool instance."""
        return self.register(tool.name, tool.description, tool.input_model, tool.execute)

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    @property
    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def resolve(self, names: Iterable[str] | None) -> list[ToolSpec]:
        """Return the registered tools matching *names*, in registration order.

        ``None`` selects every tool. Unknown names are dropped, not rejected.
        """
        if names is None:
            return list(self._tools.values())
        requested = set(names)
        unknown = requested - self._tools.keys()
        if unknown:
            logger.warning("unknown_tools_dropped", tools=sorted(unknown))
        return [spec for name, spec in self._tools.items() if name in requested]

    def describe(self, names: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Tool descriptors ``{name, description, input_schema}`` for the model."""
        return [spec.to_api_dict() for spec in self.resolve(names)]


def register_builtin_tools(registry: ToolRegistry, config: ToolsConfig) -> None:
    """Register the built-in tool set."""
    from tool_loop_agent.ai.tools.calculator import CalculatorTool
    from tool_loop_agent.ai.tools.datetime_tool import DateTimeTool
    from tool_loop_agent.ai.tools.weather import WeatherTool
    from tool_loop_agent.ai.tools.web_search import WebSearchTool

    registry.register_tool(DateTimeTool())
    registry.register_tool(WeatherTool(base_url=config.weather_base_url, timeout=config.http_timeout))
    registry.register_tool(CalculatorTool())
    registry.register_tool(WebSearchTool(default_results=config.search_results))
