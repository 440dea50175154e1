"""Tool executor: validation gate, timeout and error normalization around tool bodies."""

from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Collection

from pydantic import ValidationError as PydanticValidationError

from tool_loop_agent.ai.tools.base import ToolResult
from tool_loop_agent.ai.tools.registry import ToolRegistry
from tool_loop_agent.errors import (
    InvalidArgumentsError,
    ToolError,
    ToolTimeoutError,
    UnknownToolError,
)
from tool_loop_agent.log import get_logger

logger = get_logger(__name__)

DEFAULT_TOOL_TIMEOUT = 30.0


def _format_validation_error(exc: PydanticValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


class ToolExecutor:
    """Runs registered tools and turns every failure into a ``ToolResult``.

    The only side effects here are timing and error normalization; whatever a
    tool does to the outside world is its own business.
    """

    def __init__(self, registry: ToolRegistry, timeout: float = DEFAULT_TOOL_TIMEOUT):
        self._registry = registry
        self._timeout = timeout

    @property
    def timeout(self) -> float:
        return self._timeout

    async def execute(
        self,
        tool_name: str,
        raw_arguments: Any,
        timeout: float | None = None,
        allowed: Collection[str] | None = None,
    ) -> ToolResult:
        """Execute *tool_name*; ``allowed`` limits calls to the tools advertised for the turn."""
        limit = timeout if timeout is not None else self._timeout
        t0 = time.monotonic()
        try:
            if allowed is not None and tool_name not in allowed:
                raise UnknownToolError(tool_name, f"Tool not available: {tool_name}")
            data = await self._run(tool_name, raw_arguments, limit)
        except ToolError as e:
            elapsed = (time.monotonic() - t0) * 1000
            logger.warning(
                "tool_failed", tool=tool_name, kind=e.kind, error=str(e), duration_ms=round(elapsed, 1)
            )
            return ToolResult(tool_name=tool_name, error=str(e), error_kind=e.kind, duration_ms=elapsed)

        elapsed = (time.monotonic() - t0) * 1000
        logger.info("tool_succeeded", tool=tool_name, duration_ms=round(elapsed, 1))
        return ToolResult(tool_name=tool_name, data=data, duration_ms=elapsed)

    async def _run(self, tool_name: str, raw_arguments: Any, limit: float) -> Any:
        spec = self._registry.get(tool_name)
        if spec is None:
            raise UnknownToolError(tool_name, f"Unknown tool: {tool_name}")

        arguments = self._decode_arguments(tool_name, raw_arguments)
        try:
            params = spec.input_model.model_validate(arguments)
        except PydanticValidationError as e:
            raise InvalidArgumentsError(
                tool_name, f"Invalid arguments for {tool_name}: {_format_validation_error(e)}"
            ) from e

        logger.info("tool_execute", tool=tool_name, arguments=arguments)
        try:
            data = await asyncio.wait_for(spec.executor(**params.model_dump()), timeout=limit)
        except asyncio.TimeoutError as e:
            raise ToolTimeoutError(tool_name, f"Tool {tool_name} timed out after {limit:g} seconds") from e
        except Exception as e:
            logger.exception("tool_execution_error", tool=tool_name)
            raise ToolError(tool_name, f"Error executing {tool_name}: {e}") from e

        # The result is stored and fed back as JSON.
        try:
            json.dumps(data)
        except (TypeError, ValueError) as e:
            raise ToolError(tool_name, f"Result of {tool_name} is not JSON-serializable: {e}") from e
        return data

    @staticmethod
    def _decode_arguments(tool_name: str, raw_arguments: Any) -> dict[str, Any]:
        if raw_arguments is None or raw_arguments == "":
            return {}
        if isinstance(raw_arguments, (str, bytes)):
            try:
                raw_arguments = json.loads(raw_arguments)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                raise InvalidArgumentsError(
                    tool_name, f"Invalid arguments for {tool_name}: not valid JSON ({e})"
                ) from e
        if not isinstance(raw_arguments, dict):
            raise InvalidArgumentsError(
                tool_name, f"Invalid arguments for {tool_name}: expected an object"
            )
        return raw_arguments
