"""Model gateway: one inference call as a lazy stream of events."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncGenerator, Optional, Union

import anthropic

from tool_loop_agent.ai.conversation import build_messages
from tool_loop_agent.config import AnthropicConfig
from tool_loop_agent.errors import ModelGatewayError, UsageUnavailable
from tool_loop_agent.log import get_logger
from tool_loop_agent.storage.models import Message

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )


@dataclass(frozen=True)
class TextDelta:
    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    """A complete tool call issued by the model."""

    id: str
    name: str
    arguments: Any = field(default_factory=dict)


@dataclass(frozen=True)
class ModelFinish:
    """Terminal event of a model stream.

    ``stop_reason`` is ``"tool_use"`` when the model is waiting for tool
    results, anything else for a natural stop.
    """

    stop_reason: str
    usage: Optional[TokenUsage] = None

    def require_usage(self) -> TokenUsage:
        if self.usage is None:
            raise UsageUnavailable("Model stream finished without a usage report")
        return self.usage


GatewayEvent = Union[TextDelta, ToolCallRequest, ModelFinish]


@dataclass
class ModelRequest:
    model: str
    system_prompt: str
    messages: list[Message]
    tools: list[dict[str, Any]] = field(default_factory=list)
    temperature: float = 0.7
    max_tokens: int = 4096


class ModelGateway(ABC):
    """Abstract inference backend."""

    @abstractmethod
    def stream(self, request: ModelRequest) -> AsyncGenerator[GatewayEvent, None]:
        """Yield text deltas and tool-call requests, ending with exactly one ``ModelFinish``.

        Raises ``ModelGatewayError`` when the call fails or the stream breaks
        off. Closing the iterator early aborts the in-flight inference.
        """
        ...

    async def close(self) -> None:
        """Release backend resources."""


class AnthropicGateway(ModelGateway):
    """Anthropic Messages API backend using the official SDK's streaming helper."""

    def __init__(self, config: AnthropicConfig, client: Any = None):
        if client is None:
            client = anthropic.AsyncAnthropic(
                api_key=config.api_key,
                base_url=config.base_url,
                max_retries=config.max_retries,
                timeout=config.timeout,
            )
        self._client = client

    async def stream(self, request: ModelRequest) -> AsyncGenerator[GatewayEvent, None]:
        kwargs: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "system": request.system_prompt,
            "messages": build_messages(request.messages),
            "temperature": request.temperature,
        }
        if request.tools:
            kwargs["tools"] = request.tools

        logger.debug("api_request", model=request.model, message_count=len(kwargs["messages"]))
        try:
            async with self._client.messages.stream(**kwargs) as stream:
                async for event in stream:
                    if event.type == "text":
                        yield TextDelta(event.text)
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            logger.error("api_error", model=request.model, error=str(e))
            raise ModelGatewayError(f"Inference call failed: {e}") from e

        for block in final.content:
            if block.type == "tool_use":
                yield ToolCallRequest(id=block.id, name=block.name, arguments=block.input)

        usage = None
        if final.usage is not None:
            usage = TokenUsage(
                input_tokens=final.usage.input_tokens or 0,
                output_tokens=final.usage.output_tokens or 0,
            )
        logger.debug(
            "api_response",
            model=request.model,
            stop_reason=final.stop_reason,
            input_tokens=usage.input_tokens if usage else None,
            output_tokens=usage.output_tokens if usage else None,
        )
        yield ModelFinish(stop_reason=final.stop_reason or "end_turn", usage=usage)

    async def close(self) -> None:
        await self._client.close()


class UnconfiguredGateway(ModelGateway):
    """Stands in when no backend is configured; every turn fails with a clear error."""

    async def stream(self, request: ModelRequest) -> AsyncGenerator[GatewayEvent, None]:
        raise ModelGatewayError("No model backend configured (set ANTHROPIC_API_KEY)")
        yield  # pragma: no cover
