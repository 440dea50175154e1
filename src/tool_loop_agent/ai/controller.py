"""Tool loop controller: alternates model calls and tool execution for one turn.

Each turn walks ``idle -> awaiting_model -> (executing_tools -> awaiting_model)*``
and ends in ``done``, ``step_limit_reached``, ``failed`` or ``cancelled``.
At most ``max_steps`` model calls are made per turn, whatever the model asks for.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Optional

from tool_loop_agent.ai.gateway import (
    ModelFinish,
    ModelGateway,
    ModelRequest,
    TextDelta,
    TokenUsage,
    ToolCallRequest,
)
from tool_loop_agent.ai.stream import TurnStream
from tool_loop_agent.ai.tools.base import ToolResult
from tool_loop_agent.ai.tools.executor import ToolExecutor
from tool_loop_agent.core.types import EventType, Role, TurnState
from tool_loop_agent.errors import ModelGatewayError, PersistenceError, UsageUnavailable
from tool_loop_agent.log import get_logger
from tool_loop_agent.storage.base import ConversationStore
from tool_loop_agent.storage.models import Conversation, Message, ToolCallRecord

logger = get_logger(__name__)

STEP_LIMIT_MARKER = "[step limit reached]"


@dataclass
class TurnSettings:
    """Resolved configuration for one turn."""

    model: str
    system_prompt: str
    temperature: float
    max_tokens: int
    max_steps: int
    tools: list[dict[str, Any]] = field(default_factory=list)
    turn_timeout: float = 60.0

    @property
    def tool_names(self) -> frozenset[str]:
        return frozenset(t["name"] for t in self.tools)


@dataclass
class TurnOutcome:
    state: TurnState
    conversation_id: str
    turn_id: str
    final_text: Optional[str] = None
    steps: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    error: Optional[str] = None
    degraded: bool = False
    messages: list[Message] = field(default_factory=list)


@dataclass
class _StepOutput:
    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    usage_unavailable: bool = False
    stop_reason: str = ""
    cancelled: bool = False


class ToolLoopController:
    """Drives turns against an injected gateway, executor and store.

    The controller holds no per-turn state, so one instance can serve turns
    for many conversations at once.
    """

    def __init__(self, gateway: ModelGateway, executor: ToolExecutor, store: ConversationStore):
        self._gateway = gateway
        self._executor = executor
        self._store = store

    async def run_turn(
        self,
        conversation: Conversation,
        settings: TurnSettings,
        stream: TurnStream,
    ) -> TurnOutcome:
        run = _TurnRun(self._gateway, self._executor, self._store, conversation, settings, stream)
        return await run.run()


class _TurnRun:
    def __init__(
        self,
        gateway: ModelGateway,
        executor: ToolExecutor,
        store: ConversationStore,
        conversation: Conversation,
        settings: TurnSettings,
        stream: TurnStream,
    ):
        self._gateway = gateway
        self._executor = executor
        self._store = store
        self._conversation = conversation
        self._settings = settings
        self._stream = stream

        self.state = TurnState.IDLE
        self._history: list[Message] = []
        self._committed: list[Message] = []
        self._usage = TokenUsage()
        self._steps = 0
        self._last_text = ""
        self._deadline = 0.0

    def _transition(self, state: TurnState) -> None:
        logger.debug("turn_state", from_state=self.state.value, to_state=state.value, step=self._steps)
        self.state = state

    async def run(self) -> TurnOutcome:
        loop = asyncio.get_running_loop()
        self._deadline = loop.time() + self._settings.turn_timeout
        self._history = await self._store.get_messages(self._conversation.id)

        try:
            while self._steps < self._settings.max_steps:
                if self._stream.cancelled:
                    return await self._finish(TurnState.CANCELLED)

                self._transition(TurnState.AWAITING_MODEL)
                step = await self._call_model()
                if step.cancelled:
                    return await self._finish(TurnState.CANCELLED)
                if step.text:
                    self._last_text = step.text

                if not step.tool_calls:
                    await self._commit(Message(
                        conversation_id=self._conversation.id,
                        role=Role.ASSISTANT,
                        content=step.text,
                        model=self._settings.model,
                        input_tokens=step.usage.input_tokens,
                        output_tokens=step.usage.output_tokens,
                        metadata=self._step_metadata(step),
                    ))
                    return await self._finish(TurnState.DONE, final_text=step.text)

                if self._stream.cancelled:
                    # Nothing dispatched yet, so there is nothing to orphan.
                    return await self._finish(TurnState.CANCELLED)

                self._transition(TurnState.EXECUTING_TOOLS)
                orphaned = await self._run_tools(step)
                if orphaned:
                    return await self._finish(TurnState.CANCELLED)

            return await self._step_limit_reached()

        except ModelGatewayError as e:
            logger.error("turn_gateway_failure", error=str(e), step=self._steps)
            return await self._finish(TurnState.FAILED, error=str(e))
        except PersistenceError as e:
            logger.error("turn_persistence_failure", error=str(e), step=self._steps)
            return await self._finish(TurnState.FAILED, error=str(e))
        except Exception as e:
            logger.exception("turn_unexpected_error", step=self._steps)
            return await self._finish(TurnState.FAILED, error=f"Unexpected error: {e}")

    # ── model step ──────────────────────────────────────────────

    def _remaining(self) -> float:
        """Seconds left before the turn deadline; raises once it has passed."""
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise ModelGatewayError("Turn deadline exceeded")
        return remaining

    async def _call_model(self) -> _StepOutput:
        self._remaining()

        request = ModelRequest(
            model=self._settings.model,
            system_prompt=self._settings.system_prompt,
            messages=list(self._history),
            tools=self._settings.tools,
            temperature=self._settings.temperature,
            max_tokens=self._settings.max_tokens,
        )
        self._steps += 1
        step = _StepOutput()
        consume = asyncio.create_task(self._consume_model(request, step))
        cancel_wait = asyncio.create_task(self._stream.wait_cancelled())
        try:
            await asyncio.wait({consume, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not consume.done():
                # Cancelling the consumer closes the gateway stream, aborting inference.
                consume.cancel()
                await asyncio.gather(consume, return_exceptions=True)
                step.cancelled = True

        if step.cancelled:
            logger.info("model_stream_abandoned", step=self._steps)
            return step
        finish = consume.result()
        if finish is None:
            raise ModelGatewayError("Model stream ended without a finish event")

        step.stop_reason = finish.stop_reason
        try:
            step.usage = finish.require_usage()
        except UsageUnavailable as e:
            logger.warning("usage_unavailable", step=self._steps, error=str(e))
            step.usage_unavailable = True
        self._usage = self._usage + step.usage
        self._stream.publish(
            EventType.USAGE,
            step=self._steps,
            input_tokens=step.usage.input_tokens,
            output_tokens=step.usage.output_tokens,
            approximate=step.usage_unavailable,
        )
        logger.info(
            "model_step_finished",
            step=self._steps,
            stop_reason=step.stop_reason,
            tool_calls=len(step.tool_calls),
        )
        return step

    async def _consume_model(self, request: ModelRequest, step: _StepOutput) -> Optional[ModelFinish]:
        finish: Optional[ModelFinish] = None
        events = self._gateway.stream(request)
        try:
            async with asyncio.timeout_at(self._deadline):
                async for event in events:
                    if self._stream.cancelled:
                        step.cancelled = True
                        break
                    if isinstance(event, TextDelta):
                        step.text += event.text
                        self._stream.publish(EventType.TEXT_DELTA, text=event.text, step=self._steps)
                    elif isinstance(event, ToolCallRequest):
                        step.tool_calls.append(event)
                    elif isinstance(event, ModelFinish):
                        finish = event
        except TimeoutError as e:
            raise ModelGatewayError("Turn deadline exceeded while awaiting the model") from e
        finally:
            await events.aclose()
        return finish

    @staticmethod
    def _step_metadata(step: _StepOutput) -> dict[str, Any]:
        metadata: dict[str, Any] = {"stop_reason": step.stop_reason}
        if step.usage_unavailable:
            metadata["usage_unavailable"] = True
        return metadata

    # ── tool step ───────────────────────────────────────────────

    async def _run_tools(self, step: _StepOutput) -> bool:
        """Execute sibling tool calls concurrently and commit their records.

        Returns True when the turn was cancelled while the tools ran; the
        results are still committed, tagged as orphaned.
        """
        allowed = self._settings.tool_names
        # Tool steps count against the turn deadline too.
        timeout = min(self._executor.timeout, self._remaining())
        for call in step.tool_calls:
            self._stream.publish(
                EventType.TOOL_CALL_STARTED,
                tool_call_id=call.id,
                tool_name=call.name,
                arguments=call.arguments,
                step=self._steps,
            )

        tasks = [
            asyncio.create_task(
                self._executor.execute(call.name, call.arguments, timeout=timeout, allowed=allowed)
            )
            for call in step.tool_calls
        ]
        all_done = asyncio.gather(*tasks)
        cancel_wait = asyncio.create_task(self._stream.wait_cancelled())
        try:
            await asyncio.wait({all_done, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()

        orphaned = not all_done.done()
        if orphaned:
            logger.info("tools_orphaned", step=self._steps, count=len(tasks))
        # In-flight tools always run to completion; their side effects are real.
        results: list[ToolResult] = await all_done

        records = [
            ToolCallRecord(
                id=call.id,
                name=call.name,
                arguments=call.arguments if isinstance(call.arguments, dict) else {"raw": call.arguments},
                outcome=result.to_dict(),
                is_error=not result.success,
                duration_ms=round(result.duration_ms, 3),
            )
            for call, result in zip(step.tool_calls, results)
        ]
        await self._commit(Message(
            conversation_id=self._conversation.id,
            role=Role.ASSISTANT,
            content=step.text or None,
            tool_calls=records,
            model=self._settings.model,
            input_tokens=step.usage.input_tokens,
            output_tokens=step.usage.output_tokens,
            metadata=self._step_metadata(step),
        ))

        for call, result in zip(step.tool_calls, results):
            metadata: dict[str, Any] = {
                "tool_name": call.name,
                "is_error": not result.success,
                "duration_ms": round(result.duration_ms, 3),
            }
            if result.error_kind:
                metadata["error_kind"] = result.error_kind
            if orphaned:
                metadata["orphaned"] = True
            await self._commit(Message(
                conversation_id=self._conversation.id,
                role=Role.TOOL,
                content=result.to_content(),
                tool_call_id=call.id,
                metadata=metadata,
            ))
            self._stream.publish(
                EventType.TOOL_CALL_RESULT,
                tool_call_id=call.id,
                tool_name=call.name,
                result=result.to_dict(),
                is_error=not result.success,
                orphaned=orphaned,
                step=self._steps,
            )
        return orphaned

    # ── terminal handling ───────────────────────────────────────

    async def _step_limit_reached(self) -> TurnOutcome:
        self._remaining()
        logger.warning("step_limit_reached", max_steps=self._settings.max_steps)
        text = self._last_text or STEP_LIMIT_MARKER
        if not self._last_text:
            self._stream.publish(EventType.TEXT_DELTA, text=text, step=self._steps)
        await self._commit(Message(
            conversation_id=self._conversation.id,
            role=Role.ASSISTANT,
            content=text,
            model=self._settings.model,
            input_tokens=0,
            output_tokens=0,
            metadata={"synthesized": True, "stop_reason": "step_limit"},
        ))
        return await self._finish(TurnState.STEP_LIMIT_REACHED, final_text=text)

    async def _commit(self, message: Message) -> Message:
        saved = await self._store.create_message(message)
        if saved is None:
            raise PersistenceError(f"Failed to persist {message.role.value} message")
        self._history.append(saved)
        self._committed.append(saved)
        return saved

    async def _finish(
        self,
        state: TurnState,
        final_text: Optional[str] = None,
        error: Optional[str] = None,
    ) -> TurnOutcome:
        self._transition(state)
        degraded = not await self._store.add_token_usage(
            self._conversation.id, self._usage.input_tokens, self._usage.output_tokens
        )
        if degraded:
            logger.error("token_counters_not_updated", usage=self._usage)

        outcome = TurnOutcome(
            state=state,
            conversation_id=self._conversation.id,
            turn_id=self._stream.turn_id,
            final_text=final_text,
            steps=self._steps,
            usage=self._usage,
            error=error,
            degraded=degraded,
            messages=list(self._committed),
        )
        common = {
            "state": state.value,
            "steps": self._steps,
            "input_tokens": self._usage.input_tokens,
            "output_tokens": self._usage.output_tokens,
        }
        if state is TurnState.FAILED:
            self._stream.publish(EventType.TURN_FAILED, error=error, **common)
        elif state is TurnState.CANCELLED:
            self._stream.publish(EventType.TURN_CANCELLED, **common)
        else:
            self._stream.publish(
                EventType.TURN_DONE, final_text=final_text, degraded=degraded, **common
            )
        logger.info("turn_finished", **common, degraded=degraded)
        return outcome
