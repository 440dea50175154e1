"""Stream publisher: ordered, cancellable event channel between a turn and its client."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

from tool_loop_agent.core.types import EventType
from tool_loop_agent.log import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TurnEvent:
    type: EventType
    index: int
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type.value, "index": self.index, **self.data}


class TurnStream:
    """Single-consumer channel of ``TurnEvent``s for one turn.

    The producing controller publishes onto an unbounded buffer; the client
    iterates it exactly once. The client stops a turn with ``cancel()``,
    which the controller observes at its next suspension point; the client
    never raises into the producer.
    """

    def __init__(self, conversation_id: str, turn_id: str):
        self.conversation_id = conversation_id
        self.turn_id = turn_id
        self._queue: asyncio.Queue[Optional[TurnEvent]] = asyncio.Queue()
        self._cancel = asyncio.Event()
        self._next_index = 0
        self._closed = False
        self._terminated = False
        self._consumer_attached = False
        self.task: Optional[asyncio.Task] = None

    # ── producer side ───────────────────────────────────────────

    def publish(self, event_type: EventType, **data: Any) -> Optional[TurnEvent]:
        """Append an event. Nothing is accepted after a terminal event or close()."""
        if self._closed or self._terminated:
            logger.debug("event_dropped", event_type=event_type.value)
            return None
        event = TurnEvent(type=event_type, index=self._next_index, data=data)
        self._next_index += 1
        if event_type.is_terminal:
            self._terminated = True
        self._queue.put_nowait(event)
        return event

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    @property
    def closed(self) -> bool:
        return self._closed

    # ── consumer side ───────────────────────────────────────────

    def cancel(self) -> None:
        if not self._cancel.is_set():
            logger.info("turn_cancel_requested", turn_id=self.turn_id)
            self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    async def wait_cancelled(self) -> None:
        await self._cancel.wait()

    def __aiter__(self) -> AsyncIterator[TurnEvent]:
        if self._consumer_attached:
            raise RuntimeError("TurnStream supports a single consumer")
        self._consumer_attached = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TurnEvent]:
        finished = False
        try:
            while True:
                event = await self._queue.get()
                if event is None:
                    finished = True
                    return
                yield event
        finally:
            # A consumer that walks away early stops the turn.
            if not finished and not self._terminated:
                self.cancel()

    async def collect(self) -> list[TurnEvent]:
        """Drain the whole stream; convenient for non-streaming callers and tests."""
        return [event async for event in self]

    async def wait(self) -> Any:
        """Wait for the producing task and return its outcome."""
        if self.task is None:
            raise RuntimeError("TurnStream has no producer task")
        return await self.task
