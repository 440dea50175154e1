"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncGenerator

import pytest

from tool_loop_agent.ai.controller import ToolLoopController, TurnSettings
from tool_loop_agent.ai.gateway import (
    GatewayEvent,
    ModelFinish,
    ModelGateway,
    ModelRequest,
    TextDelta,
    TokenUsage,
    ToolCallRequest,
)
from tool_loop_agent.ai.handler import AgentService
from tool_loop_agent.ai.tools.executor import ToolExecutor
from tool_loop_agent.ai.tools.registry import ToolRegistry, register_builtin_tools
from tool_loop_agent.config import AgentDefaults, ToolsConfig
from tool_loop_agent.core.session import TurnSessionManager
from tool_loop_agent.errors import ModelGatewayError
from tool_loop_agent.storage.conversation_repo import ConversationRepository
from tool_loop_agent.storage.database import Database


class ScriptedGateway(ModelGateway):
    """Replays one scripted response per model call and records every request."""

    def __init__(self) -> None:
        self.scripts: list[list[GatewayEvent] | Exception] = []
        self.requests: list[ModelRequest] = []
        self.closed = False

    def say(self, text: str, usage: tuple[int, int] | None = (10, 5)) -> ScriptedGateway:
        self.scripts.append([
            TextDelta(text),
            ModelFinish("end_turn", TokenUsage(*usage) if usage else None),
        ])
        return self

    def call_tools(
        self,
        *calls: tuple[str, str, Any],
        text: str = "",
        usage: tuple[int, int] = (20, 8),
    ) -> ScriptedGateway:
        events: list[GatewayEvent] = [TextDelta(text)] if text else []
        events.extend(ToolCallRequest(id=cid, name=name, arguments=args) for cid, name, args in calls)
        events.append(ModelFinish("tool_use", TokenUsage(*usage)))
        self.scripts.append(events)
        return self

    def fail(self, error: Exception) -> ScriptedGateway:
        self.scripts.append(error)
        return self

    async def stream(self, request: ModelRequest) -> AsyncGenerator[GatewayEvent, None]:
        self.requests.append(request)
        if not self.scripts:
            raise ModelGatewayError("No scripted response left")
        script = self.scripts.pop(0)
        if isinstance(script, Exception):
            raise script
        for event in script:
            await asyncio.sleep(0)
            yield event

    async def close(self) -> None:
        self.closed = True


# -- Storage -----------------------------------------------------------------


@pytest.fixture
async def db(tmp_path: Path) -> AsyncGenerator[Database, None]:
    database = Database(str(tmp_path / "test.db"))
    await database.initialize()
    yield database
    await database.close()


@pytest.fixture
async def repo(db: Database) -> ConversationRepository:
    return ConversationRepository(db)


# -- Tools -------------------------------------------------------------------


@pytest.fixture
def registry() -> ToolRegistry:
    reg = ToolRegistry()
    register_builtin_tools(reg, ToolsConfig())
    return reg


@pytest.fixture
def executor(registry: ToolRegistry) -> ToolExecutor:
    return ToolExecutor(registry, timeout=2.0)


# -- Loop --------------------------------------------------------------------


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def controller(
    gateway: ScriptedGateway, executor: ToolExecutor, repo: ConversationRepository
) -> ToolLoopController:
    return ToolLoopController(gateway, executor, repo)


@pytest.fixture
def make_settings(registry: ToolRegistry):
    def _make(**overrides: Any) -> TurnSettings:
        values: dict[str, Any] = {
            "model": "test-model",
            "system_prompt": "You are a test assistant.",
            "temperature": 0.0,
            "max_tokens": 256,
            "max_steps": 5,
            "tools": registry.describe(),
            "turn_timeout": 10.0,
        }
        values.update(overrides)
        return TurnSettings(**values)

    return _make


@pytest.fixture
def defaults() -> AgentDefaults:
    return AgentDefaults(model="test-model", max_steps=5, turn_timeout=10.0)


@pytest.fixture
def sessions() -> TurnSessionManager:
    return TurnSessionManager()


@pytest.fixture
async def service(
    repo: ConversationRepository,
    controller: ToolLoopController,
    registry: ToolRegistry,
    sessions: TurnSessionManager,
    defaults: AgentDefaults,
) -> AsyncGenerator[AgentService, None]:
    svc = AgentService(
        repo=repo,
        controller=controller,
        registry=registry,
        sessions=sessions,
        defaults=defaults,
    )
    yield svc
    await svc.shutdown()
