"""Application orchestrator - wires all components and manages lifecycle."""

from __future__ import annotations

from tool_loop_agent.ai.controller import ToolLoopController
from tool_loop_agent.ai.gateway import AnthropicGateway, ModelGateway, UnconfiguredGateway
from tool_loop_agent.ai.handler import AgentService
from tool_loop_agent.ai.tools.executor import ToolExecutor
from tool_loop_agent.ai.tools.registry import ToolRegistry, register_builtin_tools
from tool_loop_agent.config import AppConfig
from tool_loop_agent.core.session import TurnSessionManager
from tool_loop_agent.log import get_logger
from tool_loop_agent.storage.conversation_repo import ConversationRepository
from tool_loop_agent.storage.database import Database

logger = get_logger(__name__)


class AgentApp:
    """Top-level application orchestrator."""

    def __init__(self, config: AppConfig, gateway: ModelGateway | None = None):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.repo = ConversationRepository(self.db)
        self.tool_registry = ToolRegistry()
        self.executor = ToolExecutor(self.tool_registry, timeout=config.agent.tool_timeout)
        self.gateway = gateway or self._create_gateway()
        self.controller = ToolLoopController(self.gateway, self.executor, self.repo)
        self.sessions = TurnSessionManager(config.agent.busy_policy)
        self.service = AgentService(
            repo=self.repo,
            controller=self.controller,
            registry=self.tool_registry,
            sessions=self.sessions,
            defaults=config.agent,
        )

    async def start(self) -> None:
        """Initialize storage and register tools."""
        await self.db.initialize()
        register_builtin_tools(self.tool_registry, self.config.tools)
        logger.info("agent_started", tools=self.tool_registry.tool_names)

    async def stop(self) -> None:
        """Wait for running turns, then release the gateway and database."""
        await self.service.shutdown()
        await self.gateway.close()
        await self.db.close()
        logger.info("agent_stopped")

    def _create_gateway(self) -> ModelGateway:
        if not self.config.anthropic:
            logger.warning("model_backend_not_configured")
            return UnconfiguredGateway()
        return AnthropicGateway(self.config.anthropic)
