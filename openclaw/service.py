"""
Gateway runtime — wires the subsystems together and owns their lifecycle.

    SessionStore ─┐
    LLMClient ────┤
    ToolRegistry ─┼─► AgentLoop ─► RequestRouter ─► GatewayServer
    ToolExecutor ─┤
    ContextManager┘

Lifecycle: build → run() (start store, start gateway, wait for shutdown)
→ cleanup (stop gateway, then store).
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional, Sequence

import structlog

from openclaw.api.claude import LLMClient
from openclaw.config import OpenClawConfig
from openclaw.gateway import GatewayServer
from openclaw.harness.context import ContextManager
from openclaw.harness.loop import AgentLoop
from openclaw.harness.prompt import SystemPromptBuilder
from openclaw.memory.session_store import SessionStore
from openclaw.rpc import RequestRouter, register_default_methods
from openclaw.tools.executor import ToolExecutor
from openclaw.tools.registry import Tool, ToolRegistry

logger = structlog.get_logger(__name__)


class GatewayRuntime:
    """
    The assembled gateway process.

    Collaborators may be injected (tests pass a fake LLM client); anything not
    given is built from the configuration.
    """

    def __init__(
        self,
        config: OpenClawConfig,
        *,
        tools: Optional[Sequence[Tool]] = None,
        llm: Optional[LLMClient] = None,
    ) -> None:
        self._config = config
        self._shutdown_event = asyncio.Event()

        self.session_store = SessionStore(
            config.sessions.sessions_dir,
            session_ttl=config.sessions.session_ttl,
            eviction_interval=config.sessions.eviction_interval,
            strict_persistence=config.sessions.strict_persistence,
        )
        self.llm = llm if llm is not None else LLMClient(config.claude)
        self.registry = ToolRegistry(list(tools or []))
        self.executor = ToolExecutor(
            self.registry,
            default_timeout=config.tools.default_timeout,
            max_output_length=config.tools.max_output_length,
            max_concurrent=config.tools.max_concurrent,
        )
        self.agent_loop = AgentLoop(
            self.session_store,
            self.llm,
            self.executor,
            ContextManager(config.agent),
            SystemPromptBuilder(config.agent),
            config.agent,
            model=config.claude.model,
        )
        self.router = RequestRouter()
        register_default_methods(self.router, self.agent_loop, self.session_store)
        self.gateway = GatewayServer(config.gateway, self.router)

    async def start(self) -> None:
        await self.session_store.start()
        await self.gateway.start()
        logger.info(
            "runtime.started",
            sessions=self.session_store.session_count,
            tools=self.registry.names,
        )

    async def stop(self) -> None:
        await self.gateway.stop()
        await self.session_store.stop()
        logger.info("runtime.stopped")

    async def run(self) -> None:
        """Full lifecycle: start → serve until shutdown is requested → stop."""
        try:
            await self.start()
            await self._shutdown_event.wait()
        finally:
            await self.stop()

    def request_shutdown(self, reason: str) -> None:
        logger.info("runtime.shutdown_requested", reason=reason)
        self._shutdown_event.set()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        """Install SIGINT/SIGTERM handlers for graceful shutdown."""
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig, self.request_shutdown, f"signal_{sig.name.lower()}"
                )
            except NotImplementedError:
                pass
