"""
Wiring for a complete relay process.

RelayService owns one instance of every component and connects them: the registry's
release hooks tear down connections, browsers and in-flight commands of a deleted session,
and the connection manager feeds results and disconnects into the dispatcher.
"""

from __future__ import annotations

import contextlib
import logging
from typing import Any

from .agent_loop import TaskAgent, TaskResult
from .browser_pool import BrowserPool, PageFactory
from .config import RelayConfig
from .connection_manager import ConnectionManager
from .dispatcher import CommandDispatcher
from .launcher import BrowserLauncher
from .planner.base import Planner
from .session_registry import SessionRegistry

logger = logging.getLogger("browser_relay.service")


class RelayService:
    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        planner: Planner | None = None,
        launcher: BrowserLauncher | None = None,
        page_factory: PageFactory | None = None,
    ) -> None:
        self.config = config or RelayConfig.from_env()
        self.registry = SessionRegistry(self.config)
        self.pool = BrowserPool(self.config, launcher=launcher, page_factory=page_factory)
        self.connections = ConnectionManager(self.registry, self.config)
        self.dispatcher = CommandDispatcher(
            self.registry, connections=self.connections, pool=self.pool, config=self.config
        )
        self.connections.on_command_result = self.dispatcher.handle_command_result
        self.connections.on_disconnect = self.dispatcher.fail_session

        if planner is None:
            from .planner.gemini import GeminiPlanner

            planner = GeminiPlanner(self.config)
        self.agent = TaskAgent(self.registry, self.dispatcher, planner, self.config)

        self.registry.add_release_hook(self._release_connection)
        self.registry.add_release_hook(self.pool.dispose)
        self.registry.add_release_hook(self.dispatcher.cleanup_session)
        self._started = False

    def _release_connection(self, session_id: str) -> None:
        self.connections.disconnect(session_id, code=1000, reason="Session deleted")

    def start(self, *, listen: bool = True) -> None:
        if self._started:
            return
        self.registry.start()
        if listen:
            self.connections.start()
        self._started = True
        logger.info(
            "relay_started host=%s port=%s env=%s listen=%s",
            self.config.host,
            self.connections.port,
            self.config.environment,
            listen,
        )

    def stop(self) -> None:
        self.dispatcher.shutdown()
        with contextlib.suppress(Exception):
            self.connections.close_all()
        self.connections.stop()
        self.registry.stop()
        self.pool.dispose_all()
        self._started = False
        logger.info("relay_stopped")

    def __enter__(self) -> RelayService:
        return self

    def __exit__(self, *exc: object) -> None:
        self.stop()

    def run_task(self, session_id: str, instruction: str, *, max_iterations: int | None = None) -> TaskResult:
        return self.agent.run(session_id, instruction, max_iterations=max_iterations)

    def status(self) -> dict[str, Any]:
        return {
            "environment": self.config.environment,
            "sessions": self.registry.statistics(),
            "connections": self.connections.status(),
            "browsers": self.pool.status(),
            "pendingCommands": self.dispatcher.pending_count(),
        }
