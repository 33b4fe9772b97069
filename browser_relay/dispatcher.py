from __future__ import annotations

import contextlib
import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from .commands import Command, validate_command
from .config import RelayConfig
from .errors import (
    CapacityError,
    CommandNotFoundError,
    CommandTimeoutError,
    ConnectivityError,
    ExecutionError,
    RelayError,
)
from .session_registry import Session, SessionRegistry

if TYPE_CHECKING:
    from .browser_pool import BrowserPool
    from .connection_manager import ConnectionManager

logger = logging.getLogger("browser_relay.dispatcher")

MAX_INDEXED_COMMANDS = 10_000


@dataclass
class PendingCommand:
    command: Command
    future: Future


class CommandDispatcher:
    """Validates commands, picks an execution path and correlates results.

    Every in-flight command owns one Future in the correlation table. Whoever pops the entry
    first (result, timeout, connection loss or cancel) settles it; anything arriving later
    finds nothing to pop and is dropped.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        connections: ConnectionManager | None = None,
        pool: BrowserPool | None = None,
        config: RelayConfig | None = None,
    ) -> None:
        self.registry = registry
        self.connections = connections
        self.pool = pool
        self.config = config or registry.config

        self._lock = threading.Lock()
        self._pending: dict[str, PendingCommand] = {}
        self._backlog: dict[str, int] = {}
        self._index: OrderedDict[str, Command] = OrderedDict()
        self._executor = ThreadPoolExecutor(
            max_workers=max(4, min(64, int(self.config.max_sessions))),
            thread_name_prefix="relay-server-command",
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Public API
    # ─────────────────────────────────────────────────────────────────────────

    def validate(self, spec: Any) -> dict[str, Any]:
        return validate_command(
            spec,
            default_timeout_ms=self.config.command_timeout_ms,
            max_timeout_ms=self.config.max_command_timeout_ms,
        )

    def execute(self, session_id: str, spec: Any) -> dict[str, Any]:
        """Validate, route and run one command, blocking until its terminal outcome."""
        normalized = self.validate(spec)
        session = self.registry.get(session_id)
        override = spec.get("executionMode") if isinstance(spec, dict) else None
        target = self._route(session, override)

        command = Command(
            session_id=session.id,
            type=normalized["type"],
            payload=normalized["payload"],
            timeout=normalized["timeout"] / 1000.0,
            executed_by=target,
        )
        self._admit(session.id)
        try:
            self.registry.add_command(session.id, command)
            self._remember(command)
            logger.info(
                "command_dispatch id=%s session=%s type=%s target=%s", command.id, session.id, command.type, target
            )
            fut = self._track(command)
            if target == "extension":
                self._send_extension(command)
            else:
                self._submit_server(command)
            return self._await(command, fut)
        finally:
            self._release(session.id)

    def handle_command_result(self, command_id: str, success: bool, result: Any = None, error: str | None = None) -> bool:
        """Deliver a ``command_result`` frame. Returns False for unknown or already settled ids."""
        if success:
            settled = self._settle(command_id, status="completed", result=result)
        else:
            settled = self._settle(
                command_id,
                status="failed",
                error=ExecutionError(error or "Command failed on the client", details={"commandId": command_id}),
            )
        if not settled:
            logger.warning("late_command_result commandId=%s dropped", command_id)
        return settled

    def cancel(self, command_id: str) -> bool:
        with self._lock:
            entry = self._pending.get(command_id)
        if entry is None:
            return False
        if entry.command.executed_by == "extension":
            self._send_cancel(entry.command)
        return self._settle(
            command_id,
            status="cancelled",
            error=ExecutionError("Command cancelled", details={"commandId": command_id, "cancelled": True}),
        )

    def fail_session(self, session_id: str, reason: str = "connection lost") -> int:
        """Fail every in-flight extension command of a session (its connection went away)."""
        with self._lock:
            ids = [
                cid
                for cid, entry in self._pending.items()
                if entry.command.session_id == session_id and entry.command.executed_by == "extension"
            ]
        failed = 0
        for cid in ids:
            if self._settle(
                cid,
                status="failed",
                error=ConnectivityError(
                    f"Connection lost before the command completed ({reason})",
                    suggestion="Reconnect the client and resubmit the command",
                    details={"commandId": cid, "sessionId": session_id},
                ),
            ):
                failed += 1
        if failed:
            logger.info("session_commands_failed session=%s count=%d reason=%s", session_id, failed, reason)
        return failed

    def cleanup_session(self, session_id: str) -> None:
        with self._lock:
            ids = [cid for cid, entry in self._pending.items() if entry.command.session_id == session_id]
        for cid in ids:
            self._settle(
                cid,
                status="cancelled",
                error=ExecutionError("Session was deleted", details={"commandId": cid, "sessionId": session_id}),
            )
        with self._lock:
            self._backlog.pop(session_id, None)
            for cid in [cid for cid, cmd in self._index.items() if cmd.session_id == session_id]:
                del self._index[cid]

    def command_status(self, command_id: str) -> dict[str, Any]:
        with self._lock:
            command = self._index.get(command_id)
        if command is None:
            raise CommandNotFoundError(f"Command not found: {command_id}", details={"commandId": command_id})
        return command.to_dict()

    def session_commands(self, session_id: str, *, status: str | None = None, limit: int | None = None) -> list[dict[str, Any]]:
        session = self.registry.get(session_id)
        with session.lock:
            commands = list(reversed(session.commands))
        if status:
            commands = [c for c in commands if c.status == status]
        if limit is not None and limit >= 0:
            commands = commands[:limit]
        return [c.to_dict() for c in commands]

    def pending_count(self, session_id: str | None = None) -> int:
        with self._lock:
            if session_id is None:
                return len(self._pending)
            return sum(1 for e in self._pending.values() if e.command.session_id == session_id)

    def shutdown(self) -> None:
        with self._lock:
            ids = list(self._pending)
        for cid in ids:
            self._settle(cid, status="failed", error=ConnectivityError("Service shutdown"))
        self._executor.shutdown(wait=False, cancel_futures=True)

    # ─────────────────────────────────────────────────────────────────────────
    # Routing and admission
    # ─────────────────────────────────────────────────────────────────────────

    def _route(self, session: Session, override: Any = None) -> str:
        mode = str(override or session.preferred_execution_mode).strip().lower()
        connected = self.connections is not None and self.connections.is_connected(session.id)

        if mode == "extension":
            if not connected:
                raise ConnectivityError(
                    "Session requires extension execution but no client is connected",
                    suggestion="Connect the browser extension for this session or switch preferredExecutionMode",
                    details={"sessionId": session.id, "mode": mode},
                )
            return "extension"

        if mode == "auto" and connected:
            return "extension"

        if self.pool is None:
            raise ConnectivityError(
                "Server-side execution is not available",
                suggestion="Connect the browser extension for this session",
                details={"sessionId": session.id, "mode": mode},
            )
        return "server"

    def _admit(self, session_id: str) -> None:
        limit = int(self.config.max_command_queue)
        with self._lock:
            count = self._backlog.get(session_id, 0)
            if count >= limit:
                raise CapacityError(
                    f"Command queue full for session {session_id} ({limit} in flight)",
                    suggestion="Wait for in-flight commands to finish before submitting more",
                    details={"sessionId": session_id, "limit": limit},
                )
            self._backlog[session_id] = count + 1

    def _release(self, session_id: str) -> None:
        with self._lock:
            count = self._backlog.get(session_id, 0) - 1
            if count > 0:
                self._backlog[session_id] = count
            else:
                self._backlog.pop(session_id, None)

    def _remember(self, command: Command) -> None:
        with self._lock:
            self._index[command.id] = command
            while len(self._index) > MAX_INDEXED_COMMANDS:
                self._index.popitem(last=False)

    # ─────────────────────────────────────────────────────────────────────────
    # Correlation
    # ─────────────────────────────────────────────────────────────────────────

    def _track(self, command: Command) -> Future:
        fut: Future = Future()
        with self._lock:
            self._pending[command.id] = PendingCommand(command=command, future=fut)
        return fut

    def _settle(
        self,
        command_id: str,
        *,
        status: str,
        result: Any = None,
        error: RelayError | None = None,
    ) -> bool:
        with self._lock:
            entry = self._pending.pop(command_id, None)
            if entry is None:
                return False
            entry.command.resolve(status, result=result, error=str(error) if error is not None else None)
            # Completed under the lock: a popped entry is never observed with a pending future.
            if error is not None:
                entry.future.set_exception(error)
            else:
                entry.future.set_result(result)
        return True

    def _await(self, command: Command, fut: Future) -> dict[str, Any]:
        try:
            result = fut.result(timeout=command.timeout)
        except FutureTimeoutError:
            timed_out = self._settle(
                command.id,
                status="failed",
                error=CommandTimeoutError(
                    f"Command {command.type} timed out after {command.timeout:g}s",
                    suggestion="Raise the command timeout or check that the target page is responsive",
                    details={"commandId": command.id, "timeout": int(command.timeout * 1000)},
                ),
            )
            if timed_out:
                logger.warning("command_timeout id=%s session=%s type=%s", command.id, command.session_id, command.type)
                if command.executed_by == "extension":
                    self._send_cancel(command)
            # Settled exactly once: either by the timeout above or by a result that won the race.
            result = fut.result()
        return {
            "commandId": command.id,
            "success": True,
            "result": result,
            "executedBy": command.executed_by,
            "completedAt": int((command.completed_at or time.time()) * 1000),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Execution paths
    # ─────────────────────────────────────────────────────────────────────────

    def _send_extension(self, command: Command) -> None:
        assert self.connections is not None
        self._mark(command, "sent")
        try:
            self.connections.send_to_session(command.session_id, command.wire_message())
        except ConnectivityError as exc:
            self._settle(command.id, status="failed", error=exc)

    def _mark(self, command: Command, status: str) -> None:
        with self._lock:
            if not command.is_terminal:
                command.status = status

    def _send_cancel(self, command: Command) -> None:
        if self.connections is None:
            return
        with contextlib.suppress(ConnectivityError):
            self.connections.send_to_session(command.session_id, {"type": "cancel_command", "commandId": command.id})

    def _submit_server(self, command: Command) -> None:
        try:
            self._executor.submit(self._run_server, command)
        except RuntimeError as exc:
            self._settle(command.id, status="failed", error=ExecutionError(f"Server execution unavailable: {exc}"))

    def _run_server(self, command: Command) -> None:
        assert self.pool is not None
        with self._lock:
            if command.is_terminal:
                # Cancelled, timed out or its session deleted before a worker picked it up.
                return
            command.status = "executing"
        try:
            outcome = self.pool.execute(command.session_id, {"type": command.type, "payload": command.payload})
        except RelayError as exc:
            self._settle(command.id, status="failed", error=exc)
            return
        except Exception as exc:  # noqa: BLE001
            logger.exception("server_command_crashed id=%s", command.id)
            self._settle(command.id, status="failed", error=ExecutionError(str(exc)))
            return

        if outcome.get("success"):
            settled = self._settle(command.id, status="completed", result=outcome.get("result"))
        else:
            settled = self._settle(
                command.id,
                status="failed",
                error=ExecutionError(
                    str(outcome.get("error") or "Server-side execution failed"),
                    details={"commandId": command.id, "type": command.type},
                ),
            )
        if not settled:
            logger.warning("late_server_result id=%s dropped", command.id)
