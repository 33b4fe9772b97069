"""
Control surface for the browser relay: newline-delimited JSON-RPC 2.0 over stdio.

The relay itself (WebSocket endpoint, session sweep, browser pool) runs in background
threads; this module only turns requests into calls on RelayService.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from .config import RelayConfig
from .errors import CommandValidationError, RelayError
from .service import RelayService

SERVER_NAME = "browser-relay"
SERVER_VERSION = "0.1.0"
MAX_CONCURRENT_REQUESTS = 32

logger = logging.getLogger("browser_relay.main")


def _write_message(payload: dict[str, Any]) -> None:
    """Write JSON-RPC message to stdout."""
    data = json.dumps(payload, ensure_ascii=False, default=str)
    sys.stdout.buffer.write((data + "\n").encode())
    sys.stdout.buffer.flush()


def _read_message() -> dict[str, Any] | None:
    """Read JSON-RPC message from stdin; None at EOF."""
    while True:
        line = sys.stdin.buffer.readline()
        if not line:
            return None
        line = line.strip()
        if not line:
            continue
        try:
            msg = json.loads(line.decode())
        except ValueError:
            _write_message({"jsonrpc": "2.0", "id": None, "error": {"code": -32700, "message": "Parse error"}})
            continue
        if os.environ.get("RELAY_TRACE"):
            logger.info("recv %s", msg)
        return msg if isinstance(msg, dict) else {}


def _require(params: dict[str, Any], name: str) -> Any:
    value = params.get(name)
    if value is None or value == "":
        raise CommandValidationError(f"Missing required parameter: {name}", details={"param": name})
    return value


class RelayServer:
    """JSON-RPC front end with a method table over RelayService.

    Requests run on a worker pool, so `commands/cancel` can reach a blocked `commands/execute`.
    Only writes to stdout are serialized.
    """

    def __init__(self, service: RelayService | None = None) -> None:
        self.service = service or RelayService()
        self._write_lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=MAX_CONCURRENT_REQUESTS, thread_name_prefix="relay-rpc")
        self.methods: dict[str, Callable[[dict[str, Any]], Any]] = {
            "ping": lambda _params: {"pong": True},
            "status": lambda _params: self.service.status(),
            "sessions/create": self.sessions_create,
            "sessions/get": self.sessions_get,
            "sessions/list": lambda _params: {"sessions": self.service.registry.list()},
            "sessions/delete": self.sessions_delete,
            "sessions/history": self.sessions_history,
            "commands/validate": self.commands_validate,
            "commands/execute": self.commands_execute,
            "commands/status": lambda params: self.service.dispatcher.command_status(str(_require(params, "commandId"))),
            "commands/cancel": self.commands_cancel,
            "commands/list": self.commands_list,
            "tasks/run": self.tasks_run,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Sessions
    # ─────────────────────────────────────────────────────────────────────────

    def sessions_create(self, params: dict[str, Any]) -> dict[str, Any]:
        metadata = params.get("metadata") if isinstance(params.get("metadata"), dict) else {}
        session = self.service.registry.create(metadata)
        with session.lock:
            summary = session.summary()
        return {
            "sessionId": session.id,
            "session": summary,
            "websocketUrl": f"ws://{self.service.config.host}:{self.service.connections.port}/?sessionId={session.id}",
        }

    def sessions_get(self, params: dict[str, Any]) -> dict[str, Any]:
        session = self.service.registry.get(str(_require(params, "sessionId")))
        with session.lock:
            summary = session.summary()
        return {
            "session": summary,
            "connection": self.service.connections.connection_info(session.id),
            "browser": self.service.pool.has_instance(session.id),
        }

    def sessions_delete(self, params: dict[str, Any]) -> dict[str, Any]:
        sid = str(_require(params, "sessionId"))
        return {"sessionId": sid, "deleted": self.service.registry.delete(sid)}

    def sessions_history(self, params: dict[str, Any]) -> dict[str, Any]:
        sid = str(_require(params, "sessionId"))
        return {"sessionId": sid, "history": self.service.registry.history(sid)}

    # ─────────────────────────────────────────────────────────────────────────
    # Commands and tasks
    # ─────────────────────────────────────────────────────────────────────────

    def commands_validate(self, params: dict[str, Any]) -> dict[str, Any]:
        return {"valid": True, "command": self.service.dispatcher.validate(params.get("command", params))}

    def commands_execute(self, params: dict[str, Any]) -> dict[str, Any]:
        sid = str(_require(params, "sessionId"))
        return self.service.dispatcher.execute(sid, _require(params, "command"))

    def commands_cancel(self, params: dict[str, Any]) -> dict[str, Any]:
        cid = str(_require(params, "commandId"))
        return {"commandId": cid, "cancelled": self.service.dispatcher.cancel(cid)}

    def commands_list(self, params: dict[str, Any]) -> dict[str, Any]:
        sid = str(_require(params, "sessionId"))
        limit = params.get("limit")
        commands = self.service.dispatcher.session_commands(
            sid,
            status=params.get("status") or None,
            limit=int(limit) if isinstance(limit, (int, float)) else None,
        )
        return {"sessionId": sid, "commands": commands}

    def tasks_run(self, params: dict[str, Any]) -> dict[str, Any]:
        sid = str(_require(params, "sessionId"))
        instruction = str(_require(params, "taskDescription" if "taskDescription" in params else "instruction"))
        max_iterations = params.get("maxIterations")
        result = self.service.run_task(
            sid,
            instruction,
            max_iterations=int(max_iterations) if isinstance(max_iterations, (int, float)) else None,
        )
        return result.to_dict()

    # ─────────────────────────────────────────────────────────────────────────
    # Dispatch
    # ─────────────────────────────────────────────────────────────────────────

    def handle(self, message: dict[str, Any]) -> dict[str, Any] | None:
        """Process one JSON-RPC message and return the response (None for notifications)."""
        if not message:
            return None
        method = message.get("method")
        request_id = message.get("id")
        params = message.get("params") or {}
        if not isinstance(params, dict):
            params = {}

        handler = self.methods.get(str(method or ""))
        if handler is None:
            if request_id is None:
                return None
            return {"jsonrpc": "2.0", "id": request_id, "error": {"code": -32601, "message": f"Method {method} not found"}}

        logger.info("rpc method=%s", method)
        try:
            result = handler(params)
        except RelayError as exc:
            logger.info("rpc_failed method=%s kind=%s reason=%s", method, exc.kind, exc.reason)
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": -32001, "message": exc.reason, "data": exc.to_dict()},
            }
        except Exception as exc:  # noqa: BLE001
            logger.exception("rpc_crashed method=%s", method)
            return {
                "jsonrpc": "2.0",
                "id": request_id,
                "error": {"code": -32603, "message": str(exc), "data": RelayError(str(exc)).to_dict()},
            }
        if request_id is None:
            return None
        return {"jsonrpc": "2.0", "id": request_id, "result": result}

    def dispatch(self, message: dict[str, Any]) -> None:
        response = self.handle(message)
        if response is not None:
            with self._write_lock:
                _write_message(response)

    def submit(self, message: dict[str, Any]) -> Future:
        """Handle a request on the worker pool; the response is written when it finishes."""
        return self._executor.submit(self.dispatch, message)

    def close(self) -> None:
        self._executor.shutdown(wait=True, cancel_futures=True)


def main() -> None:
    """Main entry point: start the relay and serve JSON-RPC on stdio until EOF."""
    config = RelayConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(message)s",
        stream=sys.stderr,
    )
    service = RelayService(config)
    service.start()
    server = RelayServer(service)
    try:
        while True:
            message = _read_message()
            if message is None:
                break
            server.submit(message)
        # EOF: let requests already read run to completion.
        server.close()
    except KeyboardInterrupt:
        pass
    finally:
        # Stopping the service fails whatever is still in flight, so close() cannot hang.
        service.stop()
        server.close()


if __name__ == "__main__":
    main()
