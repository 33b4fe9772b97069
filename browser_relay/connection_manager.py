from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import re
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import parse_qs, urlsplit

from .config import RelayConfig
from .errors import ConnectivityError, SessionNotFoundError
from .session_registry import SESSION_STATUSES, SessionRegistry

logger = logging.getLogger("browser_relay.connections")

EXTENSION_ORIGIN_PREFIXES = ("chrome-extension://", "moz-extension://")
INVALID_MESSAGE = {"type": "error", "error": "Invalid message format"}

CommandResultSink = Callable[[str, bool, Any, "str | None"], bool]
DisconnectSink = Callable[[str, str], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _import_websockets_server():
    try:
        from websockets.asyncio.server import serve  # type: ignore[import-not-found]

        return serve
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "The connection manager requires the 'websockets' Python package (>= 14). "
            "Install it (pip install websockets) or run with server-side execution only."
        ) from exc


def origin_allowed(origin: str | None, allowed: list[str]) -> bool:
    """Check an Origin header against the allow-list.

    Entries match exactly, as an extension-scheme prefix (``chrome-extension://``), or as a
    wildcard pattern where ``*`` matches any run of characters.
    """
    if not origin:
        return True
    for entry in allowed:
        entry = str(entry or "").strip()
        if not entry:
            continue
        if entry == "*" or entry == origin:
            return True
        if entry in EXTENSION_ORIGIN_PREFIXES or entry.endswith("://"):
            if origin.startswith(entry):
                return True
            continue
        if "*" in entry:
            pattern = ".*".join(re.escape(part) for part in entry.split("*"))
            if re.fullmatch(pattern, origin):
                return True
    return False


def _query_session_id(path: str) -> str | None:
    try:
        values = parse_qs(urlsplit(path or "").query).get("sessionId") or []
    except Exception:  # noqa: BLE001
        return None
    sid = str(values[0]).strip() if values else ""
    return sid or None


@dataclass(eq=False)
class Connection:
    session_id: str
    remote_address: str | None = None
    origin: str | None = None
    connected_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    is_alive: bool = True
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    ws: Any = field(default=None, repr=False)

    def info(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "remoteAddress": self.remote_address,
            "origin": self.origin,
            "connectedAt": int(self.connected_at * 1000),
            "lastHeartbeat": int(self.last_heartbeat * 1000),
            "isAlive": self.is_alive,
        }


class ConnectionManager:
    """WebSocket endpoint for extension clients, one live connection per session.

    Design:
    - Sync API for the dispatcher and the control surface.
    - Async server internally (runs in a dedicated daemon thread).
    - A client binds to a session either with ``?sessionId=`` on the upgrade request or with
      a ``register`` first message; a newer connection replaces the older one.
    - Malformed frames get an ``error`` reply and never affect other connections.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        config: RelayConfig | None = None,
        *,
        on_command_result: CommandResultSink | None = None,
        on_disconnect: DisconnectSink | None = None,
    ) -> None:
        self.registry = registry
        self.config = config or registry.config
        self.host = self.config.host
        self.port = int(self.config.port)
        self.on_command_result = on_command_result
        self.on_disconnect = on_disconnect

        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}

        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._server: Any | None = None
        self._stopping: asyncio.Event | None = None
        self._bind_error: str | None = None
        self._started_at_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        with self._lock:
            self._bind_error = None
            self._server = None

        t = threading.Thread(target=self._run_thread, name="relay-connection-manager", daemon=True)
        self._thread = t
        t.start()

        deadline = time.time() + max(0.05, float(wait_timeout))
        while time.time() < deadline:
            with self._lock:
                server = self._server
                bind_error = self._bind_error
            if server is not None:
                return
            if bind_error or not t.is_alive():
                break
            time.sleep(0.05)

        with self._lock:
            bind_error = self._bind_error
        if bind_error:
            raise RuntimeError(f"Connection manager bind failed on {self.host}:{self.port}: {bind_error}")
        raise RuntimeError(f"Connection manager failed to start on {self.host}:{self.port}")

    def stop(self, *, timeout: float = 5.0) -> None:
        loop = self._loop
        stopping = self._stopping
        if loop is not None and stopping is not None:
            with contextlib.suppress(Exception):
                loop.call_soon_threadsafe(stopping.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    def status(self) -> dict[str, Any]:
        with self._lock:
            listening = self._server is not None
            count = len(self._connections)
            bind_error = self._bind_error
        return {
            "listening": listening,
            "host": self.host,
            "port": self.port,
            "connections": count,
            **({"bindError": bind_error} if bind_error else {}),
            **({"startedAtMs": self._started_at_ms} if self._started_at_ms else {}),
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Sync API
    # ─────────────────────────────────────────────────────────────────────────

    def get_connection(self, session_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(session_id)

    def is_connected(self, session_id: str) -> bool:
        conn = self.get_connection(session_id)
        return conn is not None and conn.ws is not None

    def connection_info(self, session_id: str) -> dict[str, Any] | None:
        conn = self.get_connection(session_id)
        return conn.info() if conn is not None else None

    def connection_count(self) -> int:
        with self._lock:
            return len(self._connections)

    def send_to_session(self, session_id: str, message: dict[str, Any], *, timeout: float = 5.0) -> None:
        conn = self.get_connection(session_id)
        loop = self._loop
        if conn is None or conn.ws is None or loop is None:
            raise ConnectivityError(
                f"No live connection for session {session_id}",
                suggestion="Connect the extension client for this session or use server execution",
                details={"sessionId": session_id},
            )
        try:
            asyncio.run_coroutine_threadsafe(self._ws_send_json(conn.ws, message), loop).result(timeout=timeout)
        except Exception as exc:  # noqa: BLE001
            raise ConnectivityError(
                f"Failed to send to session {session_id}: {exc}",
                details={"sessionId": session_id},
            ) from exc

    def broadcast(self, message: dict[str, Any], *, exclude: str | None = None, timeout: float = 5.0) -> int:
        with self._lock:
            targets = [sid for sid in self._connections if sid != exclude]
        sent = 0
        for sid in targets:
            try:
                self.send_to_session(sid, message, timeout=timeout)
                sent += 1
            except ConnectivityError as exc:
                logger.info("broadcast_send_failed session=%s error=%s", sid, exc)
        return sent

    def disconnect(self, session_id: str, *, code: int = 1000, reason: str = "Session closed") -> bool:
        with self._lock:
            conn = self._connections.pop(session_id, None)
        if conn is None:
            return False
        conn.is_alive = False
        loop = self._loop
        if loop is not None and conn.ws is not None:
            with contextlib.suppress(Exception):
                asyncio.run_coroutine_threadsafe(self._close_ws(conn.ws, code, reason), loop).result(timeout=2.0)
        self._after_removal(conn, reason)
        return True

    def close_all(self, *, reason: str = "Service shutdown") -> int:
        with self._lock:
            sids = list(self._connections)
        for sid in sids:
            self.disconnect(sid, code=1001, reason=reason)
        return len(sids)

    # ─────────────────────────────────────────────────────────────────────────
    # Registration
    # ─────────────────────────────────────────────────────────────────────────

    async def _register(self, conn: Connection) -> bool:
        with self._lock:
            previous = self._connections.get(conn.session_id)
            self._connections[conn.session_id] = conn
        try:
            self.registry.attach_connection(conn.session_id, conn)
        except SessionNotFoundError:
            with self._lock:
                if self._connections.get(conn.session_id) is conn:
                    del self._connections[conn.session_id]
            await self._close_ws(conn.ws, 1008, "Invalid session ID")
            return False

        if previous is not None and previous is not conn:
            previous.is_alive = False
            logger.info("connection_replaced session=%s old=%s new=%s", conn.session_id, previous.id, conn.id)
            await self._close_ws(previous.ws, 1000, "New connection established")

        await self._ws_send_json(conn.ws, {"type": "registered", "sessionId": conn.session_id, "timestamp": _now_ms()})
        logger.info("connection_registered session=%s remote=%s", conn.session_id, conn.remote_address)
        return True

    def _unregister(self, conn: Connection, reason: str) -> None:
        with self._lock:
            removed = self._connections.get(conn.session_id) is conn
            if removed:
                del self._connections[conn.session_id]
        conn.is_alive = False
        if removed:
            self._after_removal(conn, reason)

    def _after_removal(self, conn: Connection, reason: str) -> None:
        self.registry.detach_connection(conn.session_id, conn)
        logger.info("connection_closed session=%s reason=%s", conn.session_id, reason)
        sink = self.on_disconnect
        if sink is not None:
            try:
                sink(conn.session_id, reason)
            except Exception:  # noqa: BLE001
                logger.exception("disconnect_sink_failed session=%s", conn.session_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Heartbeat
    # ─────────────────────────────────────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        interval = max(0.05, float(self.config.heartbeat_interval))
        while True:
            await asyncio.sleep(interval)
            try:
                await self._heartbeat_tick()
            except Exception:  # noqa: BLE001
                logger.exception("heartbeat_tick_failed")

    async def _heartbeat_tick(self) -> None:
        """Terminate connections that stayed unconfirmed since the last tick, ping the rest."""
        with self._lock:
            connections = list(self._connections.values())

        for conn in connections:
            if not conn.is_alive:
                logger.warning("heartbeat_timeout session=%s", conn.session_id)
                self._unregister(conn, "heartbeat timeout")
                asyncio.ensure_future(self._close_ws(conn.ws, 1011, "Heartbeat timeout"))
                continue

            conn.is_alive = False
            try:
                waiter = await conn.ws.ping()
                waiter.add_done_callback(lambda fut, c=conn: self._on_protocol_pong(c, fut))
                await self._ws_send_json(conn.ws, {"type": "ping", "timestamp": _now_ms()})
            except Exception as exc:  # noqa: BLE001
                logger.info("heartbeat_send_failed session=%s error=%s", conn.session_id, exc)

    def _on_protocol_pong(self, conn: Connection, fut: Any) -> None:
        if fut.cancelled() or fut.exception() is not None:
            return
        self._confirm(conn)

    def _confirm(self, conn: Connection) -> None:
        conn.is_alive = True
        conn.last_heartbeat = time.time()

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (async)
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        try:
            serve = _import_websockets_server()
        except RuntimeError as exc:
            with self._lock:
                self._bind_error = str(exc)
            return

        self._loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()

        try:
            server = await serve(
                self._handler,
                self.host,
                self.port,
                process_request=self._process_request,
                ping_interval=None,
                max_size=16_000_000,
            )
        except OSError as exc:
            with self._lock:
                self._bind_error = str(exc)
            logger.error("connection_manager_bind_failed host=%s port=%s error=%s", self.host, self.port, exc)
            return

        with contextlib.suppress(Exception):
            self.port = int(list(server.sockets)[0].getsockname()[1])
        self._started_at_ms = _now_ms()
        with self._lock:
            self._server = server
        logger.info("connection_manager_listening host=%s port=%d", self.host, self.port)

        heartbeat = asyncio.create_task(self._heartbeat_loop())
        try:
            await self._stopping.wait()
        finally:
            heartbeat.cancel()
            with contextlib.suppress(BaseException):
                await heartbeat
            await self._shutdown_async(server)

    async def _shutdown_async(self, server: Any) -> None:
        with self._lock:
            connections = list(self._connections.values())
        await asyncio.gather(
            *[self._close_ws(c.ws, 1001, "Service shutdown") for c in connections],
            return_exceptions=True,
        )
        for conn in connections:
            self._unregister(conn, "service shutdown")
        with contextlib.suppress(Exception):
            server.close()
            await server.wait_closed()
        with self._lock:
            self._server = None
        logger.info("connection_manager_stopped")

    def _process_request(self, connection: Any, request: Any) -> Any:
        try:
            upgrade = str(request.headers.get("Upgrade") or "").lower()
        except Exception:  # noqa: BLE001
            upgrade = ""
        if upgrade != "websocket":
            return connection.respond(404, "Not Found\n")

        origin = request.headers.get("Origin")
        if self.config.origin_policy_enabled and not origin_allowed(origin, self.config.allowed_origins):
            logger.warning("connection_rejected reason=origin origin=%s", origin)
            return connection.respond(403, "Origin not allowed\n")

        sid = _query_session_id(request.path)
        if sid is not None and not self.registry.exists(sid):
            logger.warning("connection_rejected reason=session session=%s", sid)
            return connection.respond(403, "Invalid session ID\n")
        return None

    async def _handler(self, ws: Any) -> None:
        request = ws.request
        origin = request.headers.get("Origin") if request is not None else None
        sid = _query_session_id(request.path) if request is not None else None
        remote = ws.remote_address
        remote_s = f"{remote[0]}:{remote[1]}" if isinstance(remote, tuple) and len(remote) >= 2 else None

        if sid is None:
            sid = await self._await_register(ws)
            if sid is None:
                return

        conn = Connection(session_id=sid, remote_address=remote_s, origin=origin, ws=ws)
        if not await self._register(conn):
            return

        reason = "client closed"
        try:
            async for raw in ws:
                await self._on_message(conn, raw)
        except Exception as exc:  # noqa: BLE001
            reason = f"connection error: {exc}"
        finally:
            self._unregister(conn, reason)

    async def _await_register(self, ws: Any) -> str | None:
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.config.register_timeout)
        except Exception:  # noqa: BLE001
            logger.info("connection_register_timeout")
            await self._close_ws(ws, 1008, "Registration timeout")
            return None

        msg = self._parse(raw)
        if msg is None or msg.get("type") != "register":
            with contextlib.suppress(Exception):
                await self._ws_send_json(ws, INVALID_MESSAGE)
            await self._close_ws(ws, 1008, "Expected register message")
            return None

        sid = str(msg.get("sessionId") or "").strip()
        if not sid or not self.registry.exists(sid):
            await self._close_ws(ws, 1008, "Invalid session ID")
            return None
        return sid

    @staticmethod
    def _parse(raw: Any) -> dict[str, Any] | None:
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(msg, dict) or not isinstance(msg.get("type"), str):
            return None
        return msg

    async def _on_message(self, conn: Connection, raw: Any) -> None:
        msg = self._parse(raw)
        if msg is None:
            logger.info("invalid_frame session=%s", conn.session_id)
            with contextlib.suppress(Exception):
                await self._ws_send_json(conn.ws, INVALID_MESSAGE)
            return

        session = self.registry.find(conn.session_id)
        if session is None:
            await self._close_ws(conn.ws, 1008, "Session no longer exists")
            return

        mtype = msg["type"]

        if mtype == "ping":
            self._confirm(conn)
            with contextlib.suppress(Exception):
                await self._ws_send_json(conn.ws, {"type": "pong", "timestamp": _now_ms()})
            return

        if mtype == "pong":
            self._confirm(conn)
            return

        if mtype == "command_result":
            command_id = str(msg.get("commandId") or "")
            sink = self.on_command_result
            if not command_id or sink is None:
                logger.info("command_result_dropped session=%s commandId=%s", conn.session_id, command_id)
                return
            error = msg.get("error")
            try:
                sink(command_id, bool(msg.get("success")), msg.get("result"), str(error) if error else None)
            except Exception:  # noqa: BLE001
                logger.exception("command_result_sink_failed commandId=%s", command_id)
            return

        if mtype == "status_update":
            status = str(msg.get("status") or "")
            if status in SESSION_STATUSES and status != "expired":
                with contextlib.suppress(SessionNotFoundError):
                    self.registry.update_status(conn.session_id, status)
            logger.info("status_update session=%s status=%s", conn.session_id, status)
            return

        if mtype == "register":
            sid = str(msg.get("sessionId") or "").strip()
            if sid == conn.session_id:
                with contextlib.suppress(Exception):
                    await self._ws_send_json(
                        conn.ws, {"type": "registered", "sessionId": sid, "timestamp": _now_ms()}
                    )
            else:
                with contextlib.suppress(Exception):
                    await self._ws_send_json(conn.ws, {"type": "error", "error": "Connection already registered"})
            return

        if mtype == "error":
            logger.warning("client_error session=%s error=%s", conn.session_id, str(msg.get("error"))[:500])
            return

        logger.debug("unknown_message session=%s type=%s", conn.session_id, mtype)

    async def _close_ws(self, ws: Any, code: int, reason: str) -> None:
        if ws is None:
            return
        with contextlib.suppress(Exception):
            await ws.close(code=code, reason=reason)

    async def _ws_send_json(self, ws: Any, payload: dict[str, Any]) -> None:
        await ws.send(json.dumps(payload, ensure_ascii=False))
