from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .config import RelayConfig
from .errors import CapacityError, session_not_found

if TYPE_CHECKING:
    from .commands import Command
    from .connection_manager import Connection

logger = logging.getLogger("browser_relay.registry")

SESSION_STATUSES = ("created", "connected", "disconnected", "expired")
EXECUTION_MODES = ("auto", "extension", "server")


@dataclass
class Session:
    id: str
    created_at: float
    last_activity: float
    metadata: dict[str, Any] = field(default_factory=dict)
    status: str = "created"
    commands: list[Command] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)
    is_connected: bool = False
    connection: Connection | None = None
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    @property
    def preferred_execution_mode(self) -> str:
        mode = str(self.metadata.get("preferredExecutionMode") or "auto").strip().lower()
        return mode if mode in EXECUTION_MODES else "auto"

    def touch(self) -> None:
        # Wall clock can step backwards; last_activity must not.
        self.last_activity = max(self.last_activity, time.time())

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "createdAt": int(self.created_at * 1000),
            "lastActivity": int(self.last_activity * 1000),
            "status": self.status,
            "isConnected": self.is_connected,
            "commandCount": len(self.commands),
            "metadata": dict(self.metadata),
        }


class SessionRegistry:
    """Authoritative store of sessions.

    The registry map is guarded by one lock; each record carries its own lock so that
    per-session mutation never serializes unrelated sessions. Deletion fans out to release
    hooks (connection manager, browser pool, dispatcher) registered by the service wiring.
    """

    def __init__(self, config: RelayConfig | None = None) -> None:
        self.config = config or RelayConfig()
        self._lock = threading.Lock()
        self._sessions: dict[str, Session] = {}
        self._release_hooks: list[Callable[[str], None]] = []

        self._sweep_thread: threading.Thread | None = None
        self._stop = threading.Event()

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self._sweep_thread is not None and self._sweep_thread.is_alive():
            return
        self._stop.clear()
        t = threading.Thread(target=self._sweep_loop, name="relay-session-sweep", daemon=True)
        self._sweep_thread = t
        t.start()

    def stop(self, *, timeout: float = 2.0) -> None:
        self._stop.set()
        t = self._sweep_thread
        if t is not None:
            t.join(timeout=timeout)
        self._sweep_thread = None

    def close(self) -> None:
        self.stop()
        with self._lock:
            ids = list(self._sessions)
        for sid in ids:
            self.delete(sid)

    def add_release_hook(self, hook: Callable[[str], None]) -> None:
        self._release_hooks.append(hook)

    # ─────────────────────────────────────────────────────────────────────────
    # CRUD
    # ─────────────────────────────────────────────────────────────────────────

    def create(self, metadata: dict[str, Any] | None = None) -> Session:
        meta: dict[str, Any] = {"userAgent": "Unknown", "ip": "Unknown"}
        if isinstance(metadata, dict):
            meta.update({k: v for k, v in metadata.items() if v is not None})

        now = time.time()
        session = Session(id=str(uuid.uuid4()), created_at=now, last_activity=now, metadata=meta)
        with self._lock:
            if len(self._sessions) >= self.config.max_sessions:
                raise CapacityError(
                    f"Maximum number of sessions ({self.config.max_sessions}) reached",
                    suggestion="Delete unused sessions or raise RELAY_MAX_SESSIONS",
                    details={"maxSessions": self.config.max_sessions},
                )
            self._sessions[session.id] = session
        logger.info("session_created id=%s mode=%s", session.id, session.preferred_execution_mode)
        return session

    def find(self, session_id: str) -> Session | None:
        with self._lock:
            session = self._sessions.get(str(session_id or ""))
        if session is None:
            return None
        with session.lock:
            session.touch()
        return session

    def get(self, session_id: str) -> Session:
        session = self.find(session_id)
        if session is None:
            raise session_not_found(session_id)
        return session

    def exists(self, session_id: str) -> bool:
        with self._lock:
            return str(session_id or "") in self._sessions

    def list(self) -> list[dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        out: list[dict[str, Any]] = []
        for session in sessions:
            with session.lock:
                if session.status == "expired":
                    continue
                out.append(session.summary())
        return out

    def count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def touch(self, session_id: str) -> None:
        self.get(session_id)

    def update_status(self, session_id: str, status: str) -> Session:
        if status not in SESSION_STATUSES:
            raise ValueError(f"Unknown session status: {status}")
        session = self.get(session_id)
        with session.lock:
            session.status = status
            session.touch()
        return session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(str(session_id or ""), None)
        if session is None:
            return False

        for hook in list(self._release_hooks):
            try:
                hook(session.id)
            except Exception:  # noqa: BLE001
                logger.exception("session_release_hook_failed id=%s", session.id)

        with session.lock:
            session.connection = None
            session.is_connected = False
        logger.info("session_deleted id=%s", session.id)
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Per-session state
    # ─────────────────────────────────────────────────────────────────────────

    def append_history(self, session_id: str, entry: dict[str, Any]) -> None:
        session = self.get(session_id)
        with session.lock:
            session.history.append(dict(entry))
            session.touch()

    def history(self, session_id: str) -> list[dict[str, Any]]:
        session = self.get(session_id)
        with session.lock:
            return [dict(e) for e in session.history]

    def add_command(self, session_id: str, command: Command) -> None:
        session = self.get(session_id)
        with session.lock:
            session.commands.append(command)
            session.touch()

    def attach_connection(self, session_id: str, connection: Connection) -> Connection | None:
        """Bind a connection to the session and return the one it replaced (if any)."""
        session = self.get(session_id)
        with session.lock:
            previous = session.connection
            session.connection = connection
            session.is_connected = True
            session.status = "connected"
            session.touch()
        return previous if previous is not connection else None

    def detach_connection(self, session_id: str, connection: Connection | None = None) -> bool:
        """Clear the session's connection; a stale connection never clears its replacement."""
        with self._lock:
            session = self._sessions.get(str(session_id or ""))
        if session is None:
            return False
        with session.lock:
            if connection is not None and session.connection is not connection:
                return False
            session.connection = None
            session.is_connected = False
            if session.status != "expired":
                session.status = "disconnected"
            session.touch()
        return True

    def statistics(self) -> dict[str, int]:
        with self._lock:
            sessions = list(self._sessions.values())
        stats = {"total": len(sessions), **{status: 0 for status in SESSION_STATUSES}}
        for session in sessions:
            with session.lock:
                stats[session.status] = stats.get(session.status, 0) + 1
        return stats

    # ─────────────────────────────────────────────────────────────────────────
    # Expiry
    # ─────────────────────────────────────────────────────────────────────────

    def _is_expired(self, session: Session, now: float) -> bool:
        limit = self.config.active_session_timeout if session.is_connected else self.config.idle_session_timeout
        return now - session.last_activity > limit

    def sweep(self, *, now: float | None = None) -> list[str]:
        """Run one expiry pass and return the ids that were removed."""
        ts = time.time() if now is None else float(now)
        with self._lock:
            sessions = list(self._sessions.values())

        expired: list[str] = []
        for session in sessions:
            with session.lock:
                if not self._is_expired(session, ts):
                    continue
                session.status = "expired"
            expired.append(session.id)

        for sid in expired:
            self.delete(sid)
        if expired:
            logger.info("session_sweep expired=%d remaining=%d", len(expired), self.count())
        return expired

    def _sweep_loop(self) -> None:
        interval = max(0.1, float(self.config.cleanup_interval))
        while not self._stop.wait(interval):
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("session_sweep_failed")
