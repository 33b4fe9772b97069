from __future__ import annotations

import pytest

from browser_relay import session_registry as registry_module
from browser_relay.commands import Command
from browser_relay.config import RelayConfig
from browser_relay.errors import CapacityError, SessionNotFoundError
from browser_relay.session_registry import SessionRegistry


class DummyConnection:
    def __init__(self, name: str) -> None:
        self.name = name


def test_create_defaults_metadata_and_lists_summary() -> None:
    reg = SessionRegistry(RelayConfig())
    session = reg.create({"preferredExecutionMode": "server", "userAgent": None})

    assert session.metadata["userAgent"] == "Unknown"
    assert session.metadata["ip"] == "Unknown"
    assert session.preferred_execution_mode == "server"
    assert session.status == "created"

    listed = reg.list()
    assert len(listed) == 1
    assert listed[0]["id"] == session.id
    assert listed[0]["commandCount"] == 0
    assert listed[0]["isConnected"] is False


def test_create_fails_at_capacity() -> None:
    reg = SessionRegistry(RelayConfig(max_sessions=2))
    reg.create()
    reg.create()
    with pytest.raises(CapacityError):
        reg.create()
    assert reg.count() == 2


def test_get_missing_raises_and_find_returns_none() -> None:
    reg = SessionRegistry()
    with pytest.raises(SessionNotFoundError) as exc_info:
        reg.get("nope")
    assert exc_info.value.kind == "not_found"
    assert reg.find("nope") is None


def test_last_activity_never_moves_backwards(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = {"now": 1000.0}
    monkeypatch.setattr(registry_module.time, "time", lambda: clock["now"])

    reg = SessionRegistry()
    session = reg.create()
    assert session.last_activity == 1000.0

    clock["now"] = 1005.0
    reg.touch(session.id)
    assert session.last_activity == 1005.0

    clock["now"] = 990.0
    reg.append_history(session.id, {"role": "user", "content": "hi"})
    assert session.last_activity == 1005.0


def test_delete_runs_release_hooks_once_and_is_idempotent() -> None:
    reg = SessionRegistry()
    released: list[str] = []

    def _boom(_sid: str) -> None:
        raise RuntimeError("hook failed")

    reg.add_release_hook(released.append)
    reg.add_release_hook(_boom)
    session = reg.create()

    assert reg.delete(session.id) is True
    assert reg.delete(session.id) is False
    assert released == [session.id]
    assert not reg.exists(session.id)


def test_attach_replaces_and_stale_detach_is_ignored() -> None:
    reg = SessionRegistry()
    session = reg.create()
    first, second = DummyConnection("a"), DummyConnection("b")

    assert reg.attach_connection(session.id, first) is None  # type: ignore[arg-type]
    assert reg.attach_connection(session.id, second) is first  # type: ignore[arg-type]
    assert session.status == "connected"

    assert reg.detach_connection(session.id, first) is False  # type: ignore[arg-type]
    assert session.connection is second

    assert reg.detach_connection(session.id, second) is True  # type: ignore[arg-type]
    assert session.is_connected is False
    assert session.status == "disconnected"


def test_sweep_uses_active_and_idle_thresholds() -> None:
    reg = SessionRegistry(RelayConfig(active_session_timeout=100.0, idle_session_timeout=10.0))
    released: list[str] = []
    reg.add_release_hook(released.append)

    idle = reg.create()
    active = reg.create()
    reg.attach_connection(active.id, DummyConnection("live"))  # type: ignore[arg-type]

    now = max(idle.last_activity, active.last_activity) + 50.0
    expired = reg.sweep(now=now)

    assert expired == [idle.id]
    assert released == [idle.id]
    assert reg.exists(active.id)
    assert reg.sweep(now=now + 100.0) == [active.id]
    assert reg.count() == 0


def test_history_and_commands_are_recorded() -> None:
    reg = SessionRegistry()
    session = reg.create()
    reg.append_history(session.id, {"role": "user", "content": "open example.com"})
    reg.add_command(session.id, Command(session_id=session.id, type="getTitle"))

    history = reg.history(session.id)
    history.append({"role": "assistant", "content": "mutated copy"})
    assert reg.history(session.id) == [{"role": "user", "content": "open example.com"}]
    assert reg.list()[0]["commandCount"] == 1

    stats = reg.statistics()
    assert stats["total"] == 1
    assert stats["created"] == 1
