from __future__ import annotations

import asyncio
import json
import socket
import time
from pathlib import Path
from typing import Any

import pytest

import browser_relay.main as relay_main
from browser_relay.config import RelayConfig
from browser_relay.launcher import LaunchResult
from browser_relay.main import RelayServer
from browser_relay.page_session import PageSession
from browser_relay.planner import HeuristicPlanner
from browser_relay.service import RelayService


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return int(s.getsockname()[1])


class DummyProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.pid = 1

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.returncode = 0

    def kill(self) -> None:
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:  # noqa: ARG002
        return self.returncode


class DummyLauncher:
    def __init__(self, tmp_path: Path) -> None:
        self.tmp_path = tmp_path
        self.processes: list[DummyProcess] = []

    def launch(self, session_id: str) -> LaunchResult:
        proc = DummyProcess()
        self.processes.append(proc)
        profile = self.tmp_path / f"relay-{session_id[:8]}-{len(self.processes)}"
        profile.mkdir()
        return LaunchResult(process=proc, binary="/fake/chrome", cdp_port=9222, user_data_dir=str(profile), command=[])  # type: ignore[arg-type]


class DummyConn:
    """Just enough of a page: navigation, title, url and screenshots."""

    def __init__(self) -> None:
        self.url = "about:blank"
        self.title = ""

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        if method == "Page.navigate":
            self.url = str((params or {}).get("url"))
            self.title = "Example Domain"
            return {}
        if method == "Page.captureScreenshot":
            return {"data": "iVBORw0KGgo="}
        if method == "Runtime.evaluate":
            expression = str((params or {}).get("expression"))
            if expression == "document.title":
                return {"result": {"type": "string", "value": self.title}}
            if expression == "window.location.href":
                return {"result": {"type": "string", "value": self.url}}
            if "__relayNetworkIdle" in expression:
                return {"result": {"type": "boolean", "value": True}}
            if "totalCount" in expression:
                return {"result": {"type": "object", "value": {"elements": [], "totalCount": 0}}}
            return {"result": {"type": "undefined"}}
        return {}

    def wait_for_event(self, name: str, timeout: float) -> dict[str, Any]:  # noqa: ARG002
        return {"method": name}

    def close(self) -> None:
        pass


@pytest.fixture
def rpc(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Any:
    sent: list[dict[str, Any]] = []
    monkeypatch.setattr(relay_main, "_write_message", lambda payload: sent.append(payload))

    cfg = RelayConfig(
        host="127.0.0.1",
        port=_free_port(),
        settle_delay=0.0,
        action_delay=0.0,
        click_wait=0.0,
        profile_root=str(tmp_path),
    )
    launcher = DummyLauncher(tmp_path)
    service = RelayService(
        cfg,
        planner=HeuristicPlanner(),
        launcher=launcher,  # type: ignore[arg-type]
        page_factory=lambda launch, config: PageSession(DummyConn()),  # type: ignore[arg-type]
    )
    server = RelayServer(service)
    counter = {"id": 0}

    def take(request_id: Any, timeout: float = 0.0) -> dict[str, Any]:
        deadline = time.time() + timeout
        while True:
            for i, reply in enumerate(sent):
                if reply.get("id") == request_id:
                    return sent.pop(i)
            if time.time() >= deadline:
                raise AssertionError(f"no reply for request {request_id}")
            time.sleep(0.01)

    def call(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        counter["id"] += 1
        request_id = counter["id"]
        server.dispatch({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}})
        return take(request_id)

    call.service = service  # type: ignore[attr-defined]
    call.launcher = launcher  # type: ignore[attr-defined]
    call.server = server  # type: ignore[attr-defined]
    call.take = take  # type: ignore[attr-defined]
    try:
        yield call
    finally:
        service.stop()
        server.close()


def test_scenario_navigate_then_get_title_on_server(rpc: Any) -> None:
    created = rpc("sessions/create", {"metadata": {"preferredExecutionMode": "server"}})["result"]
    sid = created["sessionId"]
    assert created["websocketUrl"].endswith(f"?sessionId={sid}")

    nav = rpc("commands/execute", {"sessionId": sid, "command": {"type": "navigate", "payload": {"url": "https://example.com"}}})
    assert nav["result"]["executedBy"] == "server"
    assert nav["result"]["result"]["url"] == "https://example.com"

    title = rpc("commands/execute", {"sessionId": sid, "command": {"type": "getTitle", "payload": {}}})
    assert title["result"]["result"]["title"] == "Example Domain"

    listed = rpc("commands/list", {"sessionId": sid})["result"]["commands"]
    assert [c["type"] for c in listed] == ["getTitle", "navigate"]
    status = rpc("commands/status", {"commandId": listed[0]["id"]})["result"]
    assert status["status"] == "completed"


def test_scenario_extension_session_without_connection_fails_fast(rpc: Any) -> None:
    sid = rpc("sessions/create", {"metadata": {"preferredExecutionMode": "extension"}})["result"]["sessionId"]

    started = time.time()
    reply = rpc("commands/execute", {"sessionId": sid, "command": {"type": "getTitle"}})
    assert time.time() - started < 2.0
    assert reply["error"]["data"]["kind"] == "connectivity"
    assert rpc.launcher.processes == []


def test_scenario_delete_releases_browser_and_connection(rpc: Any) -> None:
    try:
        from websockets.asyncio.client import connect  # type: ignore[import-not-found]
        from websockets.exceptions import ConnectionClosed  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    service: RelayService = rpc.service
    service.start()
    sid = rpc("sessions/create")["result"]["sessionId"]

    async def _main() -> None:
        url = f"ws://127.0.0.1:{service.connections.port}/?sessionId={sid}"
        async with connect(url, ping_interval=None) as ws:
            assert json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))["type"] == "registered"

            nav = await asyncio.to_thread(
                rpc,
                "commands/execute",
                {"sessionId": sid, "command": {"type": "navigate", "payload": {"url": "example.com"}, "executionMode": "server"}},
            )
            assert nav["result"]["executedBy"] == "server"
            assert service.pool.has_instance(sid)

            deleted = await asyncio.to_thread(rpc, "sessions/delete", {"sessionId": sid})
            assert deleted["result"]["deleted"] is True

            with pytest.raises(ConnectionClosed):
                await asyncio.wait_for(ws.recv(), timeout=2.0)
            assert ws.close_code == 1000

    asyncio.run(_main())

    assert not service.pool.has_instance(sid)
    assert rpc.launcher.processes[0].returncode == 0
    assert not service.connections.is_connected(sid)
    missing = rpc("sessions/get", {"sessionId": sid})
    assert missing["error"]["data"]["kind"] == "not_found"


def test_task_run_with_heuristic_planner(rpc: Any) -> None:
    sid = rpc("sessions/create", {"metadata": {"preferredExecutionMode": "server"}})["result"]["sessionId"]
    result = rpc("tasks/run", {"sessionId": sid, "taskDescription": "go to example.com"})["result"]

    assert result["state"] == "DONE"
    assert result["iterations"] == 1
    assert result["beforeScreenshot"].startswith("data:image/png;base64,")
    assert result["steps"][0][0]["action"]["type"] == "navigate"

    history = rpc("sessions/history", {"sessionId": sid})["result"]["history"]
    assert history[0] == {"role": "user", "content": "go to example.com"}
    assert history[-1]["role"] == "assistant"


def test_validation_unknown_method_and_missing_params(rpc: Any) -> None:
    ok = rpc("commands/validate", {"command": {"type": "click_coordinate", "payload": {"x": 1, "y": 2}}})
    assert ok["result"]["valid"] is True
    assert ok["result"]["command"]["timeout"] == 30_000

    bad = rpc("commands/validate", {"command": {"type": "click"}})
    assert bad["error"]["code"] == -32001
    assert bad["error"]["data"]["kind"] == "validation"

    missing = rpc("sessions/get", {})
    assert missing["error"]["data"]["kind"] == "validation"

    unknown = rpc("browser/teleport")
    assert unknown["error"]["code"] == -32601

    assert rpc("ping")["result"] == {"pong": True}
    status = rpc("status")["result"]
    assert status["sessions"]["total"] == 0
    assert status["pendingCommands"] == 0


def test_cancel_reaches_a_command_blocked_in_another_request(rpc: Any) -> None:
    try:
        from websockets.asyncio.client import connect  # type: ignore[import-not-found]
    except Exception:  # noqa: BLE001
        pytest.skip("websockets not installed")

    service: RelayService = rpc.service
    service.start()
    sid = rpc("sessions/create", {"metadata": {"preferredExecutionMode": "extension"}})["result"]["sessionId"]

    async def _main() -> str:
        url = f"ws://127.0.0.1:{service.connections.port}/?sessionId={sid}"
        async with connect(url, ping_interval=None) as ws:
            assert json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))["type"] == "registered"

            rpc.server.submit(
                {
                    "jsonrpc": "2.0",
                    "id": "slow-title",
                    "method": "commands/execute",
                    "params": {"sessionId": sid, "command": {"type": "getTitle", "timeout": 10_000}},
                }
            )
            frame = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
            assert frame["type"] == "command"

            cancelled = await asyncio.to_thread(rpc, "commands/cancel", {"commandId": frame["id"]})
            assert cancelled["result"] == {"commandId": frame["id"], "cancelled": True}

            notice = json.loads(await asyncio.wait_for(ws.recv(), timeout=2.0))
            assert notice == {"type": "cancel_command", "commandId": frame["id"]}
            return str(frame["id"])

    command_id = asyncio.run(_main())

    reply = rpc.take("slow-title", timeout=2.0)
    assert reply["error"]["data"]["kind"] == "execution"
    assert reply["error"]["data"]["details"] == {"commandId": command_id, "cancelled": True}
    assert rpc("commands/status", {"commandId": command_id})["result"]["status"] == "cancelled"
