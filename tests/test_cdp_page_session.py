from __future__ import annotations

import json
from typing import Any

import pytest

from browser_relay import cdp as cdp_module
from browser_relay.cdp import CdpConnection, CdpError
from browser_relay.page_session import PageSession


class FakeSocket:
    """Replays scripted frames; every sent command is recorded."""

    def __init__(self, frames: list[dict[str, Any]]) -> None:
        self.frames = [json.dumps(f) for f in frames]
        self.sent: list[dict[str, Any]] = []

    def settimeout(self, _timeout: float) -> None:
        pass

    def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def recv(self) -> str:
        if not self.frames:
            raise TimeoutError("timed out")
        return self.frames.pop(0)


def _connect(monkeypatch: pytest.MonkeyPatch, frames: list[dict[str, Any]], timeout: float = 1.0) -> CdpConnection:
    sock = FakeSocket(frames)
    monkeypatch.setattr(cdp_module.websocket, "create_connection", lambda url, **kwargs: sock)
    return CdpConnection("ws://127.0.0.1:9222/devtools/page/1", timeout=timeout)


def test_send_queues_events_that_arrive_before_the_response(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _connect(
        monkeypatch,
        [
            {"method": "Page.frameStartedLoading", "params": {"frameId": "f1"}},
            {"method": "Page.loadEventFired", "params": {"timestamp": 1.5}},
            {"id": 1, "result": {"frameId": "f1"}},
        ],
    )
    assert conn.send("Page.navigate", {"url": "https://example.com"}) == {"frameId": "f1"}
    assert conn.ws.sent == [{"id": 1, "method": "Page.navigate", "params": {"url": "https://example.com"}}]

    assert conn.wait_for_event("Page.loadEventFired", timeout=0.1) == {"timestamp": 1.5}
    assert conn.pop_event("Page.frameStartedLoading") == {"frameId": "f1"}
    assert conn.pop_event("Page.frameStartedLoading") is None


def test_send_raises_protocol_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _connect(monkeypatch, [{"id": 1, "error": {"code": -32000, "message": "No node with given id"}}])
    with pytest.raises(CdpError, match="No node with given id"):
        conn.send("DOM.focus", {"nodeId": 7})


def test_send_times_out_without_response(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _connect(monkeypatch, [], timeout=0.2)
    with pytest.raises(CdpError, match="timed out"):
        conn.send("Page.enable")


def test_wait_for_event_returns_none_after_timeout(monkeypatch: pytest.MonkeyPatch) -> None:
    conn = _connect(monkeypatch, [{"method": "Network.requestWillBeSent", "params": {}}])
    assert conn.wait_for_event("Page.loadEventFired", timeout=0.2) is None
    assert conn.pop_event("Network.requestWillBeSent") == {}


def test_eval_js_maps_values_and_exceptions() -> None:
    replies: list[dict[str, Any]] = [
        {"result": {"type": "number", "value": 3}},
        {"result": {"type": "undefined"}},
        {"result": {"type": "object", "subtype": "null"}},
        {
            "result": {"type": "object", "subtype": "error"},
            "exceptionDetails": {"text": "Uncaught", "exception": {"description": "ReferenceError: nope is not defined"}},
        },
    ]
    calls: list[dict[str, Any] | None] = []

    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
            assert method == "Runtime.evaluate"
            calls.append(params)
            return replies.pop(0)

    page = PageSession(DummyConn())  # type: ignore[arg-type]
    assert page.eval_js("1 + 2") == 3
    assert page.eval_js("undefined") is None
    assert page.eval_js("null") is None
    with pytest.raises(CdpError, match="ReferenceError"):
        page.eval_js("nope")

    assert calls[0] == {"expression": "1 + 2", "returnByValue": True, "awaitPromise": True}


def test_wait_for_selector_checks_once_with_zero_timeout() -> None:
    seen: list[str] = []

    class DummyConn:
        def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:  # noqa: ARG002
            seen.append(str((params or {}).get("expression")))
            return {"result": {"type": "boolean", "value": False}}

    page = PageSession(DummyConn())  # type: ignore[arg-type]
    assert page.wait_for_selector("#missing", timeout=0) is False
    assert seen == ['!!document.querySelector("#missing")']
