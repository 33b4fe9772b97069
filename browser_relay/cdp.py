"""Blocking Chrome DevTools Protocol transport for pool-owned browsers."""

from __future__ import annotations

import json
import socket
import time
from contextlib import suppress
from typing import Any
from urllib.error import URLError
from urllib.request import Request, urlopen

import websocket


class CdpError(Exception):
    pass


def http_get_json(url: str, timeout: float = 2.0) -> Any:
    """Fetch JSON from a DevTools HTTP endpoint (/json/version, /json/list)."""
    try:
        req = Request(url, headers={"User-Agent": "browser-relay"})
        with urlopen(req, timeout=timeout) as resp:
            return json.loads(resp.read().decode())
    except (OSError, URLError, ValueError) as exc:
        raise CdpError(f"DevTools endpoint not reachable: {url}: {exc}") from exc


class CdpConnection:
    """One WebSocket to a page target; commands are strictly request/response."""

    def __init__(self, ws_url: str, timeout: float = 10.0):
        self.ws = websocket.create_connection(ws_url, timeout=timeout, suppress_origin=True)
        self.ws_url = ws_url
        self.timeout = timeout
        self._next_id = 1
        # Events that arrive while waiting for a response are kept for later waits.
        self._event_queue: list[dict[str, Any]] = []
        self._max_event_queue = 1000

    def _push_event(self, event: dict[str, Any]) -> None:
        self._event_queue.append(event)
        if len(self._event_queue) > self._max_event_queue:
            del self._event_queue[: len(self._event_queue) - self._max_event_queue]

    def pop_event(self, event_name: str) -> dict[str, Any] | None:
        for i, ev in enumerate(self._event_queue):
            if ev.get("method") == event_name:
                self._event_queue.pop(i)
                params = ev.get("params")
                return params if isinstance(params, dict) else {}
        return None

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Send a CDP command and wait for its response."""
        msg_id = self._next_id
        self._next_id += 1

        msg: dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            msg["params"] = params

        try:
            with suppress(Exception):
                self.ws.settimeout(min(2.0, max(0.5, float(self.timeout))))
            self.ws.send(json.dumps(msg))
        except Exception as exc:  # noqa: BLE001
            raise CdpError(str(exc)) from exc

        return self._recv_until(msg_id)

    def _recv(self, remaining: float) -> dict[str, Any] | None:
        try:
            self.ws.settimeout(min(0.5, remaining))
            raw = self.ws.recv()
        except Exception as exc:  # noqa: BLE001
            if isinstance(exc, (TimeoutError, websocket.WebSocketTimeoutException)) or "timed out" in str(exc).lower():
                return None
            raise CdpError(str(exc)) from exc
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def _recv_until(self, expected_id: int) -> dict[str, Any]:
        deadline = time.time() + self.timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                raise CdpError("CDP response timed out")
            data = self._recv(remaining)
            if data is None:
                continue
            if isinstance(data.get("method"), str) and "id" not in data:
                self._push_event(data)
                continue
            if data.get("id") == expected_id:
                if "error" in data:
                    err = data["error"]
                    message = err.get("message") if isinstance(err, dict) else None
                    raise CdpError(str(message or err))
                result = data.get("result")
                return result if isinstance(result, dict) else {}

    def wait_for_event(self, event_name: str, timeout: float = 10.0) -> dict[str, Any] | None:
        queued = self.pop_event(event_name)
        if queued is not None:
            return queued

        deadline = time.time() + timeout
        while True:
            remaining = deadline - time.time()
            if remaining <= 0:
                return None
            data = self._recv(remaining)
            if data is None:
                continue
            if isinstance(data.get("method"), str) and "id" not in data:
                if data["method"] == event_name:
                    params = data.get("params")
                    return params if isinstance(params, dict) else {}
                self._push_event(data)

    def abort(self) -> None:
        """Hard break of the underlying socket; websocket-client close() can block."""
        sock = getattr(self.ws, "sock", None)
        if sock is not None:
            with suppress(Exception):
                sock.shutdown(socket.SHUT_RDWR)
            with suppress(Exception):
                sock.close()

    def close(self) -> None:
        with suppress(Exception):
            self.abort()


def list_targets(port: int, timeout: float = 2.0) -> list[dict[str, Any]]:
    data = http_get_json(f"http://127.0.0.1:{port}/json/list", timeout=timeout)
    return [t for t in data if isinstance(t, dict)] if isinstance(data, list) else []


def browser_ws_url(port: int, timeout: float = 2.0) -> str:
    data = http_get_json(f"http://127.0.0.1:{port}/json/version", timeout=timeout)
    url = data.get("webSocketDebuggerUrl") if isinstance(data, dict) else None
    if not isinstance(url, str) or not url:
        raise CdpError("Browser WebSocket URL not reported by /json/version")
    return url


def open_page_target(port: int, *, timeout: float = 10.0) -> CdpConnection:
    """Connect to the first page target, creating one when the browser has none."""
    pages = [t for t in list_targets(port) if t.get("type") == "page" and t.get("webSocketDebuggerUrl")]
    if not pages:
        browser = CdpConnection(browser_ws_url(port), timeout=timeout)
        try:
            created = browser.send("Target.createTarget", {"url": "about:blank"})
        finally:
            browser.close()
        target_id = created.get("targetId")
        deadline = time.time() + timeout
        while not pages and time.time() < deadline:
            pages = [
                t
                for t in list_targets(port)
                if t.get("type") == "page" and t.get("id") == target_id and t.get("webSocketDebuggerUrl")
            ]
            if not pages:
                time.sleep(0.1)
        if not pages:
            raise CdpError("Page target did not appear after Target.createTarget")
    return CdpConnection(pages[0]["webSocketDebuggerUrl"], timeout=timeout)
