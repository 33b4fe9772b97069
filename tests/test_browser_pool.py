from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from browser_relay.browser_pool import BrowserPool, normalize_url, selector_text_hint
from browser_relay.config import RelayConfig
from browser_relay.errors import BrowserLaunchError, ExecutionError
from browser_relay.launcher import LaunchResult
from browser_relay.page_session import PageSession


class DummyProcess:
    def __init__(self) -> None:
        self.returncode: int | None = None
        self.pid = 4242

    def poll(self) -> int | None:
        return self.returncode

    def terminate(self) -> None:
        self.returncode = -15

    def kill(self) -> None:
        self.returncode = -9

    def wait(self, timeout: float | None = None) -> int | None:  # noqa: ARG002
        return self.returncode


class DummyLauncher:
    def __init__(self, tmp_path: Path, *, fail: bool = False) -> None:
        self.tmp_path = tmp_path
        self.fail = fail
        self.launched: list[DummyProcess] = []

    def launch(self, session_id: str) -> LaunchResult:
        if self.fail:
            raise BrowserLaunchError("No Chrome/Chromium executable found")
        proc = DummyProcess()
        self.launched.append(proc)
        profile = self.tmp_path / f"profile-{session_id}-{len(self.launched)}"
        profile.mkdir()
        return LaunchResult(
            process=proc,  # type: ignore[arg-type]
            binary="/fake/chrome",
            cdp_port=9222,
            user_data_dir=str(profile),
            command=["/fake/chrome"],
        )


class DummyConn:
    """CDP connection double that answers Runtime.evaluate by expression shape."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any] | None]] = []
        self.url = "about:blank"
        self.title = ""
        self.selector_present = True
        self.consent_match: dict[str, Any] | None = None
        self.text_match: dict[str, Any] | None = None
        self.closed = False

    def _value(self, value: Any) -> dict[str, Any]:
        if value is None:
            return {"result": {"type": "object", "subtype": "null"}}
        return {"result": {"type": "object", "value": value}}

    def send(self, method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        self.calls.append((method, params))
        if method == "Page.navigate":
            self.url = str((params or {}).get("url"))
            self.title = "Example Domain"
            return {"frameId": "f1"}
        if method == "Page.captureScreenshot":
            return {"data": "iVBORw0KGgo="}
        if method != "Runtime.evaluate":
            return {}

        expression = str((params or {}).get("expression") or "")
        if expression == "window.location.href":
            return self._value(self.url)
        if expression == "document.title":
            return self._value(self.title)
        if "__relayNetworkIdle" in expression:
            return self._value(True)
        if "const selectors" in expression:
            return self._value(self.consent_match)
        if "const patterns" in expression:
            return self._value(self.text_match)
        if expression.startswith("!!document.querySelector"):
            return self._value(self.selector_present)
        if "getBoundingClientRect" in expression and self.selector_present:
            return self._value({"x": 50, "y": 60})
        return self._value(None)

    def wait_for_event(self, name: str, timeout: float) -> dict[str, Any] | None:  # noqa: ARG002
        return {"method": name, "params": {}}

    def close(self) -> None:
        self.closed = True


def _pool(tmp_path: Path, conn: DummyConn, **overrides: Any) -> tuple[BrowserPool, DummyLauncher]:
    cfg = RelayConfig(click_wait=0.0, selector_timeout=0.0, navigation_timeout=2.0, **overrides)
    launcher = DummyLauncher(tmp_path)
    pool = BrowserPool(
        cfg,
        launcher=launcher,  # type: ignore[arg-type]
        page_factory=lambda launch, config: PageSession(conn),  # type: ignore[arg-type]
    )
    return pool, launcher


def test_normalize_url_adds_https_only_when_scheme_missing() -> None:
    assert normalize_url("example.com") == "https://example.com"
    assert normalize_url("localhost:8080/path") == "https://localhost:8080/path"
    assert normalize_url("http://example.com") == "http://example.com"
    assert normalize_url("about:blank") == "about:blank"


def test_selector_text_hint() -> None:
    assert selector_text_hint("text=Accept all") == "Accept all"
    assert selector_text_hint("button:contains('Sign in')") == "Sign in"
    assert selector_text_hint("#submit") is None


def test_navigate_then_get_title(tmp_path: Path) -> None:
    conn = DummyConn()
    pool, launcher = _pool(tmp_path, conn)

    out = pool.execute("s1", {"type": "navigate", "payload": {"url": "example.com"}})
    assert out["success"] is True
    assert out["executedBy"] == "server"
    assert out["result"]["url"] == "https://example.com"
    assert out["result"]["title"] == "Example Domain"
    assert ("Page.navigate", {"url": "https://example.com"}) in conn.calls

    title = pool.execute("s1", {"type": "getTitle", "payload": {}})
    assert title["result"] == {"title": "Example Domain"}
    assert len(launcher.launched) == 1
    assert pool.has_instance("s1")


def test_screenshot_returns_data_url(tmp_path: Path) -> None:
    pool, _ = _pool(tmp_path, DummyConn())
    out = pool.execute("s1", {"type": "screenshot", "payload": {}})
    assert out["result"]["screenshot"] == "data:image/png;base64,iVBORw0KGgo="


def test_click_uses_selector_when_present(tmp_path: Path) -> None:
    conn = DummyConn()
    pool, _ = _pool(tmp_path, conn)
    out = pool.execute("s1", {"type": "click", "payload": {"selector": "#go"}})
    assert out["result"]["strategy"] == "selector"
    mouse = [p for m, p in conn.calls if m == "Input.dispatchMouseEvent"]
    assert [p["type"] for p in mouse if p] == ["mousePressed", "mouseReleased"]


def test_click_falls_back_to_text_scan_for_consent_button(tmp_path: Path) -> None:
    conn = DummyConn()
    conn.selector_present = False
    conn.text_match = {"pattern": "accept", "text": "Accept", "tagName": "BUTTON"}
    pool, _ = _pool(tmp_path, conn)

    out = pool.execute("s1", {"type": "click", "payload": {"selector": "#cookie-accept"}})
    assert out["success"] is True
    assert out["result"]["strategy"] == "text_scan"
    assert out["result"]["matched"]["text"] == "Accept"


def test_click_with_no_match_reports_selector_failure(tmp_path: Path) -> None:
    conn = DummyConn()
    conn.selector_present = False
    pool, _ = _pool(tmp_path, conn)

    out = pool.execute("s1", {"type": "click", "payload": {"selector": "#missing"}})
    assert out["success"] is False
    assert "Waiting for selector `#missing` failed" in out["error"]
    # A failed action keeps the browser around.
    assert pool.has_instance("s1")


def test_keyboard_input_splits_text_and_keys(tmp_path: Path) -> None:
    conn = DummyConn()
    pool, _ = _pool(tmp_path, conn)
    out = pool.execute("s1", {"type": "keyboard_input", "payload": {"input": "hello{Enter}"}})
    assert out["result"]["steps"] == [{"text": "hello"}, {"key": "Enter"}]
    assert ("Input.insertText", {"text": "hello"}) in conn.calls
    key_downs = [p for m, p in conn.calls if m == "Input.dispatchKeyEvent" and p and p["type"] == "keyDown"]
    assert key_downs[0]["key"] == "Enter"
    assert key_downs[0]["text"] == "\r"


def test_dead_browser_is_relaunched(tmp_path: Path) -> None:
    pool, launcher = _pool(tmp_path, DummyConn())
    pool.ensure_instance("s1")
    launcher.launched[0].returncode = 1

    instance = pool.ensure_instance("s1")
    assert len(launcher.launched) == 2
    assert instance.process is launcher.launched[1]


def test_launch_failure_propagates_and_dispose_cleans_up(tmp_path: Path) -> None:
    conn = DummyConn()
    pool, launcher = _pool(tmp_path, conn)
    launcher.fail = True
    with pytest.raises(BrowserLaunchError):
        pool.execute("s1", {"type": "getUrl", "payload": {}})
    assert not pool.has_instance("s1")

    launcher.fail = False
    instance = pool.ensure_instance("s1")
    profile = Path(instance.user_data_dir)
    assert profile.exists()

    assert pool.dispose("s1") is True
    assert pool.dispose("s1") is False
    assert conn.closed is True
    assert not profile.exists()
    assert launcher.launched[0].returncode == -15


def test_click_falls_back_to_consent_selectors_before_text_scan(tmp_path: Path) -> None:
    conn = DummyConn()
    conn.selector_present = False
    conn.consent_match = {"selector": "#onetrust-accept-btn-handler", "tagName": "BUTTON"}
    conn.text_match = {"pattern": "accept", "text": "Accept", "tagName": "BUTTON"}
    pool, _ = _pool(tmp_path, conn)

    out = pool.execute("s1", {"type": "click", "payload": {"selector": "#banner-ok"}})
    assert out["success"] is True
    assert out["result"]["strategy"] == "consent_selector"
    assert out["result"]["matched"]["selector"] == "#onetrust-accept-btn-handler"
    expressions = [str((p or {}).get("expression")) for m, p in conn.calls if m == "Runtime.evaluate"]
    assert not any("const patterns" in e for e in expressions)


class GatedLauncher(DummyLauncher):
    """Holds the first launch open until ``release`` is set."""

    def __init__(self, tmp_path: Path) -> None:
        super().__init__(tmp_path)
        self.entered = threading.Event()
        self.release = threading.Event()

    def launch(self, session_id: str) -> LaunchResult:
        result = super().launch(session_id)
        if len(self.launched) == 1:
            self.entered.set()
            self.release.wait(5.0)
        return result


def _gated_pool(tmp_path: Path, conn: DummyConn) -> tuple[BrowserPool, GatedLauncher]:
    launcher = GatedLauncher(tmp_path)
    pool = BrowserPool(
        RelayConfig(click_wait=0.0, selector_timeout=0.0),
        launcher=launcher,  # type: ignore[arg-type]
        page_factory=lambda launch, config: PageSession(conn),  # type: ignore[arg-type]
    )
    return pool, launcher


def _run_in_thread(fn: Any) -> tuple[threading.Thread, list[BaseException]]:
    errors: list[BaseException] = []

    def _target() -> None:
        try:
            fn()
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    t = threading.Thread(target=_target)
    t.start()
    return t, errors


def test_dispose_during_launch_tears_down_the_new_browser(tmp_path: Path) -> None:
    conn = DummyConn()
    pool, launcher = _gated_pool(tmp_path, conn)
    t, errors = _run_in_thread(lambda: pool.execute("s1", {"type": "getUrl", "payload": {}}))
    assert launcher.entered.wait(2.0)

    assert pool.dispose("s1") is False
    launcher.release.set()
    t.join(timeout=2.0)

    assert len(errors) == 1
    assert isinstance(errors[0], ExecutionError)
    assert "released while its browser was starting" in str(errors[0])
    assert not pool.has_instance("s1")
    assert launcher.launched[0].returncode == -15
    assert not (tmp_path / "profile-s1-1").exists()
    assert conn.closed is True


def test_relaunch_after_dispose_keeps_only_one_browser(tmp_path: Path) -> None:
    pool, launcher = _gated_pool(tmp_path, DummyConn())
    t, errors = _run_in_thread(lambda: pool.ensure_instance("s1"))
    assert launcher.entered.wait(2.0)

    pool.dispose("s1")
    fresh = pool.ensure_instance("s1")
    launcher.release.set()
    t.join(timeout=2.0)

    assert len(errors) == 1
    assert isinstance(errors[0], ExecutionError)
    assert fresh.process is launcher.launched[1]
    assert pool.status()["count"] == 1
    assert launcher.launched[0].returncode == -15
    assert launcher.launched[1].returncode is None
