from __future__ import annotations

import time
from contextlib import suppress
from typing import Any

from . import js_helpers
from .cdp import CdpConnection, CdpError

KEY_CODES: dict[str, int] = {
    "Enter": 13,
    "Tab": 9,
    "Escape": 27,
    "Backspace": 8,
    "Delete": 46,
    "Space": 32,
    "ArrowUp": 38,
    "ArrowDown": 40,
    "ArrowLeft": 37,
    "ArrowRight": 39,
    "Home": 36,
    "End": 35,
    "PageUp": 33,
    "PageDown": 34,
}


class PageSession:
    """
    High-level wrapper around the single page a pool browser owns.

    Wraps CdpConnection with the page operations the action handlers need.
    """

    def __init__(self, connection: CdpConnection, *, viewport: tuple[int, int] | None = None):
        self.conn = connection
        self.viewport = viewport
        self._page_enabled = False
        self._runtime_enabled = False

    def close(self) -> None:
        self.conn.close()

    def enable_domains(self, *, page: bool = True, runtime: bool = True) -> None:
        if page and not self._page_enabled:
            self.conn.send("Page.enable")
            self._page_enabled = True
        if runtime and not self._runtime_enabled:
            self.conn.send("Runtime.enable")
            self._runtime_enabled = True

    def set_viewport(self, width: int, height: int) -> None:
        self.conn.send(
            "Emulation.setDeviceMetricsOverride",
            {"width": int(width), "height": int(height), "deviceScaleFactor": 1, "mobile": False},
        )
        self.viewport = (int(width), int(height))

    # ─────────────────────────────────────────────────────────────────────────
    # Navigation
    # ─────────────────────────────────────────────────────────────────────────

    def navigate(self, url: str, *, timeout: float = 30.0) -> str:
        """Navigate and wait for the load event followed by network idle."""
        deadline = time.time() + timeout
        res = self.conn.send("Page.navigate", {"url": url})
        error_text = res.get("errorText") if isinstance(res, dict) else None
        if error_text:
            raise CdpError(f"Navigation to {url} failed: {error_text}")
        self.wait_load(max(0.1, deadline - time.time()))
        self.wait_network_idle(timeout=max(0.0, deadline - time.time()))
        return url

    def wait_load(self, timeout: float = 10.0) -> bool:
        return self.conn.wait_for_event("Page.loadEventFired", timeout) is not None

    def wait_network_idle(self, *, timeout: float = 10.0, poll: float = 0.1) -> bool:
        deadline = time.time() + timeout
        while time.time() < deadline:
            with suppress(CdpError):
                if self.eval_js(js_helpers.NETWORK_IDLE_JS):
                    return True
            time.sleep(poll)
        return False

    # ─────────────────────────────────────────────────────────────────────────
    # JavaScript
    # ─────────────────────────────────────────────────────────────────────────

    def eval_js(self, expression: str) -> Any:
        """Evaluate JavaScript and return its value (undefined and null map to None)."""
        result = self.conn.send(
            "Runtime.evaluate",
            {"expression": expression, "returnByValue": True, "awaitPromise": True},
        )
        details = result.get("exceptionDetails")
        if isinstance(details, dict):
            exc = details.get("exception") if isinstance(details.get("exception"), dict) else {}
            message = exc.get("description") or details.get("text") or "JavaScript evaluation failed"
            raise CdpError(str(message))
        if "result" not in result:
            return None
        value = result["result"]
        if isinstance(value, dict) and value.get("type") == "undefined":
            return None
        if isinstance(value, dict) and value.get("type") == "object" and value.get("subtype") == "null":
            return None
        return value.get("value", value) if isinstance(value, dict) else value

    def get_url(self) -> str:
        return self.eval_js("window.location.href") or ""

    def get_title(self) -> str:
        return self.eval_js("document.title") or ""

    def wait_for_selector(self, selector: str, *, timeout: float = 10.0, poll: float = 0.1) -> bool:
        expression = js_helpers.exists_js(selector)
        deadline = time.time() + max(0.0, timeout)
        while True:
            if self.eval_js(expression):
                return True
            if time.time() >= deadline:
                return False
            time.sleep(poll)

    def element_center(self, selector: str) -> dict[str, Any] | None:
        res = self.eval_js(js_helpers.element_center_js(selector))
        return res if isinstance(res, dict) else None

    # ─────────────────────────────────────────────────────────────────────────
    # Input
    # ─────────────────────────────────────────────────────────────────────────

    def click(self, x: float, y: float, button: str = "left", click_count: int = 1) -> None:
        for event_type in ("mousePressed", "mouseReleased"):
            self.conn.send(
                "Input.dispatchMouseEvent",
                {"type": event_type, "x": x, "y": y, "button": button, "clickCount": click_count},
            )

    def move_mouse(self, x: float, y: float) -> None:
        self.conn.send("Input.dispatchMouseEvent", {"type": "mouseMoved", "x": x, "y": y, "button": "none"})

    def scroll(self, delta_x: float = 0, delta_y: float = 0, x: float = 0, y: float = 0) -> None:
        self.conn.send(
            "Input.dispatchMouseEvent",
            {"type": "mouseWheel", "x": x, "y": y, "deltaX": delta_x, "deltaY": delta_y},
        )

    def press_key(self, key: str, modifiers: int = 0) -> None:
        key = "Space" if key == " " else key
        key_code = KEY_CODES.get(key, ord(key[0].upper()) if len(key) == 1 else 0)
        cdp_key = " " if key == "Space" else key
        code = f"Key{key.upper()}" if len(key) == 1 and key.isalpha() else key
        for event_type in ("keyDown", "keyUp"):
            params: dict[str, Any] = {
                "type": event_type,
                "key": cdp_key,
                "code": code,
                "windowsVirtualKeyCode": key_code,
                "modifiers": modifiers,
            }
            if event_type == "keyDown" and key == "Enter":
                params["text"] = "\r"
            self.conn.send("Input.dispatchKeyEvent", params)

    def type_text(self, text: str) -> None:
        if not text:
            return
        try:
            self.conn.send("Input.insertText", {"text": str(text)})
            return
        except CdpError:
            pass
        for c in text:
            self.conn.send("Input.dispatchKeyEvent", {"type": "char", "text": c})

    # ─────────────────────────────────────────────────────────────────────────
    # Screenshots
    # ─────────────────────────────────────────────────────────────────────────

    def screenshot(self, *, full_page: bool = False) -> str:
        """Capture a PNG screenshot and return it base64-encoded."""
        params: dict[str, Any] = {"format": "png", "fromSurface": True}
        if full_page:
            params["captureBeyondViewport"] = True
            with suppress(CdpError):
                metrics = self.conn.send("Page.getLayoutMetrics")
                size = metrics.get("cssContentSize") or metrics.get("contentSize") or {}
                if size.get("width") and size.get("height"):
                    params["clip"] = {
                        "x": 0,
                        "y": 0,
                        "width": size["width"],
                        "height": size["height"],
                        "scale": 1,
                    }
        result = self.conn.send("Page.captureScreenshot", params)
        return result.get("data", "")
