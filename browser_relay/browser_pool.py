from __future__ import annotations

import contextlib
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from . import js_helpers
from .cdp import CdpError, open_page_target
from .config import RelayConfig
from .errors import BrowserLaunchError, ExecutionError, RelayError
from .launcher import BrowserLauncher, LaunchResult
from .page_session import PageSession

logger = logging.getLogger("browser_relay.pool")

MAX_PAGE_TEXT = 5000
_KEY_TOKEN_RE = re.compile(r"\{([A-Za-z]+)\}")
_QUOTED_RE = re.compile(r"""["']([^"']{2,60})["']""")


def _now_ms() -> int:
    return int(time.time() * 1000)


def normalize_url(url: str) -> str:
    url = str(url or "").strip()
    if not url:
        return url
    if re.match(r"^[a-zA-Z][a-zA-Z0-9+.-]*:", url) and not re.match(r"^[^/:]+:\d+", url):
        return url
    return f"https://{url}"


def selector_text_hint(selector: str) -> str | None:
    """Pull a human text hint out of a selector such as ``text=Accept`` or ``:contains("Go")``."""
    sel = str(selector or "").strip()
    if sel.lower().startswith("text="):
        hint = sel[5:].strip().strip("\"'")
        return hint or None
    m = _QUOTED_RE.search(sel)
    if m and not sel.startswith(("#", ".")):
        return m.group(1).strip() or None
    return None


def _number(payload: dict[str, Any], name: str, default: float = 0.0) -> float:
    value = payload.get(name)
    if value is None:
        return default
    return float(value)


@dataclass
class BrowserInstance:
    session_id: str
    process: Any
    page: PageSession
    user_data_dir: str
    cdp_port: int
    binary: str
    launched_at: float = field(default_factory=time.time)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def is_alive(self) -> bool:
        try:
            return self.process.poll() is None
        except Exception:  # noqa: BLE001
            return False

    def info(self) -> dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "pid": getattr(self.process, "pid", None),
            "cdpPort": self.cdp_port,
            "binary": self.binary,
            "launchedAt": int(self.launched_at * 1000),
            "alive": self.is_alive(),
        }


PageFactory = Callable[[LaunchResult, RelayConfig], PageSession]


def connect_page(launch: LaunchResult, config: RelayConfig) -> PageSession:
    """Attach to the launched browser's first page and prepare it for actions."""
    conn = open_page_target(launch.cdp_port, timeout=max(5.0, config.navigation_timeout))
    page = PageSession(conn)
    try:
        page.enable_domains()
        page.set_viewport(*config.viewport)
    except Exception:
        page.close()
        raise
    return page


class BrowserPool:
    """One headless browser and page per session that executes commands server-side.

    Instances are created lazily by the first command, never shared, and replaced when the
    process has died. Commands for one session run strictly one at a time.
    """

    def __init__(
        self,
        config: RelayConfig | None = None,
        *,
        launcher: BrowserLauncher | None = None,
        page_factory: PageFactory | None = None,
    ) -> None:
        self.config = config or RelayConfig()
        self.launcher = launcher or BrowserLauncher(self.config)
        self.page_factory = page_factory or connect_page
        self._lock = threading.Lock()
        self._instances: dict[str, BrowserInstance] = {}
        self._launch_locks: dict[str, threading.Lock] = {}

        self._handlers: dict[str, Callable[[PageSession, dict[str, Any]], dict[str, Any]]] = {
            "navigate": self._navigate,
            "screenshot": self._screenshot,
            "click": self._click,
            "type": self._type,
            "getTitle": lambda page, _payload: {"title": page.get_title()},
            "getUrl": lambda page, _payload: {"url": page.get_url()},
            "getText": self._get_text,
            "getAttribute": self._get_attribute,
            "waitForElement": self._wait_for_element,
            "evaluate": lambda page, payload: {"value": page.eval_js(str(payload["script"]))},
            "scroll": self._scroll,
            "get_page_elements": self._page_elements,
            "click_coordinate": self._click_coordinate,
            "hover_coordinate": self._hover_coordinate,
            "key_press": self._key_press,
            "type_text": self._type_text,
            "keyboard_input": self._keyboard_input,
            "get_text": self._page_text,
        }

    # ─────────────────────────────────────────────────────────────────────────
    # Instances
    # ─────────────────────────────────────────────────────────────────────────

    def has_instance(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._instances

    def session_ids(self) -> list[str]:
        with self._lock:
            return list(self._instances)

    def ensure_instance(self, session_id: str) -> BrowserInstance:
        with self._lock:
            launch_lock = self._launch_locks.setdefault(session_id, threading.Lock())

        with launch_lock:
            with self._lock:
                instance = self._instances.get(session_id)
            if instance is not None:
                if instance.is_alive():
                    return instance
                logger.warning("browser_dead session=%s relaunching", session_id)
                self.dispose(session_id, forget=False)

            launch = self.launcher.launch(session_id)
            try:
                page = self.page_factory(launch, self.config)
            except Exception as exc:
                BrowserLauncher.stop(launch.process)
                BrowserLauncher.remove_profile(launch.user_data_dir)
                raise BrowserLaunchError(
                    f"Browser started but its page could not be attached: {exc}",
                    suggestion="Retry the command; the browser will be relaunched",
                ) from exc

            instance = BrowserInstance(
                session_id=session_id,
                process=launch.process,
                page=page,
                user_data_dir=launch.user_data_dir,
                cdp_port=launch.cdp_port,
                binary=launch.binary,
            )
            with self._lock:
                # dispose() drops the launch lock; a different (or missing) lock means the
                # session was released while this browser was starting.
                current = self._launch_locks.get(session_id) is launch_lock
                if current:
                    self._instances[session_id] = instance
            if not current:
                self._discard(instance)
                logger.info("browser_discarded session=%s released during launch", session_id)
                raise ExecutionError(
                    "Session was released while its browser was starting",
                    details={"sessionId": session_id},
                )
            logger.info("browser_ready session=%s port=%d", session_id, launch.cdp_port)
            return instance

    def dispose(self, session_id: str, *, forget: bool = True) -> bool:
        with self._lock:
            instance = self._instances.pop(session_id, None)
            if forget:
                self._launch_locks.pop(session_id, None)
        if instance is None:
            return False
        self._discard(instance)
        logger.info("browser_disposed session=%s", session_id)
        return True

    @staticmethod
    def _discard(instance: BrowserInstance) -> None:
        with contextlib.suppress(Exception):
            instance.page.close()
        BrowserLauncher.stop(instance.process)
        BrowserLauncher.remove_profile(instance.user_data_dir)

    def dispose_all(self) -> None:
        for sid in self.session_ids():
            with contextlib.suppress(Exception):
                self.dispose(sid)

    def status(self) -> dict[str, Any]:
        with self._lock:
            instances = list(self._instances.values())
        return {"count": len(instances), "instances": [i.info() for i in instances]}

    # ─────────────────────────────────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────────────────────────────────

    def execute(self, session_id: str, command: dict[str, Any]) -> dict[str, Any]:
        """Run one validated command (``{type, payload}``) on the session's page.

        Launch failures raise; action failures come back as ``success: False`` and leave the
        instance in place.
        """
        ctype = str(command.get("type") or "")
        payload = command.get("payload") if isinstance(command.get("payload"), dict) else {}
        handler = self._handlers.get(ctype)
        if handler is None:
            return {"success": False, "error": f"Unsupported command type: {ctype}", "executedBy": "server", "timestamp": _now_ms()}

        instance = self.ensure_instance(session_id)
        with instance.lock:
            try:
                result = handler(instance.page, payload)
            except (RelayError, CdpError) as exc:
                logger.info("server_action_failed session=%s type=%s error=%s", session_id, ctype, exc)
                return {"success": False, "error": str(exc), "executedBy": "server", "timestamp": _now_ms()}
            except Exception as exc:  # noqa: BLE001
                logger.exception("server_action_crashed session=%s type=%s", session_id, ctype)
                return {"success": False, "error": str(exc), "executedBy": "server", "timestamp": _now_ms()}
        return {"success": True, "result": result, "executedBy": "server", "timestamp": _now_ms()}

    # ─────────────────────────────────────────────────────────────────────────
    # Action handlers
    # ─────────────────────────────────────────────────────────────────────────

    def _navigate(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        url = normalize_url(payload["url"])
        page.navigate(url, timeout=self.config.navigation_timeout)
        return {"url": page.get_url() or url, "title": page.get_title(), "timestamp": _now_ms()}

    def _screenshot(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        data = page.screenshot(full_page=bool(payload.get("fullPage")))
        return {"screenshot": f"data:image/png;base64,{data}", "timestamp": _now_ms()}

    def _require_selector(self, page: PageSession, selector: str, timeout: float) -> None:
        if not page.wait_for_selector(selector, timeout=timeout):
            raise ExecutionError(f"Waiting for selector `{selector}` failed: timeout {timeout:g}s exceeded")

    def _click(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        selector = str(payload["selector"])

        try:
            found = page.wait_for_selector(selector, timeout=self.config.click_wait)
        except CdpError:
            # Selectors the DOM cannot parse fall through to the heuristics.
            found = False
        if found:
            center = page.element_center(selector)
            if center is not None:
                page.click(float(center["x"]), float(center["y"]))
                return {"clicked": True, "strategy": "selector", "selector": selector}

        consent = page.eval_js(js_helpers.consent_click_js(js_helpers.CONSENT_SELECTORS))
        if isinstance(consent, dict):
            logger.info("click_fallback strategy=consent_selector selector=%s matched=%s", selector, consent.get("selector"))
            return {"clicked": True, "strategy": "consent_selector", "selector": selector, "matched": consent}

        patterns = list(js_helpers.CONSENT_TEXT_PATTERNS)
        hint = selector_text_hint(selector)
        if hint:
            patterns.insert(0, hint)
        scanned = page.eval_js(js_helpers.text_scan_click_js(patterns))
        if isinstance(scanned, dict):
            logger.info("click_fallback strategy=text_scan selector=%s text=%s", selector, scanned.get("text"))
            return {"clicked": True, "strategy": "text_scan", "selector": selector, "matched": scanned}

        raise ExecutionError(f"Waiting for selector `{selector}` failed: no fallback matched")

    def _type(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        selector = str(payload["selector"])
        text = str(payload["text"])
        self._require_selector(page, selector, self.config.selector_timeout)
        if not page.eval_js(js_helpers.focus_js(selector)):
            raise ExecutionError(f"Element not found: {selector}")
        page.type_text(text)
        return {"typed": True, "selector": selector, "length": len(text)}

    def _get_text(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        selector = str(payload["selector"])
        self._require_selector(page, selector, self.config.selector_timeout)
        res = page.eval_js(js_helpers.text_js(selector))
        if not isinstance(res, dict) or not res.get("found"):
            raise ExecutionError(f"Element not found: {selector}")
        return {"text": res.get("text") or ""}

    def _get_attribute(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        selector = str(payload["selector"])
        attribute = str(payload["attribute"])
        self._require_selector(page, selector, self.config.selector_timeout)
        res = page.eval_js(js_helpers.attribute_js(selector, attribute))
        if not isinstance(res, dict) or not res.get("found"):
            raise ExecutionError(f"Element not found: {selector}")
        return {"attribute": attribute, "value": res.get("value")}

    def _wait_for_element(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        selector = str(payload["selector"])
        timeout = _number(payload, "timeout", self.config.selector_timeout * 1000) / 1000.0
        self._require_selector(page, selector, timeout)
        return {"found": True, "selector": selector}

    def _scroll(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        if payload.get("deltaX") is not None or payload.get("deltaY") is not None:
            width, height = page.viewport or self.config.viewport
            page.scroll(
                _number(payload, "deltaX"),
                _number(payload, "deltaY"),
                _number(payload, "x", width / 2),
                _number(payload, "y", height / 2),
            )
            position = page.eval_js(js_helpers.SCROLL_POSITION_JS)
        else:
            position = page.eval_js(js_helpers.scroll_to_js(_number(payload, "x"), _number(payload, "y")))
        return {"scrolled": True, "position": position if isinstance(position, dict) else None}

    def _page_elements(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG002
        res = page.eval_js(js_helpers.page_elements_js(self.config.max_page_elements))
        if not isinstance(res, dict):
            return {"elements": [], "totalCount": 0, "url": page.get_url(), "title": page.get_title()}
        return res

    def _click_coordinate(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        x, y = float(payload["x"]), float(payload["y"])
        page.click(x, y)
        return {"clicked": True, "x": x, "y": y}

    def _hover_coordinate(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        x, y = float(payload["x"]), float(payload["y"])
        page.move_mouse(x, y)
        return {"hovered": True, "x": x, "y": y}

    def _key_press(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        key = str(payload["key"])
        page.press_key(key)
        return {"pressed": key}

    def _type_text(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        text = str(payload["text"])
        page.type_text(text)
        return {"typed": True, "length": len(text)}

    def _keyboard_input(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:
        """Type plain text and press ``{Key}`` tokens in order, e.g. ``"hello{Enter}"``."""
        raw = str(payload["input"])
        steps: list[dict[str, str]] = []
        pos = 0
        for m in _KEY_TOKEN_RE.finditer(raw):
            if m.start() > pos:
                steps.append({"text": raw[pos : m.start()]})
            steps.append({"key": m.group(1)})
            pos = m.end()
        if pos < len(raw):
            steps.append({"text": raw[pos:]})

        for step in steps:
            if "key" in step:
                page.press_key(step["key"])
            else:
                page.type_text(step["text"])
        return {"steps": steps}

    def _page_text(self, page: PageSession, payload: dict[str, Any]) -> dict[str, Any]:  # noqa: ARG002
        text = str(page.eval_js(js_helpers.PAGE_TEXT_JS) or "")
        return {"text": text[:MAX_PAGE_TEXT], "truncated": len(text) > MAX_PAGE_TEXT, "length": len(text)}
