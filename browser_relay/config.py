from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_ALLOWED_ORIGINS: list[str] = ["http://localhost:3000"]

DEFAULT_BROWSER_FLAGS: list[str] = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-crash-reporter",
    "--disable-extensions",
    "--no-first-run",
    "--no-default-browser-check",
    "--no-zygote",
    "--remote-allow-origins=*",
]


def expand_path(raw: str) -> str:
    return str(Path(raw).expanduser())


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    raw = raw.strip()
    return raw or default


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    try:
        value = int(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(minimum, value)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    try:
        value = float(os.environ.get(name) or default)
    except Exception:
        value = default
    return max(minimum, value)


def _env_bool(name: str, default: bool) -> bool:
    raw = (os.environ.get(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.environ.get(name)
    if raw is None:
        return list(default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _parse_viewport(raw: str | None) -> tuple[int, int]:
    try:
        w, h = (int(part) for part in str(raw or "").replace("x", ",").split(",", 1))
        if w > 0 and h > 0:
            return w, h
    except Exception:
        pass
    return 1920, 1080


@dataclass
class RelayConfig:
    """Runtime knobs for the relay, read from RELAY_* environment variables.

    Timeouts are in seconds unless the field name says otherwise. Command timeouts stay in
    milliseconds because that is the unit used on the wire and by callers.
    """

    host: str = "127.0.0.1"
    port: int = 3010
    environment: str = "development"
    allowed_origins: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_ORIGINS))
    enforce_origins: bool = False

    max_sessions: int = 100
    active_session_timeout: float = 1800.0
    idle_session_timeout: float = 600.0
    cleanup_interval: float = 300.0

    command_timeout_ms: int = 30_000
    max_command_timeout_ms: int = 300_000
    max_command_queue: int = 50

    heartbeat_interval: float = 30.0
    register_timeout: float = 10.0

    browser_binary: str | None = None
    profile_root: str = field(default_factory=tempfile.gettempdir)
    headless: bool = True
    browser_flags: list[str] = field(default_factory=lambda: list(DEFAULT_BROWSER_FLAGS))
    launch_timeout: float = 10.0
    navigation_timeout: float = 30.0
    selector_timeout: float = 10.0
    click_wait: float = 2.0
    viewport: tuple[int, int] = (1920, 1080)
    max_page_elements: int = 50

    max_iterations: int = 10
    settle_delay: float = 3.0
    action_delay: float = 1.0
    planner_model: str = "gemini-2.0-flash"
    planner_timeout: float = 15.0
    gemini_api_key: str | None = None
    screenshot_dir: str | None = None

    log_level: str = "INFO"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def origin_policy_enabled(self) -> bool:
        return self.enforce_origins or self.is_production

    @staticmethod
    def normalize_environment(raw: str | None) -> str:
        env = (raw or "").strip().lower()
        if env in {"prod", "production"}:
            return "production"
        if env in {"test", "testing"}:
            return "test"
        return "development"

    @classmethod
    def from_env(cls) -> RelayConfig:
        environment = cls.normalize_environment(os.environ.get("RELAY_ENV"))
        binary = (os.environ.get("RELAY_BROWSER_BINARY") or "").strip()
        screenshot_dir = (os.environ.get("RELAY_SCREENSHOT_DIR") or "").strip()
        api_key = (os.environ.get("GEMINI_API_KEY") or "").strip()
        return cls(
            host=_env_str("RELAY_HOST", "127.0.0.1"),
            port=_env_int("RELAY_PORT", 3010),
            environment=environment,
            allowed_origins=_env_list("RELAY_ALLOWED_ORIGINS", DEFAULT_ALLOWED_ORIGINS),
            enforce_origins=_env_bool("RELAY_ENFORCE_ORIGINS", environment == "production"),
            max_sessions=_env_int("RELAY_MAX_SESSIONS", 100, minimum=1),
            active_session_timeout=_env_float("RELAY_ACTIVE_SESSION_TIMEOUT", 1800.0, minimum=1.0),
            idle_session_timeout=_env_float("RELAY_IDLE_SESSION_TIMEOUT", 600.0, minimum=1.0),
            cleanup_interval=_env_float("RELAY_CLEANUP_INTERVAL", 300.0, minimum=0.1),
            command_timeout_ms=_env_int("RELAY_COMMAND_TIMEOUT", 30_000, minimum=1),
            max_command_timeout_ms=_env_int("RELAY_MAX_COMMAND_TIMEOUT", 300_000, minimum=1),
            max_command_queue=_env_int("RELAY_MAX_COMMAND_QUEUE", 50, minimum=1),
            heartbeat_interval=_env_float("RELAY_HEARTBEAT_INTERVAL", 30.0, minimum=0.1),
            register_timeout=_env_float("RELAY_REGISTER_TIMEOUT", 10.0, minimum=0.1),
            browser_binary=expand_path(binary) if binary else None,
            profile_root=expand_path(_env_str("RELAY_PROFILE_ROOT", tempfile.gettempdir())),
            headless=_env_bool("RELAY_HEADLESS", True),
            browser_flags=DEFAULT_BROWSER_FLAGS + _env_list("RELAY_BROWSER_FLAGS", []),
            launch_timeout=_env_float("RELAY_LAUNCH_TIMEOUT", 10.0, minimum=0.5),
            navigation_timeout=_env_float("RELAY_NAVIGATION_TIMEOUT", 30.0, minimum=0.5),
            selector_timeout=_env_float("RELAY_SELECTOR_TIMEOUT", 10.0, minimum=0.1),
            click_wait=_env_float("RELAY_CLICK_WAIT", 2.0, minimum=0.0),
            viewport=_parse_viewport(os.environ.get("RELAY_VIEWPORT")),
            max_page_elements=_env_int("RELAY_MAX_PAGE_ELEMENTS", 50, minimum=1),
            max_iterations=_env_int("RELAY_MAX_ITERATIONS", 10, minimum=1),
            settle_delay=_env_float("RELAY_SETTLE_DELAY", 3.0),
            action_delay=_env_float("RELAY_ACTION_DELAY", 1.0),
            planner_model=_env_str("RELAY_PLANNER_MODEL", "gemini-2.0-flash"),
            planner_timeout=_env_float("RELAY_PLANNER_TIMEOUT", 15.0, minimum=1.0),
            gemini_api_key=api_key or None,
            screenshot_dir=expand_path(screenshot_dir) if screenshot_dir else None,
            log_level=_env_str("RELAY_LOG_LEVEL", "INFO").upper(),
        )
