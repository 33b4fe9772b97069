from __future__ import annotations

import contextlib
import logging
import os
import shutil
import socket
import subprocess
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.error import URLError
from urllib.request import urlopen

from .config import RelayConfig
from .errors import BrowserLaunchError

logger = logging.getLogger("browser_relay.launcher")


def _bundled_chromium_path() -> str:
    """Chromium unpacked into vendor/ next to the package (portable installs)."""
    return str(Path(__file__).resolve().parent.parent / "vendor" / "chromium" / "chrome")


KNOWN_BINARY_LOCATIONS: list[str] = [
    "/usr/bin/google-chrome-stable",
    "/usr/bin/google-chrome",
    "/usr/bin/chromium",
    "/usr/bin/chromium-browser",
    "/usr/local/bin/chromium",
    "/opt/google/chrome/chrome",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
    "C:\\Program Files\\Google\\Chrome\\Application\\chrome.exe",
    "C:\\Program Files (x86)\\Google\\Chrome\\Application\\chrome.exe",
    # Snap builds ignore --user-data-dir in some setups; keep them last.
    "/snap/bin/chromium",
]

PATH_BINARY_NAMES: list[str] = ["google-chrome-stable", "google-chrome", "chromium", "chromium-browser", "chrome"]


def _is_executable(path: str | None) -> bool:
    return bool(path) and Path(path).is_file() and os.access(str(path), os.X_OK)


def resolve_from_override(config: RelayConfig) -> str | None:
    for raw in (config.browser_binary, os.environ.get("CHROME_BIN"), os.environ.get("PUPPETEER_EXECUTABLE_PATH")):
        if raw and _is_executable(os.path.expanduser(raw)):
            return os.path.expanduser(raw)
    return None


def resolve_from_known_locations(config: RelayConfig) -> str | None:  # noqa: ARG001
    for candidate in KNOWN_BINARY_LOCATIONS:
        if _is_executable(candidate):
            return candidate
    return None


def resolve_from_path(config: RelayConfig) -> str | None:  # noqa: ARG001
    for name in PATH_BINARY_NAMES:
        found = shutil.which(name)
        if found:
            return found
    return None


def resolve_bundled(config: RelayConfig) -> str | None:  # noqa: ARG001
    path = _bundled_chromium_path()
    return path if _is_executable(path) else None


BinaryResolver = Callable[[RelayConfig], "str | None"]

DEFAULT_RESOLVERS: list[BinaryResolver] = [
    resolve_from_override,
    resolve_from_known_locations,
    resolve_from_path,
    resolve_bundled,
]


@dataclass
class LaunchResult:
    process: subprocess.Popen
    binary: str
    cdp_port: int
    user_data_dir: str
    command: list[str]


class BrowserLauncher:
    """Starts one isolated headless browser per call.

    The executable is resolved through an ordered resolver list (first hit wins), each launch
    gets a fresh user-data directory and a free DevTools port, and a launch that does not
    expose the DevTools endpoint within ``launch_timeout`` is torn down.
    """

    def __init__(self, config: RelayConfig | None = None, resolvers: list[BinaryResolver] | None = None) -> None:
        self.config = config or RelayConfig()
        self.resolvers = list(resolvers) if resolvers is not None else list(DEFAULT_RESOLVERS)

    def detect_binary(self) -> str:
        for resolver in self.resolvers:
            try:
                found = resolver(self.config)
            except Exception:  # noqa: BLE001
                logger.debug("binary_resolver_failed resolver=%s", getattr(resolver, "__name__", resolver))
                continue
            if found:
                return found
        raise BrowserLaunchError(
            "No Chrome/Chromium executable found",
            suggestion="Install Chrome or Chromium, or set RELAY_BROWSER_BINARY",
        )

    def build_command(self, binary: str, *, port: int, user_data_dir: str) -> list[str]:
        width, height = self.config.viewport
        flags = [
            f"--remote-debugging-port={port}",
            f"--user-data-dir={user_data_dir}",
            f"--crash-dumps-dir={os.path.join(user_data_dir, 'crash-dumps')}",
            f"--window-size={width},{height}",
        ]
        if self.config.headless:
            flags.append("--headless=new")
        for flag in self.config.browser_flags:
            if flag not in flags:
                flags.append(flag)
        return [binary, *flags, "about:blank"]

    def launch(self, session_id: str) -> LaunchResult:
        binary = self.detect_binary()
        root = Path(self.config.profile_root)
        root.mkdir(parents=True, exist_ok=True)
        user_data_dir = tempfile.mkdtemp(prefix=f"relay-{session_id[:8]}-", dir=str(root))
        (Path(user_data_dir) / "crash-dumps").mkdir(parents=True, exist_ok=True)
        port = self.find_free_port()
        cmd = self.build_command(binary, port=port, user_data_dir=user_data_dir)

        logger.info("browser_launch session=%s binary=%s port=%d", session_id, binary, port)
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, stdin=subprocess.DEVNULL)
        except OSError as exc:
            self.remove_profile(user_data_dir)
            raise BrowserLaunchError(
                f"Failed to start browser: {exc}",
                suggestion="Check RELAY_BROWSER_BINARY points to a working Chrome/Chromium",
                details={"binary": binary},
            ) from exc

        deadline = time.time() + self.config.launch_timeout
        while time.time() < deadline:
            if proc.poll() is not None:
                break
            if self.cdp_ready(port):
                return LaunchResult(process=proc, binary=binary, cdp_port=port, user_data_dir=user_data_dir, command=cmd)
            time.sleep(0.1)

        exit_code = proc.poll()
        self.stop(proc)
        self.remove_profile(user_data_dir)
        reason = (
            f"Browser exited during startup (code {exit_code})"
            if exit_code is not None
            else f"Browser did not expose DevTools within {self.config.launch_timeout:.0f}s"
        )
        raise BrowserLaunchError(
            reason,
            suggestion="The next command retries the launch; check the binary and RELAY_BROWSER_FLAGS",
            details={"binary": binary, "port": port},
        )

    @staticmethod
    def cdp_ready(port: int, timeout: float = 0.4) -> bool:
        try:
            with urlopen(f"http://127.0.0.1:{port}/json/version", timeout=timeout) as resp:
                return resp.status == 200
        except (OSError, TimeoutError, URLError):
            return False

    @staticmethod
    def stop(proc: subprocess.Popen | None, *, timeout: float = 2.0) -> None:
        """Terminate the process, escalating to kill."""
        if proc is None or proc.poll() is not None:
            return
        with contextlib.suppress(Exception):
            proc.terminate()
        try:
            proc.wait(timeout=max(0.1, float(timeout)))
            return
        except subprocess.TimeoutExpired:
            pass
        with contextlib.suppress(Exception):
            proc.kill()
        with contextlib.suppress(Exception):
            proc.wait(timeout=1.0)

    @staticmethod
    def remove_profile(user_data_dir: str | None) -> None:
        if user_data_dir:
            shutil.rmtree(user_data_dir, ignore_errors=True)

    @staticmethod
    def find_free_port() -> int:
        with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]
