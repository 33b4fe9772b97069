"""Browser relay: sessions, extension connections, a headless browser pool and a task agent."""

from __future__ import annotations

from .config import RelayConfig
from .errors import RelayError

__all__ = ["RelayConfig", "RelayError"]
__version__ = "0.1.0"
