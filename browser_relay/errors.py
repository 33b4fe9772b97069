"""
Error taxonomy shared by every relay component.

Each error carries a machine-readable ``kind`` plus a human-readable reason and a
suggestion, so the control surface can report failures without inspecting types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RelayError(Exception):
    """Structured error with enough context for a remote caller to act on it."""

    reason: str
    suggestion: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    kind = "internal"
    retryable = False

    def __post_init__(self) -> None:
        super().__init__(self.reason)

    def __str__(self) -> str:
        return self.reason

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "kind": self.kind,
            "reason": self.reason,
            "suggestion": self.suggestion,
            "retryable": self.retryable,
            "details": self.details,
        }


class CommandValidationError(RelayError):
    kind = "validation"


class CapacityError(RelayError):
    kind = "capacity"


class NotFoundError(RelayError):
    kind = "not_found"


class SessionNotFoundError(NotFoundError):
    pass


class CommandNotFoundError(NotFoundError):
    pass


class ConnectivityError(RelayError):
    kind = "connectivity"


class CommandTimeoutError(RelayError):
    kind = "timeout"


class ExecutionError(RelayError):
    kind = "execution"


class BrowserLaunchError(ExecutionError):
    """Browser could not be started; the next server-side command tries again."""

    retryable = True


class PlannerError(RelayError):
    kind = "planner"


def session_not_found(session_id: str) -> SessionNotFoundError:
    return SessionNotFoundError(
        f"Session not found: {session_id}",
        suggestion="Create a session first (sessions/create) or check the session id",
        details={"sessionId": session_id},
    )


def is_selector_miss(message: str | None) -> bool:
    """Return True if an action failure means the target element was not found."""
    text = str(message or "").lower()
    return any(
        needle in text
        for needle in (
            "waiting for selector",
            "element not found",
            "no node found",
            "no element found",
        )
    )
