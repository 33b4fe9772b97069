"""Command catalogue, validation and the Command record."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from .errors import CommandValidationError

COMMAND_STATUSES = ("pending", "sent", "executing", "completed", "failed", "cancelled")
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})


@dataclass(frozen=True)
class CommandSpec:
    required: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    numeric: tuple[str, ...] = ()


COMMAND_TYPES: dict[str, CommandSpec] = {
    "navigate": CommandSpec(required=("url",)),
    "click": CommandSpec(required=("selector",)),
    "type": CommandSpec(required=("selector", "text")),
    "screenshot": CommandSpec(optional=("fullPage",)),
    "getTitle": CommandSpec(),
    "getUrl": CommandSpec(),
    "getText": CommandSpec(required=("selector",)),
    "getAttribute": CommandSpec(required=("selector", "attribute")),
    "waitForElement": CommandSpec(required=("selector",), optional=("timeout",), numeric=("timeout",)),
    "evaluate": CommandSpec(required=("script",)),
    "scroll": CommandSpec(optional=("x", "y", "deltaX", "deltaY"), numeric=("x", "y", "deltaX", "deltaY")),
    "click_coordinate": CommandSpec(required=("x", "y"), numeric=("x", "y")),
    "hover_coordinate": CommandSpec(required=("x", "y"), numeric=("x", "y")),
    "get_page_elements": CommandSpec(),
    "get_text": CommandSpec(),
    "key_press": CommandSpec(required=("key",)),
    "type_text": CommandSpec(required=("text",)),
    "keyboard_input": CommandSpec(required=("input",)),
}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_command(
    spec: Any,
    *,
    default_timeout_ms: int = 30_000,
    max_timeout_ms: int = 300_000,
) -> dict[str, Any]:
    """Validate a command request and return its normalized form.

    Returns ``{"type", "payload", "timeout"}`` with the timeout in milliseconds. Raises
    CommandValidationError before anything is executed.
    """
    if not isinstance(spec, dict):
        raise CommandValidationError("Command must be an object", suggestion="Send {type, payload}")

    ctype = spec.get("type")
    if not isinstance(ctype, str) or not ctype.strip():
        raise CommandValidationError("Command type is required", suggestion=f"Use one of: {', '.join(COMMAND_TYPES)}")
    ctype = ctype.strip()
    cspec = COMMAND_TYPES.get(ctype)
    if cspec is None:
        raise CommandValidationError(
            f"Unknown command type: {ctype}",
            suggestion=f"Use one of: {', '.join(COMMAND_TYPES)}",
            details={"type": ctype},
        )

    raw_payload = spec.get("payload")
    if raw_payload is None:
        raw_payload = {}
    if not isinstance(raw_payload, dict):
        raise CommandValidationError(f"Payload for {ctype} must be an object", details={"type": ctype})
    payload = dict(raw_payload)

    missing = [name for name in cspec.required if payload.get(name) is None or payload.get(name) == ""]
    if missing:
        raise CommandValidationError(
            f"Missing required payload field(s) for {ctype}: {', '.join(missing)}",
            suggestion=f"{ctype} requires: {', '.join(cspec.required)}",
            details={"type": ctype, "missing": missing},
        )

    for name in cspec.numeric:
        if name in payload and payload[name] is not None and not _is_number(payload[name]):
            raise CommandValidationError(
                f"Payload field {name} for {ctype} must be a number",
                details={"type": ctype, "field": name},
            )

    timeout = spec.get("timeout")
    if timeout is None:
        timeout_ms = int(default_timeout_ms)
    else:
        if not _is_number(timeout) or timeout <= 0:
            raise CommandValidationError("Command timeout must be a positive number of milliseconds")
        timeout_ms = int(min(float(timeout), float(max_timeout_ms)))

    return {"type": ctype, "payload": payload, "timeout": timeout_ms}


@dataclass
class Command:
    session_id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    timeout: float = 30.0
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    status: str = "pending"
    result: Any = None
    error: str | None = None
    completed_at: float | None = None
    executed_by: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def resolve(self, status: str, *, result: Any = None, error: str | None = None) -> bool:
        """Move the command to a terminal state; later calls are ignored."""
        if self.is_terminal:
            return False
        self.status = status
        self.result = result
        self.error = error
        self.completed_at = time.time()
        return True

    def wire_message(self) -> dict[str, Any]:
        return {
            "type": "command",
            "id": self.id,
            "command": {"type": self.type, "payload": self.payload, "timeout": int(self.timeout * 1000)},
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "type": self.type,
            "payload": self.payload,
            "timeout": int(self.timeout * 1000),
            "status": self.status,
            "createdAt": int(self.created_at * 1000),
            **({"completedAt": int(self.completed_at * 1000)} if self.completed_at else {}),
            **({"executedBy": self.executed_by} if self.executed_by else {}),
            **({"result": self.result} if self.result is not None else {}),
            **({"error": self.error} if self.error else {}),
        }
