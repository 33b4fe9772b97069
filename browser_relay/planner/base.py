from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from ..commands import validate_command
from ..errors import CommandValidationError

logger = logging.getLogger("browser_relay.planner")

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)```", re.DOTALL)


@dataclass
class PlannedAction:
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    description: str = ""

    def to_command(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload)}

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "payload": dict(self.payload), "description": self.description}


@dataclass
class PlannerDecision:
    """What the planner wants next.

    ``parsed=False`` marks a response that could not be read as a decision; ``raw`` then
    holds the text so callers can fall back to heuristics.
    """

    thought: str = ""
    response: str = ""
    description: str = ""
    requires_action: bool = False
    task_completed: bool = False
    actions: list[PlannedAction] = field(default_factory=list)
    confidence: float | None = None
    parsed: bool = True
    source: str = "planner"
    raw: str | None = None

    @classmethod
    def unparseable(cls, raw: str | None) -> PlannerDecision:
        return cls(parsed=False, raw=raw, source="unparseable")

    @property
    def narrative(self) -> str:
        return self.response or self.description or self.thought

    def to_dict(self) -> dict[str, Any]:
        return {
            "thought": self.thought,
            "response": self.response,
            "description": self.description,
            "requiresAction": self.requires_action,
            "taskCompleted": self.task_completed,
            "actions": [a.to_dict() for a in self.actions],
            "confidence": self.confidence,
            "source": self.source,
        }


class Planner(Protocol):
    def plan_navigation(self, history: list[dict[str, Any]], instruction: str) -> PlannerDecision: ...

    def plan(
        self,
        history: list[dict[str, Any]],
        screenshot: str,
        elements: list[dict[str, Any]],
        instruction: str,
    ) -> PlannerDecision: ...

    def observe(
        self,
        history: list[dict[str, Any]],
        screenshot: str,
        instruction: str,
        elements: list[dict[str, Any]],
    ) -> PlannerDecision: ...


def strip_fences(text: str) -> str:
    m = _FENCE_RE.search(text or "")
    return m.group(1).strip() if m else (text or "").strip()


def extract_json_object(text: str) -> dict[str, Any] | None:
    """Return the first JSON object found in a model response, or None."""
    body = strip_fences(text)
    try:
        data = json.loads(body)
        return data if isinstance(data, dict) else None
    except (TypeError, ValueError):
        pass

    decoder = json.JSONDecoder()
    for start in (i for i, ch in enumerate(body) if ch == "{"):
        try:
            data, _end = decoder.raw_decode(body, start)
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return bool(value)


def coerce_action(raw: Any) -> PlannedAction | None:
    """Turn one model-proposed action into a validated PlannedAction (None if unusable)."""
    if not isinstance(raw, dict):
        return None
    payload = raw.get("payload")
    if not isinstance(payload, dict):
        payload = {k: v for k, v in raw.items() if k not in {"type", "description", "payload"}}
    try:
        normalized = validate_command({"type": raw.get("type"), "payload": payload})
    except CommandValidationError as exc:
        logger.info("planner_action_dropped reason=%s", exc)
        return None
    return PlannedAction(
        type=normalized["type"],
        payload=normalized["payload"],
        description=str(raw.get("description") or ""),
    )


def parse_decision(text: str | None) -> PlannerDecision:
    data = extract_json_object(text or "")
    if data is None:
        return PlannerDecision.unparseable(text)

    actions = [a for a in (coerce_action(item) for item in (data.get("actions") or [])) if a is not None]
    confidence = data.get("confidence")
    try:
        confidence = float(confidence) if confidence is not None else None
    except (TypeError, ValueError):
        confidence = None

    requires_action = _as_bool(data.get("requiresAction", bool(actions)))
    return PlannerDecision(
        thought=str(data.get("thought") or ""),
        response=str(data.get("response") or ""),
        description=str(data.get("description") or ""),
        requires_action=requires_action and bool(actions),
        task_completed=_as_bool(data.get("taskCompleted", False)),
        actions=actions,
        confidence=confidence,
        raw=text,
    )


def render_elements(elements: list[dict[str, Any]], limit: int = 50) -> str:
    lines: list[str] = []
    for el in elements[:limit]:
        tag = str(el.get("tagName") or "element").lower()
        text = str(el.get("text") or el.get("ariaLabel") or el.get("placeholder") or "").strip()[:80]
        line = f'- {tag} at ({el.get("x")}, {el.get("y")}): "{text}"'
        if el.get("className"):
            line += f" [class: {str(el['className'])[:60]}]"
        if el.get("id"):
            line += f" [id: {el['id']}]"
        lines.append(line)
    return "\n".join(lines) if lines else "(no interactive elements found)"


def render_history(history: list[dict[str, Any]], limit: int = 12) -> str:
    lines = [f"{str(e.get('role') or 'user').upper()}: {e.get('content') or ''}" for e in history[-limit:]]
    return "\n".join(lines) if lines else "(empty)"
