"""Deterministic keyword planner used when no model is available or its output is unusable."""

from __future__ import annotations

import re
from typing import Any

from .base import PlannedAction, PlannerDecision

ACTION_KEYWORDS = ("go to", "navigate", "click", "type", "scroll", "open", "visit", "find", "search")
GENERIC_CLICK_SELECTOR = "button, a, [onclick]"

_NAV_RE = re.compile(r"\b(?:go to|navigate to|visit|open)\s+(\S+)", re.IGNORECASE)

DESTINATION_SHORTCUTS: list[tuple[tuple[str, ...], str]] = [
    (("flight", "flights"), "https://www.google.com/flights"),
    (("hotel", "hotels", "booking"), "https://www.booking.com"),
]


def extract_url(instruction: str) -> str | None:
    m = _NAV_RE.search(instruction or "")
    if not m:
        return None
    target = m.group(1).strip().strip("\"'<>()[]").rstrip(".,;:!?")
    if re.match(r"^https?://", target, re.IGNORECASE):
        return target
    if "." in target and re.match(r"^[\w.-]+\.[a-z]{2,}(?:[/:?#]\S*)?$", target, re.IGNORECASE):
        return f"https://{target}"
    return None


def _words(text: str) -> set[str]:
    return set(re.findall(r"[a-z]+", (text or "").lower()))


class HeuristicPlanner:
    """Keyword rules; never raises and never calls out."""

    source = "heuristic"

    def plan_navigation(self, history: list[dict[str, Any]], instruction: str) -> PlannerDecision:  # noqa: ARG002
        url = extract_url(instruction)
        if url is None:
            words = _words(instruction)
            for keywords, destination in DESTINATION_SHORTCUTS:
                if words.intersection(keywords):
                    url = destination
                    break
        if url is None:
            return PlannerDecision(
                thought="No starting page implied by the instruction.",
                response="I'll start from the current page.",
                source=self.source,
            )
        return PlannerDecision(
            thought=f"The task starts at {url}.",
            response=f"Opening {url}.",
            requires_action=True,
            actions=[PlannedAction("navigate", {"url": url}, f"Open {url}")],
            source=self.source,
        )

    def plan(
        self,
        history: list[dict[str, Any]],  # noqa: ARG002
        screenshot: str,  # noqa: ARG002
        elements: list[dict[str, Any]],  # noqa: ARG002
        instruction: str,
    ) -> PlannerDecision:
        lower = (instruction or "").lower()
        requires_action = any(k in lower for k in ACTION_KEYWORDS)
        actions: list[PlannedAction] = []

        url = extract_url(instruction)
        if url is not None:
            actions.append(PlannedAction("navigate", {"url": url}, f"Navigate to {url}"))
        elif "screenshot" in lower:
            actions.append(PlannedAction("screenshot", {}, "Take a screenshot"))
            requires_action = True
        elif "click" in lower:
            actions.append(PlannedAction("click", {"selector": GENERIC_CLICK_SELECTOR}, "Click the first clickable element"))

        requires_action = requires_action and bool(actions)
        return PlannerDecision(
            thought="Planned from instruction keywords.",
            response=(
                "I'll try a simple approach based on your instruction."
                if requires_action
                else "I can see the page, but I'm not sure which action to take for this request."
            ),
            requires_action=requires_action,
            actions=actions,
            confidence=0.3,
            source=self.source,
        )

    def observe(
        self,
        history: list[dict[str, Any]],  # noqa: ARG002
        screenshot: str,  # noqa: ARG002
        instruction: str,  # noqa: ARG002
        elements: list[dict[str, Any]],  # noqa: ARG002
    ) -> PlannerDecision:
        # Never asks for further action.
        return PlannerDecision(
            description="I performed the requested actions but cannot verify the result without page analysis.",
            requires_action=False,
            task_completed=False,
            confidence=0.2,
            source=self.source,
        )
