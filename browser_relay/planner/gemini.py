"""
Gemini-backed planner: screenshot plus page elements in, action plan out.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

from google import genai
from google.genai import types

from ..config import RelayConfig
from ..errors import PlannerError
from . import prompts
from .base import PlannerDecision, parse_decision, render_elements, render_history
from .heuristics import HeuristicPlanner

logger = logging.getLogger("browser_relay.planner.gemini")


def _image_bytes(screenshot: str | None) -> bytes | None:
    if not screenshot:
        return None
    data = screenshot.split(",", 1)[1] if screenshot.startswith("data:") else screenshot
    try:
        return base64.b64decode(data)
    except (ValueError, TypeError):
        return None


class GeminiPlanner:
    """Planner that asks a Gemini vision model; any failure degrades to HeuristicPlanner."""

    def __init__(self, config: RelayConfig | None = None, *, client: Any | None = None) -> None:
        self.config = config or RelayConfig()
        self._client = client
        self.fallback = HeuristicPlanner()

    def _get_client(self) -> Any:
        if self._client is None:
            if not self.config.gemini_api_key:
                raise PlannerError("GEMINI_API_KEY is not set", suggestion="Export GEMINI_API_KEY to enable the planner")
            self._client = genai.Client(
                api_key=self.config.gemini_api_key,
                http_options=types.HttpOptions(timeout=int(self.config.planner_timeout * 1000)),
            )
        return self._client

    def _generate(self, prompt: str, screenshot: str | None = None) -> str:
        parts: list[types.Part] = []
        image = _image_bytes(screenshot)
        if image:
            parts.append(types.Part.from_bytes(data=image, mime_type="image/png"))
        parts.append(types.Part.from_text(text=prompt))

        response = self._get_client().models.generate_content(
            model=self.config.planner_model,
            contents=[types.Content(role="user", parts=parts)],
            config=types.GenerateContentConfig(response_mime_type="application/json", temperature=0.2),
        )
        return response.text or ""

    def _decide(self, stage: str, prompt: str, screenshot: str | None) -> PlannerDecision | None:
        try:
            text = self._generate(prompt, screenshot)
        except Exception as exc:  # noqa: BLE001
            logger.warning("planner_call_failed stage=%s error=%s", stage, exc)
            return None
        decision = parse_decision(text)
        if not decision.parsed:
            logger.warning("planner_unparseable stage=%s chars=%d", stage, len(text))
            return None
        decision.source = "gemini"
        return decision

    def plan_navigation(self, history: list[dict[str, Any]], instruction: str) -> PlannerDecision:
        prompt = prompts.NAVIGATION_PROMPT.format(history=render_history(history), instruction=instruction)
        decision = self._decide("navigation", prompt, None)
        return decision if decision is not None else self.fallback.plan_navigation(history, instruction)

    def plan(
        self,
        history: list[dict[str, Any]],
        screenshot: str,
        elements: list[dict[str, Any]],
        instruction: str,
    ) -> PlannerDecision:
        prompt = prompts.PLAN_PROMPT.format(
            history=render_history(history),
            instruction=instruction,
            elements=render_elements(elements),
            actions=prompts.ACTION_CATALOGUE,
        )
        decision = self._decide("plan", prompt, screenshot)
        return decision if decision is not None else self.fallback.plan(history, screenshot, elements, instruction)

    def observe(
        self,
        history: list[dict[str, Any]],
        screenshot: str,
        instruction: str,
        elements: list[dict[str, Any]],
    ) -> PlannerDecision:
        prompt = prompts.OBSERVE_PROMPT.format(
            history=render_history(history),
            instruction=instruction,
            elements=render_elements(elements),
            actions=prompts.ACTION_CATALOGUE,
        )
        decision = self._decide("observe", prompt, screenshot)
        return decision if decision is not None else self.fallback.observe(history, screenshot, instruction, elements)
