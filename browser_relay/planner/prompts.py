from __future__ import annotations

from ..commands import COMMAND_TYPES

ACTION_CATALOGUE = "\n".join(
    f"- {name}: " + (", ".join(spec.required) if spec.required else "(no required fields)")
    for name, spec in COMMAND_TYPES.items()
)

DECISION_SCHEMA = """{{
  "thought": "short reasoning about the current page",
  "response": "what you tell the user",
  "requiresAction": true,
  "taskCompleted": false,
  "confidence": 0.0,
  "actions": [
    {{"type": "click_coordinate", "description": "why", "payload": {{"x": 100, "y": 200}}}}
  ]
}}"""

NAVIGATION_PROMPT = """You control a web browser for a user.

CONVERSATION:
{history}

USER INSTRUCTION: {instruction}

Decide whether the task should start by opening a specific website. If it should, return one
"navigate" action with the full URL. If the current page is fine, return no actions.

Return JSON only, with this exact structure:
""" + DECISION_SCHEMA

PLAN_PROMPT = """You control a web browser for a user. The attached image is a screenshot of the
current page.

CONVERSATION:
{history}

USER INSTRUCTION: {instruction}

INTERACTIVE ELEMENTS (centre coordinates in CSS pixels):
{elements}

AVAILABLE ACTIONS (type: required payload fields):
{actions}

Guidelines:
- Prefer click_coordinate with the coordinates listed above over CSS selectors.
- To fill a field, click it first, then use type_text or keyboard_input (e.g. "query{{Enter}}").
- Return at most 5 actions; they run in order.
- Set taskCompleted to true only when the screenshot shows the task is done.

Return JSON only, with this exact structure:
""" + DECISION_SCHEMA

OBSERVE_PROMPT = """You control a web browser for a user. The attached image is a screenshot taken
after your last actions.

CONVERSATION:
{history}

ORIGINAL INSTRUCTION: {instruction}

INTERACTIVE ELEMENTS (centre coordinates in CSS pixels):
{elements}

AVAILABLE ACTIONS (type: required payload fields):
{actions}

Describe what changed in "description". If the task is finished set taskCompleted to true and
requiresAction to false. Otherwise list the next actions.

Return JSON only, with this exact structure:
""" + DECISION_SCHEMA
