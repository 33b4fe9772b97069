"""Planners turn an instruction plus page state into browser actions."""

from __future__ import annotations

from .base import (
    PlannedAction,
    Planner,
    PlannerDecision,
    coerce_action,
    extract_json_object,
    parse_decision,
    render_elements,
    render_history,
    strip_fences,
)
from .heuristics import HeuristicPlanner, extract_url

__all__ = [
    "HeuristicPlanner",
    "PlannedAction",
    "Planner",
    "PlannerDecision",
    "coerce_action",
    "extract_json_object",
    "extract_url",
    "parse_decision",
    "render_elements",
    "render_history",
    "strip_fences",
]
