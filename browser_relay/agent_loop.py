from __future__ import annotations

import base64
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import RelayConfig
from .dispatcher import CommandDispatcher
from .errors import ExecutionError, RelayError, is_selector_miss
from .planner.base import PlannedAction, Planner, PlannerDecision
from .session_registry import SessionRegistry

logger = logging.getLogger("browser_relay.agent")

PLANNING = "PLANNING"
ACTING = "ACTING"
OBSERVING = "OBSERVING"
DONE = "DONE"
FAILED = "FAILED"

SELECTOR_RECOVERY_NOTE = "I encountered an issue finding an element on the page. Let me try a different approach..."


@dataclass
class TaskResult:
    task_id: str
    session_id: str
    instruction: str
    state: str = PLANNING
    iterations: int = 0
    steps: list[list[dict[str, Any]]] = field(default_factory=list)
    response: str = ""
    success: bool = False
    completed: bool = False
    error: str | None = None
    before_screenshot: str | None = None
    after_screenshot: str | None = None
    screenshot_paths: dict[str, str] = field(default_factory=dict)
    history: list[dict[str, Any]] = field(default_factory=list)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))

    def to_dict(self) -> dict[str, Any]:
        return {
            "taskId": self.task_id,
            "sessionId": self.session_id,
            "taskDescription": self.instruction,
            "state": self.state,
            "iterations": self.iterations,
            "steps": self.steps,
            "response": self.response,
            "success": self.success,
            "taskCompleted": self.completed,
            **({"error": self.error} if self.error else {}),
            "beforeScreenshot": self.before_screenshot,
            "afterScreenshot": self.after_screenshot,
            **({"screenshotPaths": self.screenshot_paths} if self.screenshot_paths else {}),
            "history": self.history,
            "timestamp": self.timestamp,
        }


class _Unrecoverable(Exception):
    pass


class TaskAgent:
    """Plan / act / observe loop that drives one session towards a natural-language goal.

    Commands go through the dispatcher, so the loop runs unchanged on either execution path.
    The iteration cap bounds a task regardless of command timeouts.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        dispatcher: CommandDispatcher,
        planner: Planner,
        config: RelayConfig | None = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.dispatcher = dispatcher
        self.planner = planner
        self.config = config or registry.config
        self._sleep = sleep

    def run(self, session_id: str, instruction: str, *, max_iterations: int | None = None) -> TaskResult:
        session = self.registry.get(session_id)
        cap = max(1, int(max_iterations or self.config.max_iterations))
        task = TaskResult(task_id=str(uuid.uuid4()), session_id=session.id, instruction=instruction)
        logger.info("task_start id=%s session=%s cap=%d", task.task_id, session.id, cap)

        self.registry.append_history(session.id, {"role": "user", "content": instruction})
        try:
            self._run(task, cap)
        except (RelayError, _Unrecoverable) as exc:
            self._fail(task, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.exception("task_crashed id=%s", task.task_id)
            self._fail(task, str(exc))

        if task.after_screenshot is None and task.state == DONE:
            task.after_screenshot = task.before_screenshot
        self._persist_screenshots(task)
        task.history = self.registry.history(session.id) if self.registry.exists(session.id) else []
        logger.info(
            "task_end id=%s state=%s iterations=%d completed=%s", task.task_id, task.state, task.iterations, task.completed
        )
        return task

    # ─────────────────────────────────────────────────────────────────────────
    # State machine
    # ─────────────────────────────────────────────────────────────────────────

    def _run(self, task: TaskResult, cap: int) -> None:
        sid = task.session_id

        task.state = PLANNING
        nav = self.planner.plan_navigation(self.registry.history(sid), task.instruction)
        first = nav.actions[0] if nav.actions else None
        if first is not None and first.type == "navigate":
            outcome = self._execute(sid, first)
            if not outcome["success"]:
                raise _Unrecoverable(f"Initial navigation failed: {outcome.get('error')}")
            self._sleep(self.config.settle_delay)

        task.before_screenshot = self._screenshot(sid)
        decision = self.planner.plan(
            self.registry.history(sid), task.before_screenshot, self._elements(sid), task.instruction
        )
        self._record(sid, decision)

        while True:
            if decision.task_completed or not decision.requires_action or not decision.actions:
                task.state = DONE
                task.success = True
                task.completed = bool(decision.task_completed)
                task.response = decision.narrative or "Done."
                if not decision.narrative:
                    self.registry.append_history(sid, {"role": "assistant", "content": task.response})
                return

            if task.iterations >= cap:
                task.state = DONE
                task.success = False
                task.response = (
                    f"I reached the maximum number of attempts ({cap}) while working on this task. "
                    "The page is left in its current state."
                )
                self.registry.append_history(sid, {"role": "assistant", "content": task.response})
                return

            task.iterations += 1
            task.state = ACTING
            batch, failure = self._act(sid, decision.actions)
            task.steps.append(batch)
            if failure is not None:
                if not is_selector_miss(failure):
                    raise _Unrecoverable(failure)
                logger.info("task_selector_miss id=%s error=%s", task.task_id, failure)
                self.registry.append_history(sid, {"role": "assistant", "content": SELECTOR_RECOVERY_NOTE})

            task.state = OBSERVING
            task.after_screenshot = self._screenshot(sid)
            decision = self.planner.observe(
                self.registry.history(sid), task.after_screenshot, task.instruction, self._elements(sid)
            )
            self._record(sid, decision)
            task.state = PLANNING

    def _fail(self, task: TaskResult, message: str) -> None:
        task.state = FAILED
        task.success = False
        task.error = message
        task.response = f"I encountered an error while trying to complete the task: {message}"
        if self.registry.exists(task.session_id):
            self.registry.append_history(task.session_id, {"role": "assistant", "content": task.response})
        logger.warning("task_failed id=%s error=%s", task.task_id, message)

    def _record(self, session_id: str, decision: PlannerDecision) -> None:
        text = decision.narrative
        if text:
            self.registry.append_history(session_id, {"role": "assistant", "content": text})

    # ─────────────────────────────────────────────────────────────────────────
    # Commands
    # ─────────────────────────────────────────────────────────────────────────

    def _execute(self, session_id: str, action: PlannedAction) -> dict[str, Any]:
        record: dict[str, Any] = {"action": action.to_dict()}
        try:
            out = self.dispatcher.execute(session_id, action.to_command())
            record.update({"success": True, "result": out.get("result"), "commandId": out.get("commandId")})
        except RelayError as exc:
            record.update({"success": False, "error": str(exc), "kind": exc.kind})
        return record

    def _act(self, session_id: str, actions: list[PlannedAction]) -> tuple[list[dict[str, Any]], str | None]:
        batch: list[dict[str, Any]] = []
        for i, action in enumerate(actions):
            if i:
                self._sleep(self.config.action_delay)
            record = self._execute(session_id, action)
            batch.append(record)
            if not record["success"]:
                return batch, str(record.get("error") or "action failed")
        return batch, None

    def _screenshot(self, session_id: str) -> str:
        out = self.dispatcher.execute(session_id, {"type": "screenshot", "payload": {}})
        result = out.get("result")
        shot = result.get("screenshot") if isinstance(result, dict) else result
        if not isinstance(shot, str) or not shot:
            raise ExecutionError("Screenshot returned no image data")
        return shot

    def _elements(self, session_id: str) -> list[dict[str, Any]]:
        try:
            out = self.dispatcher.execute(session_id, {"type": "get_page_elements", "payload": {}})
        except RelayError as exc:
            logger.info("page_elements_unavailable session=%s error=%s", session_id, exc)
            return []
        result = out.get("result")
        elements = result.get("elements") if isinstance(result, dict) else result
        return [e for e in elements if isinstance(e, dict)] if isinstance(elements, list) else []

    def _persist_screenshots(self, task: TaskResult) -> None:
        root = self.config.screenshot_dir
        if not root:
            return
        for label, shot in (("before", task.before_screenshot), ("after", task.after_screenshot)):
            if not shot:
                continue
            data = shot.split(",", 1)[1] if shot.startswith("data:") else shot
            path = Path(root) / f"{task.task_id}-{label}.png"
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(base64.b64decode(data))
            except (OSError, ValueError) as exc:
                logger.warning("screenshot_persist_failed task=%s error=%s", task.task_id, exc)
                continue
            task.screenshot_paths[label] = str(path)
