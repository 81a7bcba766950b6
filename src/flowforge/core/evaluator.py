"""Step readiness and input rendering."""

from __future__ import annotations

import json
import re
from datetime import datetime
from typing import Any

from flowforge.config.schema import AgentStep, CheckStep, GateStep, LoopStep
from flowforge.core.errors import RenderError
from flowforge.core.result import RenderedInput
from flowforge.core.run import StepStatus, WorkflowRun, utcnow

_PLACEHOLDER = re.compile(r"\{\{([^}]+)\}\}")
_MISSING = object()


class StepEvaluator:
    """Decides whether a step may run and renders its templated input.

    Every method is free of side effects, so a retried step can simply be
    rendered again from the (possibly updated) run context.
    """

    def is_ready(self, step: Any, run: WorkflowRun, now: datetime | None = None) -> bool:
        if run.current_step != step.id:
            return False

        record = run.step(step.id)
        # RUNNING here means the previous dispatch never reported back
        if record.status not in (StepStatus.PENDING, StepStatus.RUNNING):
            return False

        if run.next_attempt_at is not None and (now or utcnow()) < run.next_attempt_at:
            return False

        dependency = self.dependency_of(step, run)
        if dependency is None:
            return True
        return run.step(dependency).status.is_terminal

    def dependency_of(self, step: Any, run: WorkflowRun) -> str | None:
        """The step whose terminal transition must precede ``step``."""
        if run.verifying is not None:
            loop = run.definition.get_step(run.verifying)
            if isinstance(loop, LoopStep) and loop.loop.verify_step == step.id:
                return loop.id
        return run.definition.previous_step_id(step.id)

    def render(self, step: Any, context: dict) -> RenderedInput:
        if isinstance(step, (AgentStep, LoopStep)):
            return RenderedInput(
                step_id=step.id,
                agent_id=step.agent,
                prompt=self.resolve_template(step.task, context, step.id),
                output_format=step.output_format,
            )
        if isinstance(step, CheckStep):
            return RenderedInput(
                step_id=step.id,
                agent_id="",
                prompt=self.resolve_template(step.condition, context, step.id),
            )
        if isinstance(step, GateStep):
            message = step.gate.message
            return RenderedInput(
                step_id=step.id,
                agent_id="",
                prompt=self.resolve_template(message, context, step.id) if message else "",
            )
        raise TypeError(f"Unsupported step type: {type(step).__name__}")

    def resolve_template(self, template: str, context: dict, step_id: str = "") -> str:
        missing: list[str] = []

        def _replacer(match: re.Match) -> str:
            path = match.group(1).strip()
            value = lookup(context, path)
            if value is _MISSING:
                missing.append(path)
                return match.group(0)
            if isinstance(value, (dict, list)):
                return json.dumps(value, default=str)
            if isinstance(value, bool):
                return "true" if value else "false"
            return str(value)

        rendered = _PLACEHOLDER.sub(_replacer, template)
        if missing:
            raise RenderError(step_id, missing)
        return rendered

    def evaluate_condition(self, condition: str, context: dict, step_id: str = "") -> bool:
        """Evaluate a simple condition (==, !=, >, <, contains, empty, etc.)."""
        return evaluate_condition(self.resolve_template(condition, context, step_id))


def lookup(context: dict, path: str) -> Any:
    current: Any = context
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def evaluate_condition(condition: str) -> bool:
    condition = condition.strip()

    if condition.endswith("not empty"):
        return bool(condition[: -len("not empty")].strip().strip("'\""))
    if condition.endswith("empty"):
        return not condition[: -len("empty")].strip().strip("'\"")

    for op in ["!=", ">=", "<=", "==", ">", "<"]:
        if op in condition:
            left, right = (p.strip().strip("'\"") for p in condition.split(op, 1))

            try:
                left_num = float(left)
                right_num = float(right)
            except ValueError:
                pass
            else:
                return _compare(op, left_num, right_num)

            # case-insensitive so True/true/TRUE compare equal
            if op in ("==", "!="):
                return _compare(op, left.lower(), right.lower())
            return _compare(op, left, right)

    if " contains " in condition:
        haystack, needle = condition.split(" contains ", 1)
        return needle.strip().strip("'\"") in haystack.strip().strip("'\"")

    return condition.lower() not in ("", "false", "0", "no", "none", "null")


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if op == ">":
        return left > right
    if op == "<":
        return left < right
    if op == ">=":
        return left >= right
    return left <= right
