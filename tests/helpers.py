"""Builders and fakes shared by the test modules."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

from flowforge.config.schema import WorkflowDefinition
from flowforge.core.result import InvocationResult


def ok(output="done") -> InvocationResult:
    return InvocationResult(success=True, output=output)


def fail(error="boom") -> InvocationResult:
    return InvocationResult(success=False, error=error)


def make_invoker(script: dict | None = None) -> MagicMock:
    """An invoker whose ``invoke`` replays scripted results per step id.

    Each step id maps to a list of results; the last entry repeats once the
    list is exhausted. An entry may be an ``InvocationResult``, an exception
    to raise, or a callable ``(agent, rendered, context) -> InvocationResult``.
    Steps without a script succeed with ``"<step> done"``.
    """
    queues = {step_id: list(results) for step_id, results in (script or {}).items()}

    async def _invoke(agent, rendered, context):
        queue = queues.get(rendered.step_id)
        if not queue:
            return ok(f"{rendered.step_id} done")
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(agent, rendered, context)
        return item

    invoker = MagicMock()
    invoker.invoke = AsyncMock(side_effect=_invoke)
    return invoker


def invoked_steps(invoker: MagicMock) -> list[str]:
    return [c.args[1].step_id for c in invoker.invoke.call_args_list]


def make_definition(steps: list[dict], agents=("x",), workflow_id="wf", version=1, **extra) -> WorkflowDefinition:
    return WorkflowDefinition.model_validate(
        {
            "id": workflow_id,
            "name": f"{workflow_id} workflow",
            "version": version,
            "agents": [{"id": a, "role": f"{a} role"} for a in agents],
            "steps": steps,
            **extra,
        }
    )


def agent_step(step_id: str, agent: str = "x", task: str | None = None, **extra) -> dict:
    return {"id": step_id, "type": "agent", "agent": agent, "task": task or f"do {step_id}", **extra}


class FakeClock:
    """Manually advanced UTC clock; ``sleep`` advances it instead of waiting."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
        self.sleeps: list[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)


