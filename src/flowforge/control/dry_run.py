"""Dry-run mode: simulate agent invocations without calling a model."""

from __future__ import annotations

import logging
from typing import Any

from flowforge.config.schema import AgentConfig
from flowforge.core.result import InvocationResult, RenderedInput

_log = logging.getLogger(__name__)


class DryRunInvoker:
    """Agent invocation adapter that answers every step with canned output.

    ``outputs`` maps step ids to the output to return; other steps get a
    placeholder (a mapping for ``json`` steps, a string otherwise).
    """

    def __init__(self, outputs: dict[str, Any] | None = None):
        self.outputs = outputs or {}
        self.calls: list[RenderedInput] = []

    async def invoke(self, agent: AgentConfig, rendered: RenderedInput, context: dict) -> InvocationResult:
        self.calls.append(rendered)
        _log.info("[dry run] %s would run step %s", agent.id, rendered.step_id)

        if rendered.step_id in self.outputs:
            output = self.outputs[rendered.step_id]
        elif rendered.output_format == "json":
            output = {"dry_run": True, "agent": agent.id}
        else:
            output = f"[DRY RUN] {agent.id} would respond to: {rendered.prompt[:200]}"

        return InvocationResult(success=True, output=output, model_used="dry-run")
