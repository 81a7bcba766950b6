"""Tests for the dry-run invocation adapter."""

from __future__ import annotations

import pytest

from flowforge.config.schema import AgentConfig
from flowforge.control.dry_run import DryRunInvoker
from flowforge.core.machine import RunStateMachine
from flowforge.core.result import RenderedInput
from flowforge.core.run import RunStatus, WorkflowRun
from flowforge.storage.memory import InMemoryWorkflowStore

from helpers import agent_step, make_definition

AGENT = AgentConfig(id="coder")


class TestDryRunInvoker:
    @pytest.mark.asyncio
    async def test_text_placeholder(self):
        invoker = DryRunInvoker()
        result = await invoker.invoke(AGENT, RenderedInput("code", "coder", "Write the parser"), {})

        assert result.success is True
        assert result.output == "[DRY RUN] coder would respond to: Write the parser"
        assert result.model_used == "dry-run"
        assert [c.step_id for c in invoker.calls] == ["code"]

    @pytest.mark.asyncio
    async def test_json_placeholder(self):
        result = await DryRunInvoker().invoke(AGENT, RenderedInput("plan", "coder", "Plan", "json"), {})
        assert result.output == {"dry_run": True, "agent": "coder"}

    @pytest.mark.asyncio
    async def test_configured_output(self):
        invoker = DryRunInvoker(outputs={"review": {"approved": True}})
        result = await invoker.invoke(AGENT, RenderedInput("review", "coder", "Review"), {})
        assert result.output == {"approved": True}

    @pytest.mark.asyncio
    async def test_drives_a_whole_run(self):
        definition = make_definition(
            [
                {"id": "implement", "type": "loop", "agent": "x", "task": "Build it",
                 "loop": {"verify_step": "verify"}},
                {"id": "verify", "type": "check", "condition": "{{tests_passed}} == true"},
                agent_step("summarize", task="Summarize {{implement}}"),
            ]
        )
        invoker = DryRunInvoker(outputs={"implement": {"tests_passed": True}})
        machine = RunStateMachine(invoker=invoker, store=InMemoryWorkflowStore())
        run = WorkflowRun.create(definition)

        for _ in range(10):
            await machine.advance(run)

        assert run.status == RunStatus.COMPLETED
        assert [c.step_id for c in invoker.calls] == ["implement", "summarize"]
        assert run.context["summarize"].startswith("[DRY RUN] x would respond to: Summarize")
