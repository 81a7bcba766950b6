"""Shared fixtures for FlowForge tests."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest

from flowforge.core.forge import FlowForge
from flowforge.core.machine import RunStateMachine
from flowforge.llm.provider import LLMResponse
from flowforge.llm.router import LLMRouter
from flowforge.observe.events import EventBus
from flowforge.storage.memory import InMemoryWorkflowStore

from helpers import FakeClock, agent_step, make_definition, make_invoker


@pytest.fixture
def store():
    return InMemoryWorkflowStore()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def two_step_definition():
    return make_definition(
        [agent_step("plan", agent="planner"), agent_step("code", agent="coder")],
        agents=("planner", "coder"),
        workflow_id="feature",
    )


@pytest.fixture
def make_machine(store, event_bus, clock):
    def _make(invoker) -> RunStateMachine:
        return RunStateMachine(invoker=invoker, store=store, event_bus=event_bus, clock=clock)
    return _make


@pytest.fixture
def make_forge():
    def _make(invoker=None) -> FlowForge:
        return FlowForge(store=InMemoryWorkflowStore(), invoker=invoker or make_invoker())
    return _make


@pytest.fixture
def mock_llm_router():
    """A mock LLM router that returns canned responses."""
    router = MagicMock(spec=LLMRouter)
    router.default_model = "openai/gpt-4o-mini"

    async def mock_complete(**kwargs):
        return LLMResponse(
            content="This is a test response.",
            model_used="openai/gpt-4o-mini",
            input_tokens=50,
            output_tokens=20,
            cost=0.001,
            latency_ms=100,
        )

    router.complete = AsyncMock(side_effect=mock_complete)
    return router
