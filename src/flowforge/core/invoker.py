"""Agent invocation adapter contract."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from flowforge.config.schema import AgentConfig
from flowforge.core.result import InvocationResult, RenderedInput


@runtime_checkable
class AgentInvoker(Protocol):
    """Runs one agent turn and reports its outcome.

    Implementations should return ``InvocationResult(success=False, ...)``
    for failures they understand. Anything they raise is caught by the
    state machine and recorded as a step failure.
    """

    async def invoke(
        self,
        agent: AgentConfig,
        rendered: RenderedInput,
        context: dict,
    ) -> InvocationResult:
        ...
