"""FlowForge — declarative multi-agent workflow run engine."""

from flowforge.core.forge import FlowForge
from flowforge.config.loader import ConfigError, DefinitionError, DefinitionLoader
from flowforge.config.schema import WorkflowDefinition
from flowforge.core.errors import (
    AccessDeniedError,
    NotFoundError,
    PreconditionError,
    RunNotFoundError,
    WorkflowNotFoundError,
)
from flowforge.core.invoker import AgentInvoker
from flowforge.core.result import InvocationResult, RenderedInput
from flowforge.core.run import RunStatus, StepStatus, WorkflowRun
from flowforge._version import __version__

__all__ = [
    "FlowForge",
    "WorkflowDefinition",
    "DefinitionLoader",
    "WorkflowRun",
    "RunStatus",
    "StepStatus",
    "AgentInvoker",
    "InvocationResult",
    "RenderedInput",
    "ConfigError",
    "DefinitionError",
    "NotFoundError",
    "WorkflowNotFoundError",
    "RunNotFoundError",
    "PreconditionError",
    "AccessDeniedError",
    "__version__",
]
