"""Pydantic models for workflow definitions and service settings."""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    field_validator,
    model_validator,
)

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def is_safe_id(value: str) -> bool:
    """True when ``value`` can be used as a file or key name as-is."""
    return bool(_SAFE_ID.fullmatch(value)) and ".." not in value


class AgentConfig(BaseModel):
    id: str
    role: str = ""
    goal: str = ""
    backstory: str = ""
    instructions: str = ""
    llm: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    fallback: list[str] = Field(default_factory=list)

    @field_validator("llm")
    @classmethod
    def validate_llm(cls, v: str | None) -> str | None:
        if v is not None and "/" not in v:
            raise ValueError(f"agent llm must be in 'provider/model' format, got '{v}'")
        return v

    @field_validator("temperature")
    @classmethod
    def validate_temperature(cls, v: float | None) -> float | None:
        if v is not None and not 0.0 <= v <= 2.0:
            raise ValueError(f"temperature must be between 0.0 and 2.0, got {v}")
        return v


class BackoffConfig(BaseModel):
    """Exponential backoff between retries, in seconds."""

    model_config = ConfigDict(extra="forbid")

    delay: float = Field(default=0.0, ge=0.0)
    factor: float = Field(default=2.0, ge=1.0)
    max_delay: Optional[float] = Field(default=None, ge=0.0)

    @model_validator(mode="before")
    @classmethod
    def coerce_number(cls, data: Any) -> Any:
        # `backoff: 5` is shorthand for `backoff: {delay: 5}`
        if isinstance(data, (int, float)) and not isinstance(data, bool):
            return {"delay": data}
        return data

    def delay_for(self, retry_number: int) -> float:
        delay = self.delay * (self.factor ** max(0, retry_number - 1))
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay


class OnFailConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retry_step: Optional[str] = None
    max_retries: int = Field(default=0, ge=0)
    backoff: Optional[BackoffConfig] = None


class LoopConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    verify_step: Optional[str] = None
    max_iterations: int = Field(default=3, ge=1)


class GateConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    message: str = ""
    approvers: list[str] = Field(default_factory=list)
    condition: Optional[str] = None  # auto-approve when true


class _StepBase(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    name: str = ""
    description: str = ""

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("step id must not be empty")
        return v


class AgentStep(_StepBase):
    type: Literal["agent"] = "agent"
    agent: str
    task: str
    output_format: Literal["text", "markdown", "json"] = "text"
    save_as: Optional[str] = None
    on_fail: Optional[OnFailConfig] = None


class LoopStep(_StepBase):
    type: Literal["loop"] = "loop"
    agent: str
    task: str
    output_format: Literal["text", "markdown", "json"] = "text"
    save_as: Optional[str] = None
    loop: LoopConfig = Field(default_factory=LoopConfig)
    on_fail: Optional[OnFailConfig] = None


class GateStep(_StepBase):
    type: Literal["gate"] = "gate"
    gate: GateConfig = Field(default_factory=GateConfig)


class CheckStep(_StepBase):
    type: Literal["check"] = "check"
    condition: str
    on_fail: Optional[OnFailConfig] = None


Step = Annotated[
    Union[AgentStep, LoopStep, GateStep, CheckStep],
    Field(discriminator="type"),
]


class WorkflowDefinition(BaseModel):
    """A declarative, versioned workflow.

    Cross references (``agent``, ``on_fail.retry_step``, ``loop.verify_step``)
    are resolved once after parsing; a definition that constructs without
    error is safe to execute.
    """

    id: str
    name: str
    version: int = Field(ge=0)
    description: str = ""
    agents: list[AgentConfig] = Field(default_factory=list)
    steps: list[Step] = Field(default_factory=list)

    _index: Optional[dict[str, int]] = PrivateAttr(default=None)

    @field_validator("id", "name")
    @classmethod
    def validate_required(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("workflow must have id, name, and version")
        return v

    @field_validator("id")
    @classmethod
    def validate_safe_id(cls, v: str) -> str:
        if not is_safe_id(v):
            raise ValueError(
                f"workflow id must start with a letter or digit and contain only "
                f"letters, digits, '_', '-' or '.' (no '..'), got '{v}'"
            )
        return v

    @model_validator(mode="after")
    def validate_references(self) -> "WorkflowDefinition":
        if not self.agents:
            raise ValueError("workflow must define at least one agent")
        if not self.steps:
            raise ValueError("workflow must define at least one step")

        agent_ids = [a.id for a in self.agents]
        duplicates = sorted({a for a in agent_ids if agent_ids.count(a) > 1})
        if duplicates:
            raise ValueError(f"duplicate agent ids: {duplicates}")

        step_ids = [s.id for s in self.steps]
        duplicates = sorted({s for s in step_ids if step_ids.count(s) > 1})
        if duplicates:
            raise ValueError(f"duplicate step ids: {duplicates}")

        index = {step_id: i for i, step_id in enumerate(step_ids)}
        known_agents = set(agent_ids)

        for i, step in enumerate(self.steps):
            if isinstance(step, (AgentStep, LoopStep)) and step.agent not in known_agents:
                raise ValueError(
                    f"Step '{step.id}' references unknown agent '{step.agent}'. "
                    f"Available: {sorted(known_agents)}"
                )

            on_fail = getattr(step, "on_fail", None)
            if on_fail is not None and on_fail.retry_step is not None:
                target = index.get(on_fail.retry_step)
                if target is None:
                    raise ValueError(
                        f"Step '{step.id}' retry_step references unknown step "
                        f"'{on_fail.retry_step}'"
                    )
                if target > i:
                    raise ValueError(
                        f"Step '{step.id}' retry_step '{on_fail.retry_step}' must be "
                        f"the step itself or an earlier step"
                    )

            if isinstance(step, LoopStep) and step.loop.verify_step is not None:
                verify = step.loop.verify_step
                if verify not in index:
                    raise ValueError(
                        f"Step '{step.id}' verify_step references unknown step '{verify}'"
                    )
                if verify == step.id:
                    raise ValueError(f"Step '{step.id}' cannot verify itself")
                if isinstance(self.steps[index[verify]], LoopStep):
                    raise ValueError(
                        f"Step '{step.id}' verify_step '{verify}' must not be a loop step"
                    )

        return self

    # ------------------------------------------------------------------
    # Lookup table built lazily from the validated step list.

    def index_of(self, step_id: str) -> int:
        if self._index is None:
            self._index = {s.id: i for i, s in enumerate(self.steps)}
        return self._index[step_id]

    def get_step(self, step_id: str) -> AgentStep | LoopStep | GateStep | CheckStep:
        return self.steps[self.index_of(step_id)]

    def get_agent(self, agent_id: str) -> AgentConfig:
        for agent in self.agents:
            if agent.id == agent_id:
                return agent
        raise KeyError(agent_id)

    @property
    def verifier_ids(self) -> set[str]:
        """Steps executed only on behalf of a loop's verification."""
        return {
            s.loop.verify_step
            for s in self.steps
            if isinstance(s, LoopStep) and s.loop.verify_step is not None
        }

    def first_step_id(self) -> str | None:
        return self.next_step_id(-1)

    def next_step_id(self, after_index: int) -> str | None:
        """Next step in sequential order, skipping verifiers."""
        verifiers = self.verifier_ids
        for step in self.steps[after_index + 1:]:
            if step.id not in verifiers:
                return step.id
        return None

    def previous_step_id(self, step_id: str) -> str | None:
        verifiers = self.verifier_ids
        for step in reversed(self.steps[: self.index_of(step_id)]):
            if step.id not in verifiers:
                return step.id
        return None


# ----------------------------------------------------------------------
# Service settings


class StorageConfig(BaseModel):
    backend: str = "files"
    path: str = ".flowforge"

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        allowed = ("files", "sqlite", "memory")
        if v not in allowed:
            raise ValueError(f"storage.backend must be one of {allowed}, got '{v}'")
        return v


class ObserveConfig(BaseModel):
    log_level: str = "info"
    log_format: str = "pretty"

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ("debug", "info", "warning", "error")
        if v not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got '{v}'")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ("pretty", "json")
        if v not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got '{v}'")
        return v


class RunnerConfig(BaseModel):
    max_advances: int = Field(default=1000, ge=1)
    dry_run: bool = False


class LLMConfig(BaseModel):
    default_model: str = "openai/gpt-4o-mini"
    cost_tracking: bool = True

    @field_validator("default_model")
    @classmethod
    def validate_model(cls, v: str) -> str:
        if "/" not in v:
            raise ValueError(
                f"llm must be in 'provider/model' format (e.g., 'openai/gpt-4o-mini'), got '{v}'"
            )
        return v


class FlowForgeSettings(BaseModel):
    storage: StorageConfig = Field(default_factory=StorageConfig)
    observe: ObserveConfig = Field(default_factory=ObserveConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
