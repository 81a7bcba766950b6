"""Persisted run state: one WorkflowRun per execution of a definition."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge.config.schema import WorkflowDefinition


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    BLOCKED = "blocked"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


class _Record(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


class StepRun(_Record):
    step_id: str
    type: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    retries: int = 0
    iterations: int = 0
    output: Any = None
    error: Optional[str] = None
    artifacts: dict = Field(default_factory=dict)
    usage: Optional[dict] = None  # from the latest invocation
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class GateInfo(_Record):
    step_id: str
    message: str = ""
    approvers: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(_Record):
    id: str = Field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    workflow_id: str
    workflow_version: int
    task_id: Optional[str] = None
    status: RunStatus = RunStatus.PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    steps: list[StepRun] = Field(default_factory=list)
    current_step: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    failed_step: Optional[str] = None
    gate: Optional[GateInfo] = None
    verifying: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    revision: int = 0
    # Snapshot taken at start; later edits to the definition never reach the run.
    definition: WorkflowDefinition

    @classmethod
    def create(
        cls,
        definition: WorkflowDefinition,
        task_id: str | None = None,
        context: dict | None = None,
    ) -> "WorkflowRun":
        snapshot = definition.model_copy(deep=True)
        return cls(
            workflow_id=snapshot.id,
            workflow_version=snapshot.version,
            task_id=task_id,
            context=dict(context or {}),
            steps=[StepRun(step_id=s.id, type=s.type) for s in snapshot.steps],
            definition=snapshot,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def step(self, step_id: str) -> StepRun:
        for record in self.steps:
            if record.step_id == step_id:
                return record
        raise KeyError(step_id)

    @property
    def duration(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_dict(cls, data: dict) -> "WorkflowRun":
        return cls.model_validate(data)
