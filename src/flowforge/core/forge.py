"""Composition root wiring storage, services, the state machine and the agent adapter."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Union

from flowforge.config.loader import ConfigLoader
from flowforge.config.schema import FlowForgeSettings, StorageConfig
from flowforge.control.acl import AccessPolicy
from flowforge.control.dry_run import DryRunInvoker
from flowforge.core.agent import LLMAgentInvoker
from flowforge.core.evaluator import StepEvaluator
from flowforge.core.invoker import AgentInvoker
from flowforge.core.machine import RunStateMachine
from flowforge.llm.router import LLMRouter
from flowforge.observe.events import EventBus
from flowforge.services.definitions import DefinitionService
from flowforge.services.runs import RunService
from flowforge.storage.base import WorkflowStore
from flowforge.storage.files import FileWorkflowStore
from flowforge.storage.memory import InMemoryWorkflowStore
from flowforge.storage.sqlite import SQLiteWorkflowStore

_log = logging.getLogger(__name__)


class FlowForge:
    """
    Usage::

        forge = FlowForge.from_config("flowforge.yaml")
        await forge.definitions.save(DefinitionLoader.load("feature-dev.yml"))
        run = await forge.runs.start_run("feature-dev", task_id="TASK-1")
    """

    def __init__(
        self,
        store: WorkflowStore,
        settings: FlowForgeSettings | None = None,
        invoker: AgentInvoker | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or FlowForgeSettings()
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.llm_router = LLMRouter(
            default_model=self.settings.llm.default_model,
            cost_tracking=self.settings.llm.cost_tracking,
        )
        if invoker is None:
            if self.settings.runner.dry_run:
                invoker = DryRunInvoker()
            else:
                invoker = LLMAgentInvoker(self.llm_router)
        self.invoker = invoker

        self.machine = RunStateMachine(
            invoker=self.invoker,
            store=self.store,
            evaluator=StepEvaluator(),
            event_bus=self.event_bus,
            clock=clock,
        )
        self.definitions = DefinitionService(self.store)
        self.access = AccessPolicy(self.definitions)
        self.runs = RunService(
            store=self.store,
            definitions=self.definitions,
            machine=self.machine,
            access=self.access,
            max_advances=self.settings.runner.max_advances,
            clock=clock,
        )

    @classmethod
    def from_settings(
        cls,
        settings: FlowForgeSettings,
        invoker: AgentInvoker | None = None,
        dry_run: bool | None = None,
    ) -> "FlowForge":
        if dry_run is not None:
            settings = settings.model_copy(
                update={"runner": settings.runner.model_copy(update={"dry_run": dry_run})}
            )
        store = create_store(settings.storage)
        _log.debug("Using %s storage at %s", settings.storage.backend, settings.storage.path)
        return cls(store=store, settings=settings, invoker=invoker)

    @classmethod
    def from_config(cls, path: Union[str, Path, None] = None, **kwargs) -> "FlowForge":
        return cls.from_settings(ConfigLoader.load(path), **kwargs)

    def close(self) -> None:
        close = getattr(self.store, "close", None)
        if close is not None:
            close()


def create_store(storage: StorageConfig) -> WorkflowStore:
    if storage.backend == "memory":
        return InMemoryWorkflowStore()
    if storage.backend == "sqlite":
        path = Path(storage.path)
        if path.suffix != ".db":
            path = path / "flowforge.db"
        return SQLiteWorkflowStore(path)
    return FileWorkflowStore(storage.path)
