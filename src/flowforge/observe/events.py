"""Async pub/sub event bus for run state changes."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Coroutine

_log = logging.getLogger(__name__)


class EventType(str, Enum):
    RUN_CREATED = "run_created"
    RUN_STARTED = "run_started"
    STEP_START = "step_start"
    STEP_END = "step_end"
    RETRY = "retry"
    LOOP_ITERATION = "loop_iteration"
    GATE_BLOCKED = "gate_blocked"
    GATE_APPROVED = "gate_approved"
    RUN_RESUMED = "run_resumed"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    RUN_FORCE_FAILED = "run_force_failed"


@dataclass
class RunEvent:
    event_type: EventType
    run_id: str
    workflow_id: str = ""
    step_id: str = ""
    timestamp: float = field(default_factory=time.time)
    data: dict = field(default_factory=dict)
    run: dict = field(default_factory=dict)  # run snapshot after the transition

    def to_dict(self) -> dict:
        return {
            "event_type": self.event_type.value,
            "run_id": self.run_id,
            "workflow_id": self.workflow_id,
            "step_id": self.step_id,
            "timestamp": self.timestamp,
            "data": self.data,
            "run": self.run,
        }


class EventBus:

    def __init__(self):
        self._subscribers: list[Callable[[RunEvent], Coroutine]] = []
        self._sync_subscribers: list[Callable[[RunEvent], None]] = []

    def subscribe(self, callback: Callable[[RunEvent], Coroutine]):
        self._subscribers.append(callback)

    def subscribe_sync(self, callback: Callable[[RunEvent], None]):
        self._sync_subscribers.append(callback)

    async def emit(self, event: RunEvent):
        # Subscriber errors never break run execution.
        for sync_cb in self._sync_subscribers:
            try:
                sync_cb(event)
            except Exception:
                _log.warning("Event subscriber failed for %s", event.event_type.value, exc_info=True)

        for async_cb in self._subscribers:
            try:
                await async_cb(event)
            except Exception:
                _log.warning("Event subscriber failed for %s", event.event_type.value, exc_info=True)

    def clear(self):
        self._subscribers.clear()
        self._sync_subscribers.clear()
