"""Run scheduler: the operational surface over the run state machine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable

from flowforge.control.acl import AccessPolicy
from flowforge.core.errors import RunNotFoundError
from flowforge.core.machine import AdvanceOutcome, RunStateMachine
from flowforge.core.run import RunStatus, WorkflowRun, utcnow
from flowforge.observe.events import EventType, RunEvent
from flowforge.services.definitions import DefinitionService
from flowforge.storage.base import RunFilter

_log = logging.getLogger(__name__)

STATS_PERIODS: dict[str, timedelta | None] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
    "all": None,
}


class RunService:
    """Starts, advances, resumes and queries workflow runs.

    Advances of one run are serialized with a per-run ``asyncio.Lock``;
    different runs proceed independently. ``drive`` keeps advancing a run
    until it blocks, finishes, or waits on a backoff it cannot sleep
    through, sleeping on backoffs itself since the state machine never does.
    """

    def __init__(
        self,
        store: Any,
        definitions: DefinitionService,
        machine: RunStateMachine,
        access: AccessPolicy | None = None,
        max_advances: int = 1000,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ):
        self.store = store
        self.definitions = definitions
        self.machine = machine
        self.access = access or AccessPolicy(definitions)
        self.max_advances = max_advances
        self._clock = clock or utcnow
        self._sleep = sleep or asyncio.sleep
        # run id -> (lock, number of holders and waiters)
        self._locks: dict[str, tuple[asyncio.Lock, int]] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Mutating operations

    async def start_run(
        self,
        workflow_id: str,
        task_id: str | None = None,
        context: dict | None = None,
        actor: str | None = None,
        wait: bool = True,
    ) -> WorkflowRun:
        definition = await self.definitions.get(workflow_id)
        await self.access.check_start(workflow_id, actor)

        run = WorkflowRun.create(definition, task_id=task_id, context=context)
        await self.store.save_run(run)
        _log.info(
            "Run %s created for workflow %s v%d (task=%s, actor=%s)",
            run.id, workflow_id, definition.version, task_id, actor,
        )
        await self.machine.event_bus.emit(
            RunEvent(
                event_type=EventType.RUN_CREATED,
                run_id=run.id,
                workflow_id=workflow_id,
                data={"task_id": task_id, "actor": actor},
                run=run.to_dict(),
            )
        )
        return await self._schedule(run, wait)

    async def advance(self, run_id: str) -> WorkflowRun:
        """One state machine step under the run's lock."""
        run, _ = await self._advance_once(run_id)
        return run

    async def drive(self, run_id: str) -> WorkflowRun:
        """Advance until the run suspends (terminal, blocked, or not ready)."""
        run = await self.require_run(run_id)
        for _ in range(self.max_advances):
            run, outcome = await self._advance_once(run_id)
            if outcome in (AdvanceOutcome.TERMINAL, AdvanceOutcome.BLOCKED):
                return run
            if outcome == AdvanceOutcome.NOT_READY:
                delay = self._backoff_remaining(run)
                if delay is None:
                    return run
                _log.debug("Run %s backing off for %.2fs", run_id, delay)
                await self._sleep(delay)

        _log.warning("Run %s stopped after %d advances without suspending", run_id, self.max_advances)
        return run

    async def resume_run(
        self,
        run_id: str,
        context: dict | None = None,
        actor: str | None = None,
        wait: bool = True,
    ) -> WorkflowRun:
        async with self._lock(run_id):
            run = await self.require_run(run_id)
            await self.access.check_resume(run.workflow_id, actor)
            await self.machine.resume(run, context=context, actor=actor)
        return await self._schedule(run, wait)

    async def force_fail(self, run_id: str, reason: str, actor: str | None = None) -> WorkflowRun:
        async with self._lock(run_id):
            run = await self.require_run(run_id)
            await self.access.check_admin(run.workflow_id, actor)
            return await self.machine.force_fail(run, reason=reason, actor=actor)

    async def recover(self, wait: bool = False) -> list[WorkflowRun]:
        """Re-drive runs left pending or running by a previous process."""
        recovered = []
        for run in await self.store.list_runs():
            if run.status not in (RunStatus.PENDING, RunStatus.RUNNING):
                continue
            _log.info("Recovering run %s at step %s", run.id, run.current_step)
            recovered.append(await self._schedule(run, wait))
        return recovered

    async def wait_idle(self) -> None:
        """Wait for every background drive scheduled so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queries

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self.store.load_run(run_id)

    async def require_run(self, run_id: str) -> WorkflowRun:
        run = await self.store.load_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def list_runs(
        self,
        task_id: str | None = None,
        workflow_id: str | None = None,
        status: RunStatus | str | None = None,
    ) -> list[WorkflowRun]:
        if isinstance(status, str):
            status = RunStatus(status)
        return await self.store.list_runs(
            RunFilter(task_id=task_id, workflow_id=workflow_id, status=status)
        )

    async def active_runs(self) -> list[WorkflowRun]:
        return [r for r in await self.store.list_runs() if not r.is_terminal]

    async def stats(self, period: str = "all") -> dict:
        if period not in STATS_PERIODS:
            raise ValueError(f"Unknown period '{period}'. Use one of: {', '.join(STATS_PERIODS)}")

        runs = await self.store.list_runs()
        window = STATS_PERIODS[period]
        if window is not None:
            since = self._clock() - window
            runs = [r for r in runs if r.started_at >= since]

        completed = [r for r in runs if r.status == RunStatus.COMPLETED]
        failed = [r for r in runs if r.status == RunStatus.FAILED]
        durations = [r.duration for r in runs if r.duration is not None]
        finished = len(completed) + len(failed)

        by_workflow: dict[str, dict[str, int]] = {}
        for run in runs:
            counts = by_workflow.setdefault(
                run.workflow_id, {"total": 0, "completed": 0, "failed": 0, "active": 0}
            )
            counts["total"] += 1
            if run.status == RunStatus.COMPLETED:
                counts["completed"] += 1
            elif run.status == RunStatus.FAILED:
                counts["failed"] += 1
            else:
                counts["active"] += 1

        return {
            "period": period,
            "total": len(runs),
            "active": len(runs) - finished,
            "blocked": sum(1 for r in runs if r.status == RunStatus.BLOCKED),
            "completed": len(completed),
            "failed": len(failed),
            "success_rate": round(len(completed) / finished, 4) if finished else None,
            "average_duration": round(sum(durations) / len(durations), 3) if durations else None,
            "by_workflow": by_workflow,
        }

    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _lock(self, run_id: str) -> AsyncIterator[None]:
        """Hold the run's lock. The entry is dropped once nobody holds or awaits it."""
        lock, users = self._locks.get(run_id, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[run_id] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[run_id]
            if users == 1:
                del self._locks[run_id]
            else:
                self._locks[run_id] = (lock, users - 1)

    async def _advance_once(self, run_id: str) -> tuple[WorkflowRun, AdvanceOutcome]:
        async with self._lock(run_id):
            # Reload under the lock so a concurrent advance's commit is seen.
            run = await self.require_run(run_id)
            outcome = await self.machine.advance(run)
        return run, outcome

    def _backoff_remaining(self, run: WorkflowRun) -> float | None:
        if run.next_attempt_at is None:
            return None
        return max((run.next_attempt_at - self._clock()).total_seconds(), 0.0)

    async def _schedule(self, run: WorkflowRun, wait: bool) -> WorkflowRun:
        if wait:
            return await self.drive(run.id)
        task = asyncio.create_task(self.drive(run.id), name=f"drive-{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return run

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            _log.error("Background drive %s failed", task.get_name(), exc_info=exc)
