"""Run state machine: advances a WorkflowRun one step at a time."""

from __future__ import annotations

import copy
import logging
import time
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from flowforge.config.schema import AgentStep, CheckStep, GateStep, LoopStep
from flowforge.control.retry import RetryPolicy
from flowforge.core.errors import PreconditionError, RenderError
from flowforge.core.evaluator import StepEvaluator
from flowforge.core.invoker import AgentInvoker
from flowforge.core.result import InvocationResult, RenderedInput
from flowforge.core.run import GateInfo, RunStatus, StepStatus, WorkflowRun, utcnow
from flowforge.observe.events import EventBus, EventType, RunEvent

_log = logging.getLogger(__name__)

# (event type, step id, event data) describing the transition to commit
_Transition = tuple[EventType, str, dict]


class AdvanceOutcome(str, Enum):
    TERMINAL = "terminal"
    BLOCKED = "blocked"
    NOT_READY = "not_ready"
    PROGRESSED = "progressed"


class RunStateMachine:
    """Drives a run through its pinned definition.

    Each call to :meth:`advance` performs at most one agent dispatch and
    persists every transition through ``store.save_run`` before returning.
    The state machine never sleeps: a backoff is recorded as
    ``run.next_attempt_at`` and the caller decides when to advance again.
    Callers must not advance the same run concurrently.
    """

    def __init__(
        self,
        invoker: AgentInvoker,
        store: Any,
        evaluator: StepEvaluator | None = None,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.invoker = invoker
        self.store = store
        self.evaluator = evaluator or StepEvaluator()
        self.event_bus = event_bus or EventBus()
        self._clock = clock or utcnow

    # ------------------------------------------------------------------
    # Public operations

    async def advance(self, run: WorkflowRun) -> AdvanceOutcome:
        if run.is_terminal:
            return AdvanceOutcome.TERMINAL
        if run.status == RunStatus.BLOCKED:
            return AdvanceOutcome.BLOCKED

        definition = run.definition

        if run.status == RunStatus.PENDING:
            run.status = RunStatus.RUNNING
            if run.current_step is None:
                run.current_step = definition.first_step_id()
            _log.info("Run %s started (workflow %s v%d)", run.id, run.workflow_id, run.workflow_version)
            await self._commit(run, (EventType.RUN_STARTED, "", {}))

        if run.current_step is None:
            await self._commit(run, self._complete_run(run))
            return AdvanceOutcome.TERMINAL

        step = definition.get_step(run.current_step)
        if not self.evaluator.is_ready(step, run, self._clock()):
            return AdvanceOutcome.NOT_READY
        run.next_attempt_at = None

        if isinstance(step, GateStep):
            await self._commit(run, self._enter_gate(run, step))
        elif isinstance(step, CheckStep):
            await self._commit(run, self._run_check(run, step))
        else:
            await self._dispatch(run, step)

        if run.is_terminal:
            return AdvanceOutcome.TERMINAL
        if run.status == RunStatus.BLOCKED:
            return AdvanceOutcome.BLOCKED
        return AdvanceOutcome.PROGRESSED

    async def resume(
        self,
        run: WorkflowRun,
        context: dict | None = None,
        actor: str | None = None,
    ) -> WorkflowRun:
        if run.status != RunStatus.BLOCKED:
            raise PreconditionError(
                f"Run '{run.id}' is {run.status.value}; only blocked runs can be resumed"
            )

        step = run.definition.get_step(run.current_step)
        if context:
            run.context.update(context)
        run.status = RunStatus.RUNNING
        run.gate = None

        output = {"approved": True}
        if actor:
            output["approved_by"] = actor
        output.update(context or {})

        _log.info("Run %s resumed at gate %s by %s", run.id, step.id, actor or "anonymous")
        event, step_id, data = self._step_succeeded(run, step, output)
        data = {**data, "gate": step.id, "next": event.value}
        await self._commit(run, (EventType.RUN_RESUMED, step_id, data))
        return run

    async def force_fail(
        self,
        run: WorkflowRun,
        reason: str,
        actor: str | None = None,
    ) -> WorkflowRun:
        if run.is_terminal:
            raise PreconditionError(
                f"Run '{run.id}' is already {run.status.value}; it cannot be failed"
            )

        now = self._clock()
        error = f"Force-failed by {actor or 'administrator'}: {reason}"
        if run.current_step is not None:
            record = run.step(run.current_step)
            if not record.status.is_terminal:
                record.status = StepStatus.FAILED
                record.error = error
                record.completed_at = now
        run.status = RunStatus.FAILED
        run.error = error
        run.failed_step = run.current_step
        run.current_step = None
        run.gate = None
        run.verifying = None
        run.next_attempt_at = None
        run.completed_at = now

        _log.warning("Run %s force-failed by %s: %s", run.id, actor or "administrator", reason)
        await self._commit(
            run,
            (EventType.RUN_FORCE_FAILED, run.failed_step or "", {"reason": reason, "actor": actor}),
        )
        return run

    # ------------------------------------------------------------------
    # Step execution

    async def _dispatch(self, run: WorkflowRun, step: AgentStep | LoopStep) -> None:
        record = run.step(step.id)
        record.attempts += 1
        record.started_at = self._clock()

        try:
            rendered = self.evaluator.render(step, run.context)
        except RenderError as e:
            await self._commit(run, self._step_failed(run, step, str(e)))
            return

        record.status = StepStatus.RUNNING
        record.error = None
        # Persist before dispatch so a crash leaves the attempt on record.
        await self._commit(
            run,
            (EventType.STEP_START, step.id, {"agent": step.agent, "attempt": record.attempts}),
        )

        result = await self._invoke(run, step, rendered)
        record.artifacts = dict(result.artifacts)
        record.usage = result.usage()
        if result.success:
            transition = self._step_succeeded(run, step, result.output)
        else:
            transition = self._step_failed(run, step, result.error or "Agent invocation failed")
        await self._commit(run, transition)

    async def _invoke(
        self,
        run: WorkflowRun,
        step: AgentStep | LoopStep,
        rendered: RenderedInput,
    ) -> InvocationResult:
        agent = run.definition.get_agent(step.agent)
        start = time.time()
        try:
            result = await self.invoker.invoke(agent, rendered, copy.deepcopy(run.context))
        except Exception as e:
            _log.error(
                "Agent %s raised during step %s of run %s", agent.id, step.id, run.id,
                exc_info=True,
            )
            return InvocationResult(
                success=False,
                error=f"{type(e).__name__}: {e}",
                duration=time.time() - start,
            )
        if not isinstance(result, InvocationResult):
            return InvocationResult(
                success=False,
                error=f"Agent '{agent.id}' returned {type(result).__name__}, expected InvocationResult",
            )
        return result

    def _run_check(self, run: WorkflowRun, step: CheckStep) -> _Transition:
        record = run.step(step.id)
        record.attempts += 1
        record.started_at = self._clock()
        passed, error = self._check(run, step)
        if passed:
            return self._step_succeeded(run, step, True)
        return self._step_failed(run, step, error)

    def _check(self, run: WorkflowRun, step: CheckStep) -> tuple[bool, str]:
        try:
            passed = self.evaluator.evaluate_condition(step.condition, run.context, step.id)
        except RenderError as e:
            return False, str(e)
        return passed, "" if passed else f"Condition not met: {step.condition}"

    def _enter_gate(self, run: WorkflowRun, step: GateStep) -> _Transition:
        record = run.step(step.id)
        record.attempts += 1
        record.started_at = self._clock()

        if step.gate.condition:
            try:
                approved = self.evaluator.evaluate_condition(step.gate.condition, run.context, step.id)
            except RenderError:
                approved = False
            if approved:
                _log.info("Gate %s of run %s approved automatically", step.id, run.id)
                event, step_id, data = self._step_succeeded(
                    run, step, {"approved": True, "automated": True}
                )
                return EventType.GATE_APPROVED, step.id, {**data, "next": event.value}

        try:
            message = self.evaluator.render(step, run.context).prompt
        except RenderError:
            message = step.gate.message

        record.status = StepStatus.BLOCKED
        run.status = RunStatus.BLOCKED
        run.gate = GateInfo(
            step_id=step.id,
            message=message,
            approvers=list(step.gate.approvers),
            requested_at=self._clock(),
        )
        _log.info("Run %s blocked at gate %s", run.id, step.id)
        return EventType.GATE_BLOCKED, step.id, {"message": message, "approvers": step.gate.approvers}

    # ------------------------------------------------------------------
    # Transitions. Each mutates the run and returns what to commit.

    def _step_succeeded(self, run: WorkflowRun, step: Any, output: Any) -> _Transition:
        record = run.step(step.id)
        record.status = StepStatus.COMPLETED
        record.output = output
        record.error = None
        record.completed_at = self._clock()
        self._merge_output(run, step, output)

        loop = self._verifying_loop(run, step)
        if loop is not None:
            return self._finish_verification(run, loop, True)

        if isinstance(step, LoopStep):
            record.iterations += 1
            return self._verify(run, step)

        return self._advance_past(run, step)

    def _step_failed(self, run: WorkflowRun, step: Any, error: str) -> _Transition:
        record = run.step(step.id)
        record.status = StepStatus.FAILED
        record.error = error
        record.completed_at = self._clock()

        loop = self._verifying_loop(run, step)
        if loop is not None:
            return self._finish_verification(run, loop, False, error)

        policy = RetryPolicy(step.id, getattr(step, "on_fail", None))
        if not policy.should_retry(record):
            return self._fail_run(run, step, error)

        record.retries += 1
        definition = run.definition
        start, end = definition.index_of(policy.target), definition.index_of(step.id)
        for earlier in definition.steps[start:end + 1]:
            rerun = run.step(earlier.id)
            rerun.status = StepStatus.PENDING
            if earlier.id != step.id:
                rerun.iterations = 0
        run.current_step = policy.target
        run.verifying = None
        run.next_attempt_at = policy.not_before(record.retries, self._clock())

        _log.info(
            "Step %s of run %s failed (%s); retry %d/%d from %s",
            step.id, run.id, error, record.retries, policy.max_retries, policy.target,
        )
        return EventType.RETRY, step.id, {
            "retry_number": record.retries,
            "max_retries": policy.max_retries,
            "retry_step": policy.target,
            "delay": policy.delay(record.retries),
            "error": error,
        }

    def _verify(self, run: WorkflowRun, loop: LoopStep) -> _Transition:
        verify_id = loop.loop.verify_step
        if verify_id is None:
            return self._finish_verification(run, loop, True)

        verifier = run.definition.get_step(verify_id)
        record = run.step(verify_id)
        if isinstance(verifier, CheckStep):
            # Checks need no dispatch, so they are evaluated in the same advance.
            record.attempts += 1
            record.started_at = self._clock()
            passed, error = self._check(run, verifier)
            record.status = StepStatus.COMPLETED if passed else StepStatus.FAILED
            record.output = passed
            record.error = error or None
            record.completed_at = self._clock()
            return self._finish_verification(run, loop, passed, error)

        record.status = StepStatus.PENDING
        run.verifying = loop.id
        run.current_step = verify_id
        return EventType.LOOP_ITERATION, loop.id, {
            "iteration": run.step(loop.id).iterations,
            "verify_step": verify_id,
        }

    def _finish_verification(
        self,
        run: WorkflowRun,
        loop: LoopStep,
        verified: bool,
        error: str = "",
    ) -> _Transition:
        run.verifying = None
        record = run.step(loop.id)
        record.status = StepStatus.COMPLETED
        if verified:
            _log.info("Loop %s of run %s verified after %d iteration(s)", loop.id, run.id, record.iterations)
            event, step_id, data = self._advance_past(run, loop)
            return event, step_id, {**data, "iteration": record.iterations, "verified": True}

        if record.iterations < loop.loop.max_iterations:
            record.status = StepStatus.PENDING
            run.step(loop.loop.verify_step).status = StepStatus.PENDING
            run.current_step = loop.id
            return EventType.LOOP_ITERATION, loop.id, {
                "iteration": record.iterations,
                "max_iterations": loop.loop.max_iterations,
                "verified": False,
                "error": error,
            }

        record.status = StepStatus.FAILED
        record.error = f"Loop step '{loop.id}' did not verify after {record.iterations} iteration(s)"
        record.completed_at = self._clock()
        if error:
            record.error += f": {error}"
        return self._fail_run(run, loop, record.error)

    def _advance_past(self, run: WorkflowRun, step: Any) -> _Transition:
        definition = run.definition
        next_id = definition.next_step_id(definition.index_of(step.id))
        if next_id is None:
            return self._complete_run(run)
        run.current_step = next_id
        return EventType.STEP_END, step.id, {"next_step": next_id}

    def _complete_run(self, run: WorkflowRun) -> _Transition:
        run.status = RunStatus.COMPLETED
        run.current_step = None
        run.completed_at = self._clock()
        _log.info("Run %s completed", run.id)
        return EventType.RUN_COMPLETED, "", {"duration": run.duration}

    def _fail_run(self, run: WorkflowRun, step: Any, error: str) -> _Transition:
        run.status = RunStatus.FAILED
        run.error = error
        run.failed_step = step.id
        run.current_step = None
        run.verifying = None
        run.next_attempt_at = None
        run.completed_at = self._clock()
        _log.info("Run %s failed at step %s: %s", run.id, step.id, error)
        return EventType.RUN_FAILED, step.id, {"error": error}

    # ------------------------------------------------------------------

    def _verifying_loop(self, run: WorkflowRun, step: Any) -> LoopStep | None:
        if run.verifying is None:
            return None
        loop = run.definition.get_step(run.verifying)
        if isinstance(loop, LoopStep) and loop.loop.verify_step == step.id:
            return loop
        return None

    @staticmethod
    def _merge_output(run: WorkflowRun, step: Any, output: Any) -> None:
        run.context[step.id] = output
        save_as = getattr(step, "save_as", None)
        if save_as:
            run.context[save_as] = output
        if isinstance(output, dict):
            run.context.update(output)

    async def _commit(self, run: WorkflowRun, transition: _Transition) -> None:
        event_type, step_id, data = transition
        run.updated_at = self._clock()
        run.revision += 1
        await self.store.save_run(run)
        await self.event_bus.emit(
            RunEvent(
                event_type=event_type,
                run_id=run.id,
                workflow_id=run.workflow_id,
                step_id=step_id,
                data=data,
                run=run.to_dict(),
            )
        )
