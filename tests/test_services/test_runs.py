"""Tests for the run service: scheduling, serialization and queries."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from flowforge.control.acl import WorkflowACL
from flowforge.core.errors import AccessDeniedError, PreconditionError, RunNotFoundError, WorkflowNotFoundError
from flowforge.core.machine import RunStateMachine
from flowforge.core.run import RunStatus, StepStatus, WorkflowRun
from flowforge.observe.events import EventType
from flowforge.services.definitions import DefinitionService
from flowforge.services.runs import RunService

from helpers import agent_step, fail, invoked_steps, make_definition, make_invoker, ok


@pytest.fixture
def make_service(store, event_bus, clock):
    def _make(invoker=None, **kwargs) -> RunService:
        definitions = DefinitionService(store)
        machine = RunStateMachine(
            invoker=invoker or make_invoker(), store=store, event_bus=event_bus, clock=clock
        )
        return RunService(
            store=store, definitions=definitions, machine=machine,
            clock=clock, sleep=clock.sleep, **kwargs,
        )
    return _make


def gate_definition(**extra):
    return make_definition(
        [{"id": "approve", "type": "gate", "gate": {"message": "Ship it?"}}, agent_step("deploy")],
        workflow_id="release",
        **extra,
    )


class TestScenarios:
    @pytest.mark.asyncio
    async def test_happy_path(self, make_service, two_step_definition):
        invoker = make_invoker({"plan": [ok({"plan": "three steps"})], "code": [ok("diff")]})
        service = make_service(invoker)
        await service.definitions.save(two_step_definition)

        run = await service.start_run("feature", task_id="TASK-1")

        assert run.status == RunStatus.COMPLETED
        assert run.context["plan"] == "three steps"
        assert run.context["code"] == "diff"
        assert all(s.status == StepStatus.COMPLETED for s in run.steps)
        assert invoked_steps(invoker) == ["plan", "code"]

    @pytest.mark.asyncio
    async def test_retry_then_succeed(self, make_service):
        service = make_service(make_invoker({"build": [fail(), fail(), ok()]}))
        await service.definitions.save(
            make_definition([agent_step("build", on_fail={"retry_step": "build", "max_retries": 2})])
        )

        run = await service.start_run("wf")

        assert run.status == RunStatus.COMPLETED
        assert run.step("build").attempts == 3

    @pytest.mark.asyncio
    async def test_retry_exhausted(self, make_service):
        invoker = make_invoker({"build": [fail("tests red")]})
        service = make_service(invoker)
        await service.definitions.save(
            make_definition([agent_step("build", on_fail={"retry_step": "build", "max_retries": 2})])
        )

        run = await service.start_run("wf")

        assert run.status == RunStatus.FAILED
        assert invoker.invoke.await_count == 3
        assert run.error == "tests red"

    @pytest.mark.asyncio
    async def test_gate_block_and_resume(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())

        run = await service.start_run("release")
        assert run.status == RunStatus.BLOCKED
        assert run.current_step == "approve"
        assert run.gate.message == "Ship it?"

        run = await service.resume_run(run.id, context={"approved": True}, actor="lead")

        assert run.status == RunStatus.COMPLETED
        assert run.context["approve"]["approved_by"] == "lead"

    @pytest.mark.asyncio
    async def test_loop_verify(self, make_service):
        invoker = make_invoker(
            {"implement": [ok({"tests_passed": False}), ok({"tests_passed": False}), ok({"tests_passed": True})]}
        )
        service = make_service(invoker)
        await service.definitions.save(
            make_definition(
                [
                    {"id": "implement", "type": "loop", "agent": "x", "task": "code it",
                     "output_format": "json",
                     "loop": {"verify_step": "verify", "max_iterations": 5}},
                    {"id": "verify", "type": "check", "condition": "{{tests_passed}} == true"},
                    agent_step("ship"),
                ]
            )
        )

        run = await service.start_run("wf")

        assert run.status == RunStatus.COMPLETED
        assert run.step("implement").iterations == 3
        assert invoked_steps(invoker) == ["implement"] * 3 + ["ship"]


class TestStartAndResume:
    @pytest.mark.asyncio
    async def test_unknown_workflow(self, make_service):
        with pytest.raises(WorkflowNotFoundError):
            await make_service().start_run("nope")

    @pytest.mark.asyncio
    async def test_start_emits_created(self, make_service, event_bus, two_step_definition):
        events = []
        event_bus.subscribe_sync(events.append)
        service = make_service()
        await service.definitions.save(two_step_definition)

        await service.start_run("feature", task_id="T", actor="alice")

        assert events[0].event_type == EventType.RUN_CREATED
        assert events[0].data == {"task_id": "T", "actor": "alice"}
        assert events[-1].event_type == EventType.RUN_COMPLETED

    @pytest.mark.asyncio
    async def test_background_start(self, make_service, two_step_definition):
        service = make_service()
        await service.definitions.save(two_step_definition)

        run = await service.start_run("feature", wait=False)
        assert run.status == RunStatus.PENDING

        await service.wait_idle()
        assert (await service.get_run(run.id)).status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_requires_blocked(self, make_service, two_step_definition):
        service = make_service()
        await service.definitions.save(two_step_definition)
        run = await service.start_run("feature")

        with pytest.raises(PreconditionError, match="only blocked runs"):
            await service.resume_run(run.id)

    @pytest.mark.asyncio
    async def test_resume_missing_run(self, make_service):
        with pytest.raises(RunNotFoundError):
            await make_service().resume_run("run_missing")

    @pytest.mark.asyncio
    async def test_run_pinned_to_definition(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())
        run = await service.start_run("release")

        await service.definitions.replace(
            "release",
            make_definition([agent_step("other")], workflow_id="release").model_dump(),
        )
        run = await service.resume_run(run.id)

        assert run.status == RunStatus.COMPLETED
        assert [s.step_id for s in run.steps] == ["approve", "deploy"]
        assert run.workflow_version == 1

    @pytest.mark.asyncio
    async def test_run_survives_definition_delete(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())
        run = await service.start_run("release")

        await service.definitions.delete("release")
        run = await service.resume_run(run.id)

        assert run.status == RunStatus.COMPLETED


class TestAccessControl:
    @pytest.mark.asyncio
    async def test_start_denied(self, make_service, two_step_definition):
        service = make_service()
        await service.definitions.save(two_step_definition)
        await service.definitions.save_acl(WorkflowACL(workflow_id="feature", starters=["alice"]))

        with pytest.raises(AccessDeniedError, match="'bob' may not start"):
            await service.start_run("feature", actor="bob")
        with pytest.raises(AccessDeniedError, match="'anonymous' may not start"):
            await service.start_run("feature")
        assert await service.list_runs() == []

        run = await service.start_run("feature", actor="alice")
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_resume_denied(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())
        await service.definitions.save_acl(
            WorkflowACL(workflow_id="release", starters=["*"], resumers=["lead"])
        )
        run = await service.start_run("release", actor="dev")

        with pytest.raises(AccessDeniedError):
            await service.resume_run(run.id, actor="dev")
        assert (await service.get_run(run.id)).status == RunStatus.BLOCKED

        run = await service.resume_run(run.id, actor="lead")
        assert run.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_force_fail_reserved_to_owners(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())
        await service.definitions.save_acl(
            WorkflowACL(workflow_id="release", owners=["alice"], starters=["*"], blocked=["mallory"])
        )
        run = await service.start_run("release", actor="dev")

        with pytest.raises(AccessDeniedError, match="'mallory' may not force-fail"):
            await service.force_fail(run.id, "nope", actor="mallory")
        with pytest.raises(AccessDeniedError, match="'dev' may not force-fail"):
            await service.force_fail(run.id, "nope", actor="dev")
        assert (await service.get_run(run.id)).status == RunStatus.BLOCKED

        run = await service.force_fail(run.id, "abandoned", actor="alice")
        assert run.status == RunStatus.FAILED


class TestDrive:
    @pytest.mark.asyncio
    async def test_sleeps_through_backoff(self, make_service, clock):
        invoker = make_invoker({"build": [fail(), ok()]})
        service = make_service(invoker)
        await service.definitions.save(
            make_definition(
                [agent_step("build", on_fail={"retry_step": "build", "max_retries": 1, "backoff": 5})]
            )
        )

        run = await service.start_run("wf")

        assert run.status == RunStatus.COMPLETED
        assert clock.sleeps == [5.0]

    @pytest.mark.asyncio
    async def test_max_advances(self, make_service, two_step_definition, caplog):
        service = make_service(max_advances=1)
        await service.definitions.save(two_step_definition)

        with caplog.at_level(logging.WARNING, logger="flowforge"):
            run = await service.start_run("feature")

        assert run.status == RunStatus.RUNNING
        assert run.current_step == "code"
        assert "without suspending" in caplog.text

    @pytest.mark.asyncio
    async def test_advance_one_step(self, make_service, two_step_definition):
        invoker = make_invoker()
        service = make_service(invoker, max_advances=1)
        await service.definitions.save(two_step_definition)
        run = await service.start_run("feature")
        assert invoked_steps(invoker) == ["plan"]

        run = await service.advance(run.id)
        assert run.status == RunStatus.COMPLETED
        assert invoker.invoke.await_count == 2

    @pytest.mark.asyncio
    async def test_concurrent_drives_dispatch_once(self, store, event_bus, clock, two_step_definition):
        in_flight = 0
        peak = 0

        async def _invoke(agent, rendered, context):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return ok()

        invoker = MagicMock()
        invoker.invoke = AsyncMock(side_effect=_invoke)
        definitions = DefinitionService(store)
        machine = RunStateMachine(invoker=invoker, store=store, event_bus=event_bus, clock=clock)
        service = RunService(store=store, definitions=definitions, machine=machine, clock=clock)
        await definitions.save(two_step_definition)
        run = await service.start_run("feature", wait=False)

        results = await asyncio.gather(*(service.drive(run.id) for _ in range(3)))
        await service.wait_idle()

        assert peak == 1
        assert invoked_steps(invoker) == ["plan", "code"]
        assert all(r.status == RunStatus.COMPLETED for r in results)
        assert service._locks == {}

    @pytest.mark.asyncio
    async def test_blocked_run_holds_no_lock(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())

        run = await service.start_run("release")
        assert run.status == RunStatus.BLOCKED
        assert service._locks == {}

        await service.advance(run.id)
        assert service._locks == {}

        run = await service.resume_run(run.id)
        assert run.status == RunStatus.COMPLETED
        assert service._locks == {}

    @pytest.mark.asyncio
    async def test_recover(self, make_service, store, two_step_definition):
        service = make_service()
        pending = WorkflowRun.create(two_step_definition)
        finished = WorkflowRun.create(two_step_definition)
        finished.status = RunStatus.COMPLETED
        await store.save_run(pending)
        await store.save_run(finished)

        recovered = await service.recover(wait=True)

        assert [r.id for r in recovered] == [pending.id]
        assert recovered[0].status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_background_failure_logged(self, make_service, store, two_step_definition, caplog):
        service = make_service()
        run = WorkflowRun.create(two_step_definition)
        await store.save_run(run)
        service.machine.advance = AsyncMock(side_effect=RuntimeError("disk full"))

        await service.recover(wait=False)
        await service.wait_idle()

        assert "Background drive drive-" in caplog.text


class TestForceFail:
    @pytest.mark.asyncio
    async def test_force_fail_blocked_run(self, make_service):
        service = make_service()
        await service.definitions.save(gate_definition())
        run = await service.start_run("release")

        run = await service.force_fail(run.id, reason="abandoned", actor="admin")

        assert run.status == RunStatus.FAILED
        assert run.failed_step == "approve"
        assert "abandoned" in run.error
        assert run.step("approve").status == StepStatus.FAILED

    @pytest.mark.asyncio
    async def test_force_fail_terminal(self, make_service, two_step_definition):
        service = make_service()
        await service.definitions.save(two_step_definition)
        run = await service.start_run("feature")

        with pytest.raises(PreconditionError):
            await service.force_fail(run.id, reason="too late")


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_run_missing(self, make_service):
        service = make_service()
        assert await service.get_run("run_missing") is None
        with pytest.raises(RunNotFoundError):
            await service.require_run("run_missing")

    @pytest.mark.asyncio
    async def test_list_and_active(self, make_service, two_step_definition):
        service = make_service()
        await service.definitions.save(two_step_definition)
        await service.definitions.save(gate_definition())
        done = await service.start_run("feature", task_id="T-1")
        blocked = await service.start_run("release", task_id="T-1")

        assert {r.id for r in await service.list_runs(task_id="T-1")} == {done.id, blocked.id}
        assert [r.id for r in await service.list_runs(status="blocked")] == [blocked.id]
        assert [r.id for r in await service.list_runs(workflow_id="feature")] == [done.id]
        assert [r.id for r in await service.active_runs()] == [blocked.id]

    @pytest.mark.asyncio
    async def test_stats(self, make_service, store, clock, two_step_definition):
        service = make_service()

        def stored(status, age_hours, duration=None):
            run = WorkflowRun.create(two_step_definition)
            run.status = status
            run.started_at = clock() - timedelta(hours=age_hours)
            if duration is not None:
                run.completed_at = run.started_at + timedelta(seconds=duration)
            return run

        for run in (
            stored(RunStatus.COMPLETED, 1, duration=10),
            stored(RunStatus.COMPLETED, 2, duration=20),
            stored(RunStatus.FAILED, 3, duration=30),
            stored(RunStatus.BLOCKED, 4),
            stored(RunStatus.COMPLETED, 24 * 3, duration=40),
        ):
            await store.save_run(run)

        day = await service.stats("24h")
        assert day["total"] == 4
        assert day["completed"] == 2
        assert day["failed"] == 1
        assert day["blocked"] == 1
        assert day["active"] == 1
        assert day["success_rate"] == round(2 / 3, 4)
        assert day["average_duration"] == 20.0
        assert day["by_workflow"]["feature"] == {"total": 4, "completed": 2, "failed": 1, "active": 1}

        assert (await service.stats("7d"))["total"] == 5
        assert (await service.stats("all"))["completed"] == 3

    @pytest.mark.asyncio
    async def test_stats_empty_and_bad_period(self, make_service):
        service = make_service()
        empty = await service.stats()
        assert empty["total"] == 0
        assert empty["success_rate"] is None
        with pytest.raises(ValueError, match="Unknown period"):
            await service.stats("1y")
