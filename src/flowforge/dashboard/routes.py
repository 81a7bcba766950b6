"""REST API routes for workflow definitions and runs."""

from __future__ import annotations

from typing import Any, Literal, Optional

from fastapi import APIRouter, Body, Header, HTTPException, Response
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge._version import __version__
from flowforge.config.loader import to_document
from flowforge.control.acl import WorkflowACL
from flowforge.core.errors import AccessDeniedError, RunNotFoundError
from flowforge.core.run import RunStatus


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRunRequest(_Body):
    task_id: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)


class ResumeRequest(_Body):
    context: dict[str, Any] = Field(default_factory=dict)


class FailRequest(_Body):
    reason: str = "Failed by administrator"


class ACLRequest(_Body):
    owners: list[str] = Field(default_factory=list)
    starters: list[str] = Field(default_factory=list)
    resumers: list[str] = Field(default_factory=list)
    blocked: list[str] = Field(default_factory=list)


def create_routes(forge: Any) -> APIRouter:
    router = APIRouter(prefix="/api")
    definitions = forge.definitions
    runs = forge.runs

    @router.get("/status")
    async def get_status():
        active = await runs.active_runs()
        return {
            "status": "ok",
            "version": __version__,
            "storage": forge.settings.storage.backend,
            "dryRun": forge.settings.runner.dry_run,
            "activeRuns": len(active),
        }

    # ------------------------------------------------------------------
    # Workflow definitions

    @router.get("/workflows")
    async def list_workflows(response: Response):
        valid, errors = await definitions.list_with_errors()
        if errors:
            response.headers["X-Invalid-Workflows"] = ",".join(sorted(errors))
        return [to_document(d) for d in valid]

    @router.get("/workflows/{workflow_id}")
    async def get_workflow(workflow_id: str):
        return to_document(await definitions.get(workflow_id))

    @router.post("/workflows", status_code=201)
    async def create_workflow(
        document: dict[str, Any] = Body(...),
        x_actor: Optional[str] = Header(default=None),
    ):
        return to_document(await definitions.create(document, actor=x_actor))

    @router.put("/workflows/{workflow_id}")
    async def replace_workflow(
        workflow_id: str,
        document: dict[str, Any] = Body(...),
        x_actor: Optional[str] = Header(default=None),
    ):
        return to_document(await definitions.replace(workflow_id, document, actor=x_actor))

    @router.delete("/workflows/{workflow_id}", status_code=204)
    async def delete_workflow(workflow_id: str, x_actor: Optional[str] = Header(default=None)):
        await definitions.delete(workflow_id, actor=x_actor)
        return Response(status_code=204)

    @router.get("/workflows/{workflow_id}/acl")
    async def get_acl(workflow_id: str):
        await definitions.get(workflow_id)
        acl = await definitions.get_acl(workflow_id)
        if acl is None:
            raise HTTPException(status_code=404, detail=f"Workflow '{workflow_id}' has no ACL")
        return acl.model_dump()

    @router.put("/workflows/{workflow_id}/acl")
    async def put_acl(
        workflow_id: str,
        request: ACLRequest,
        x_actor: Optional[str] = Header(default=None),
    ):
        await definitions.get(workflow_id)
        current = await definitions.get_acl(workflow_id)
        if current is not None and current.owners and x_actor not in current.owners:
            raise AccessDeniedError("change the ACL of", workflow_id, x_actor)
        acl = WorkflowACL(workflow_id=workflow_id, **request.model_dump())
        return (await definitions.save_acl(acl, actor=x_actor)).model_dump()

    @router.get("/workflows/{workflow_id}/audit")
    async def get_audit(workflow_id: str):
        entries = await definitions.list_audit(workflow_id)
        return [e.model_dump(mode="json") for e in entries]

    @router.post("/workflows/{workflow_id}/runs", status_code=201)
    async def start_run(
        workflow_id: str,
        request: Optional[StartRunRequest] = Body(default=None),
        wait: bool = False,
        x_actor: Optional[str] = Header(default=None),
    ):
        request = request or StartRunRequest()
        run = await runs.start_run(
            workflow_id,
            task_id=request.task_id,
            context=request.context,
            actor=x_actor,
            wait=wait,
        )
        return run.to_dict()

    # ------------------------------------------------------------------
    # Runs

    @router.get("/workflow-runs")
    async def list_runs(
        taskId: Optional[str] = None,
        workflowId: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ):
        found = await runs.list_runs(task_id=taskId, workflow_id=workflowId, status=status)
        return [r.to_dict() for r in found]

    @router.get("/workflow-runs/active")
    async def active_runs():
        return [r.to_dict() for r in await runs.active_runs()]

    @router.get("/workflow-runs/stats")
    async def run_stats(period: Literal["24h", "7d", "30d", "all"] = "24h"):
        return await runs.stats(period)

    @router.get("/workflow-runs/{run_id}")
    async def get_run(run_id: str):
        run = await runs.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run.to_dict()

    @router.post("/workflow-runs/{run_id}/resume")
    async def resume_run(
        run_id: str,
        request: Optional[ResumeRequest] = Body(default=None),
        wait: bool = False,
        x_actor: Optional[str] = Header(default=None),
    ):
        request = request or ResumeRequest()
        run = await runs.resume_run(run_id, context=request.context, actor=x_actor, wait=wait)
        return run.to_dict()

    @router.post("/workflow-runs/{run_id}/fail")
    async def fail_run(
        run_id: str,
        request: Optional[FailRequest] = Body(default=None),
        x_actor: Optional[str] = Header(default=None),
    ):
        request = request or FailRequest()
        run = await runs.force_fail(run_id, reason=request.reason, actor=x_actor)
        return run.to_dict()

    return router
