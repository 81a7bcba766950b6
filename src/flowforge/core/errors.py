"""Error taxonomy surfaced by the run services."""

from __future__ import annotations


class FlowForgeError(Exception):
    pass


class NotFoundError(FlowForgeError):
    pass


class WorkflowNotFoundError(NotFoundError):

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"Workflow '{workflow_id}' not found")


class RunNotFoundError(NotFoundError):

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Workflow run '{run_id}' not found")


class PreconditionError(FlowForgeError):
    """The operation is not valid for the current state of the run."""


class AccessDeniedError(FlowForgeError):

    def __init__(self, action: str, workflow_id: str, actor: str | None):
        self.action = action
        self.workflow_id = workflow_id
        self.actor = actor
        super().__init__(
            f"Actor '{actor or 'anonymous'}' may not {action} workflow '{workflow_id}'"
        )


class RenderError(FlowForgeError):
    """A step template references context values that do not exist."""

    def __init__(self, step_id: str, missing: list[str]):
        self.step_id = step_id
        self.missing = missing
        super().__init__(
            f"Step '{step_id}' has unresolved placeholders: "
            + ", ".join("{{" + m + "}}" for m in missing)
        )
