"""In-memory implementation of the workflow store."""

from __future__ import annotations

import copy

from flowforge.core.run import WorkflowRun
from flowforge.storage.base import RunFilter, WorkflowStore, newest_first


class InMemoryWorkflowStore(WorkflowStore):
    """Store everything in local memory.

    Useful for tests or throwaway servers. Data is not persisted across
    process restarts. Records are copied on the way in and out so callers
    never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._definitions: dict[str, dict] = {}
        self._runs: dict[str, dict] = {}
        self._acls: dict[str, dict] = {}
        self._audit: list[dict] = []

    # ------------------------------------------------------------------
    async def load_definition(self, workflow_id: str) -> dict | None:
        document = self._definitions.get(workflow_id)
        return copy.deepcopy(document) if document is not None else None

    async def save_definition(self, workflow_id: str, document: dict) -> None:
        self._definitions[workflow_id] = copy.deepcopy(document)

    async def delete_definition(self, workflow_id: str) -> bool:
        return self._definitions.pop(workflow_id, None) is not None

    async def list_definition_ids(self) -> list[str]:
        return sorted(self._definitions)

    # ------------------------------------------------------------------
    async def load_run(self, run_id: str) -> WorkflowRun | None:
        data = self._runs.get(run_id)
        return WorkflowRun.from_dict(data) if data is not None else None

    async def save_run(self, run: WorkflowRun) -> None:
        self._runs[run.id] = run.to_dict()

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        run_filter = run_filter or RunFilter()
        runs = [WorkflowRun.from_dict(d) for d in self._runs.values()]
        return newest_first([r for r in runs if run_filter.matches(r)])

    # ------------------------------------------------------------------
    async def load_acls(self) -> dict[str, dict]:
        return copy.deepcopy(self._acls)

    async def save_acl(self, workflow_id: str, acl: dict) -> None:
        self._acls[workflow_id] = copy.deepcopy(acl)

    async def append_audit(self, entry: dict) -> None:
        self._audit.append(copy.deepcopy(entry))

    async def read_audit(self) -> list[dict]:
        return copy.deepcopy(self._audit)
