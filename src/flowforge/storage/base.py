"""Storage abstraction for workflow definitions, runs, ACLs and audit entries."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Protocol

from pydantic import ValidationError

from flowforge.core.run import RunStatus, WorkflowRun

_log = logging.getLogger(__name__)


class CorruptRecordError(Exception):
    """A stored record exists but cannot be decoded."""


@dataclass
class RunFilter:
    task_id: str | None = None
    workflow_id: str | None = None
    status: RunStatus | None = None

    def matches(self, run: WorkflowRun) -> bool:
        if self.task_id is not None and run.task_id != self.task_id:
            return False
        if self.workflow_id is not None and run.workflow_id != self.workflow_id:
            return False
        if self.status is not None and run.status != self.status:
            return False
        return True


class WorkflowStore(Protocol):
    """Key-value-with-query store backing the services.

    Definitions are stored as raw documents so the definition service can
    decide what to do with ones that no longer validate. Writes replace the
    whole record; readers never observe a partially written one.
    """

    async def load_definition(self, workflow_id: str) -> dict | None:
        """Return the stored document, or None when absent."""

    async def save_definition(self, workflow_id: str, document: dict) -> None:
        """Persist a document verbatim."""

    async def delete_definition(self, workflow_id: str) -> bool:
        """Remove a document. Returns False when nothing was stored."""

    async def list_definition_ids(self) -> list[str]:
        """Return all stored workflow ids, sorted."""

    async def load_run(self, run_id: str) -> WorkflowRun | None:
        """Return the run, or None when absent."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Persist the whole run record."""

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        """Return matching runs, newest first."""

    async def load_acls(self) -> dict[str, dict]:
        """Return ACL documents keyed by workflow id."""

    async def save_acl(self, workflow_id: str, acl: dict) -> None:
        """Persist one workflow's ACL document."""

    async def append_audit(self, entry: dict) -> None:
        """Append an audit entry. Entries are never rewritten."""

    async def read_audit(self) -> list[dict]:
        """Return all audit entries in write order."""


def newest_first(runs: list[WorkflowRun]) -> list[WorkflowRun]:
    return sorted(runs, key=lambda r: r.started_at, reverse=True)


def decode_run(text: str | bytes, source: str) -> WorkflowRun:
    """Parse a stored run document, raising CorruptRecordError when unreadable."""
    try:
        return WorkflowRun.from_dict(json.loads(text))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError, TypeError) as e:
        raise CorruptRecordError(f"Run record '{source}' is unreadable: {e}") from e


def readable_runs(records: list[tuple[str, str | bytes]]) -> list[WorkflowRun]:
    """Decode ``(source, text)`` pairs, skipping corrupt ones with a warning."""
    runs = []
    for source, text in records:
        try:
            runs.append(decode_run(text, source))
        except CorruptRecordError as e:
            _log.warning("Skipping corrupt run record: %s", e)
    return runs
