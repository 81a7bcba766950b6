"""Flat-file implementation of the workflow store.

Layout under the data directory::

    workflows/<id>.yml      one human-editable YAML document per definition
    workflows/.acl.json     ACL documents keyed by workflow id
    workflows/.audit.jsonl  append-only audit log
    runs/<id>.json          one JSON document per run
"""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import threading
from pathlib import Path

import yaml

from flowforge.config.schema import is_safe_id
from flowforge.core.run import WorkflowRun
from flowforge.storage.base import (
    CorruptRecordError,
    RunFilter,
    WorkflowStore,
    decode_run,
    newest_first,
    readable_runs,
)

_SUFFIXES = (".yml", ".yaml")


def _atomic_write(path: Path, text: str) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


def _require_safe(record_id: str) -> None:
    if not is_safe_id(record_id):
        raise ValueError(f"'{record_id}' cannot be used as a file name")


class FileWorkflowStore(WorkflowStore):

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self.workflows_dir = self.root / "workflows"
        self.runs_dir = self.root / "runs"
        self.workflows_dir.mkdir(parents=True, exist_ok=True)
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        self._acl_path = self.workflows_dir / ".acl.json"
        self._audit_path = self.workflows_dir / ".audit.jsonl"
        self._lock = threading.Lock()

    async def _io(self, fn, *args):
        def _run():
            with self._lock:
                return fn(*args)
        return await asyncio.to_thread(_run)

    def _definition_path(self, workflow_id: str) -> Path | None:
        if not is_safe_id(workflow_id):
            return None
        for suffix in _SUFFIXES:
            path = self.workflows_dir / f"{workflow_id}{suffix}"
            if path.exists():
                return path
        return None

    # ------------------------------------------------------------------
    # Definitions

    async def load_definition(self, workflow_id: str) -> dict | None:
        def _load():
            path = self._definition_path(workflow_id)
            if path is None:
                return None
            try:
                document = yaml.safe_load(path.read_text(encoding="utf-8"))
            except UnicodeDecodeError as e:
                raise CorruptRecordError(f"'{path.name}' is not valid UTF-8: {e}") from e
            except OSError as e:
                raise CorruptRecordError(f"'{path.name}' cannot be read: {e}") from e
            except yaml.YAMLError as e:
                raise CorruptRecordError(f"'{path.name}' is not valid YAML: {e}") from e
            if not isinstance(document, dict):
                raise CorruptRecordError(
                    f"'{path.name}' must be a YAML mapping, got {type(document).__name__}"
                )
            return document
        return await self._io(_load)

    async def save_definition(self, workflow_id: str, document: dict) -> None:
        _require_safe(workflow_id)

        def _save():
            text = yaml.safe_dump(document, sort_keys=False, allow_unicode=True)
            _atomic_write(self.workflows_dir / f"{workflow_id}.yml", text)
            stale = self.workflows_dir / f"{workflow_id}.yaml"
            stale.unlink(missing_ok=True)
        await self._io(_save)

    async def delete_definition(self, workflow_id: str) -> bool:
        if not is_safe_id(workflow_id):
            return False

        def _delete():
            deleted = False
            for suffix in _SUFFIXES:
                path = self.workflows_dir / f"{workflow_id}{suffix}"
                if path.exists():
                    path.unlink()
                    deleted = True
            return deleted
        return await self._io(_delete)

    async def list_definition_ids(self) -> list[str]:
        def _list():
            ids = {
                p.stem for p in self.workflows_dir.iterdir()
                if p.suffix in _SUFFIXES and is_safe_id(p.stem)
            }
            return sorted(ids)
        return await self._io(_list)

    # ------------------------------------------------------------------
    # Runs

    async def load_run(self, run_id: str) -> WorkflowRun | None:
        if not is_safe_id(run_id):
            return None

        def _load():
            path = self.runs_dir / f"{run_id}.json"
            if not path.exists():
                return None
            return path.read_bytes()
        data = await self._io(_load)
        return decode_run(data, f"{run_id}.json") if data is not None else None

    async def save_run(self, run: WorkflowRun) -> None:
        _require_safe(run.id)
        text = json.dumps(run.to_dict(), indent=2)
        await self._io(_atomic_write, self.runs_dir / f"{run.id}.json", text)

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        def _load_all():
            return [(p.name, p.read_bytes()) for p in self.runs_dir.glob("*.json")]
        run_filter = run_filter or RunFilter()
        runs = readable_runs(await self._io(_load_all))
        return newest_first([r for r in runs if run_filter.matches(r)])

    # ------------------------------------------------------------------
    # ACL and audit

    def _read_acls(self) -> dict[str, dict]:
        if not self._acl_path.exists():
            return {}
        return json.loads(self._acl_path.read_text(encoding="utf-8"))

    async def load_acls(self) -> dict[str, dict]:
        return await self._io(self._read_acls)

    async def save_acl(self, workflow_id: str, acl: dict) -> None:
        def _save():
            acls = self._read_acls()
            acls[workflow_id] = acl
            _atomic_write(self._acl_path, json.dumps(acls, indent=2))
        await self._io(_save)

    async def append_audit(self, entry: dict) -> None:
        def _append():
            with self._audit_path.open("a", encoding="utf-8") as fh:
                fh.write(json.dumps(entry, default=str) + "\n")
        await self._io(_append)

    async def read_audit(self) -> list[dict]:
        def _read():
            if not self._audit_path.exists():
                return []
            lines = self._audit_path.read_text(encoding="utf-8").splitlines()
            return [json.loads(line) for line in lines if line.strip()]
        return await self._io(_read)
