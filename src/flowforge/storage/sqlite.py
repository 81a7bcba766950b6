"""SQLite implementation of the workflow store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path

from flowforge.core.run import WorkflowRun
from flowforge.storage.base import (
    CorruptRecordError,
    RunFilter,
    WorkflowStore,
    decode_run,
    readable_runs,
)


class SQLiteWorkflowStore(WorkflowStore):

    def __init__(self, db_path: str | Path = ".flowforge/flowforge.db"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        """Create tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS definitions (
                id TEXT PRIMARY KEY,
                document TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS runs (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                task_id TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_runs_task ON runs(task_id)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS acls (
                workflow_id TEXT PRIMARY KEY,
                document TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS audit (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                entry TEXT NOT NULL
            )
        """)
        self._conn.commit()

    async def _db_execute_commit(self, sql: str, params: tuple = ()) -> int:
        def _run():
            with self._db_lock:
                cur = self._conn.execute(sql, params)
                self._conn.commit()
                return cur.rowcount
        return await asyncio.to_thread(_run)

    async def _db_query(self, sql: str, params: tuple = ()) -> list:
        def _run():
            with self._db_lock:
                return self._conn.execute(sql, params).fetchall()
        return await asyncio.to_thread(_run)

    def close(self):
        with self._db_lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Definitions

    async def load_definition(self, workflow_id: str) -> dict | None:
        rows = await self._db_query("SELECT document FROM definitions WHERE id = ?", (workflow_id,))
        if not rows:
            return None
        try:
            return json.loads(rows[0]["document"])
        except ValueError as e:
            raise CorruptRecordError(f"definition '{workflow_id}' is not valid JSON: {e}") from e

    async def save_definition(self, workflow_id: str, document: dict) -> None:
        await self._db_execute_commit(
            "INSERT INTO definitions (id, document) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET document = excluded.document",
            (workflow_id, json.dumps(document)),
        )

    async def delete_definition(self, workflow_id: str) -> bool:
        deleted = await self._db_execute_commit(
            "DELETE FROM definitions WHERE id = ?", (workflow_id,)
        )
        return deleted > 0

    async def list_definition_ids(self) -> list[str]:
        rows = await self._db_query("SELECT id FROM definitions ORDER BY id")
        return [r["id"] for r in rows]

    # ------------------------------------------------------------------
    # Runs

    async def load_run(self, run_id: str) -> WorkflowRun | None:
        rows = await self._db_query("SELECT document FROM runs WHERE id = ?", (run_id,))
        if not rows:
            return None
        return decode_run(rows[0]["document"], run_id)

    async def save_run(self, run: WorkflowRun) -> None:
        document = run.to_dict()
        await self._db_execute_commit(
            "INSERT INTO runs (id, workflow_id, task_id, status, started_at, document) "
            "VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET status = excluded.status, "
            "document = excluded.document",
            (
                run.id,
                run.workflow_id,
                run.task_id,
                run.status.value,
                document["startedAt"],
                json.dumps(document),
            ),
        )

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[WorkflowRun]:
        run_filter = run_filter or RunFilter()
        clauses, params = [], []
        if run_filter.task_id is not None:
            clauses.append("task_id = ?")
            params.append(run_filter.task_id)
        if run_filter.workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(run_filter.workflow_id)
        if run_filter.status is not None:
            clauses.append("status = ?")
            params.append(run_filter.status.value)

        sql = "SELECT id, document FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY started_at DESC"

        rows = await self._db_query(sql, tuple(params))
        return readable_runs([(r["id"], r["document"]) for r in rows])

    # ------------------------------------------------------------------
    # ACL and audit

    async def load_acls(self) -> dict[str, dict]:
        rows = await self._db_query("SELECT workflow_id, document FROM acls")
        return {r["workflow_id"]: json.loads(r["document"]) for r in rows}

    async def save_acl(self, workflow_id: str, acl: dict) -> None:
        await self._db_execute_commit(
            "INSERT INTO acls (workflow_id, document) VALUES (?, ?) "
            "ON CONFLICT(workflow_id) DO UPDATE SET document = excluded.document",
            (workflow_id, json.dumps(acl)),
        )

    async def append_audit(self, entry: dict) -> None:
        await self._db_execute_commit(
            "INSERT INTO audit (entry) VALUES (?)", (json.dumps(entry, default=str),)
        )

    async def read_audit(self) -> list[dict]:
        rows = await self._db_query("SELECT entry FROM audit ORDER BY seq")
        return [json.loads(r["entry"]) for r in rows]
