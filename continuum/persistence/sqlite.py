"""SQLite implementation of the engine repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Sequence

from ..constants import ACTIVITY_PENDING
from ..models import (
    Activity,
    ActivityTemplate,
    Stage,
    StageTemplate,
    Workflow,
    WorkflowTemplate,
    utcnow,
)
from .repository import Repository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflow_templates (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT,
        input_schema TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stage_templates (
        id TEXT PRIMARY KEY,
        workflow_template_id TEXT NOT NULL,
        name TEXT NOT NULL,
        order_index INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activity_templates (
        id TEXT PRIMARY KEY,
        stage_template_id TEXT NOT NULL,
        name TEXT NOT NULL,
        order_index INTEGER NOT NULL DEFAULT 0,
        executor_code TEXT,
        input_schema TEXT,
        output_schema TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        workflow_template_id TEXT NOT NULL,
        status TEXT NOT NULL,
        context TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stages (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        stage_template_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activities (
        id TEXT PRIMARY KEY,
        stage_id TEXT NOT NULL,
        activity_template_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        input_payload TEXT,
        output_payload TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
)


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: str | None) -> Any:
    return json.loads(value) if value else None


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository(Repository):
    """Persist templates and workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        # autocommit; multi-statement writes open explicit transactions
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            for statement in _SCHEMA:
                cur.execute(statement)

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _transaction(self, operations: Callable[[sqlite3.Cursor], bool]) -> bool:
        """Run ``operations`` in one transaction; roll back unless it returns True."""
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                ok = operations(cur)
            except Exception:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT" if ok else "ROLLBACK")
            return ok

    # ------------------------------------------------------------------
    # Row conversion
    @staticmethod
    def _workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            workflow_template_id=row["workflow_template_id"],
            status=row["status"],
            context=_loads(row["context"]) or {},
            version=row["version"],
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _stage(row: sqlite3.Row) -> Stage:
        return Stage(
            id=row["id"],
            workflow_id=row["workflow_id"],
            stage_template_id=row["stage_template_id"],
            status=row["status"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _activity(row: sqlite3.Row) -> Activity:
        return Activity(
            id=row["id"],
            stage_id=row["stage_id"],
            activity_template_id=row["activity_template_id"],
            name=row["name"],
            status=row["status"],
            input_payload=row["input_payload"],
            output_payload=row["output_payload"],
            created_at=_parse_ts(row["created_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    @staticmethod
    def _activity_template(row: sqlite3.Row) -> ActivityTemplate:
        return ActivityTemplate(
            id=row["id"],
            stage_template_id=row["stage_template_id"],
            name=row["name"],
            order_index=row["order_index"],
            executor_code=row["executor_code"],
            input_schema=_loads(row["input_schema"]),
            output_schema=_loads(row["output_schema"]),
        )

    # ------------------------------------------------------------------
    # Templates
    async def create_workflow_template(self, template: WorkflowTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO workflow_templates (id, name, description, input_schema) VALUES (?, ?, ?, ?)",
            template.id,
            template.name,
            template.description,
            _dumps(template.input_schema),
        )

    async def create_stage_template(self, template: StageTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            "INSERT OR REPLACE INTO stage_templates (id, workflow_template_id, name, order_index) VALUES (?, ?, ?, ?)",
            template.id,
            template.workflow_template_id,
            template.name,
            template.order_index,
        )

    async def create_activity_template(self, template: ActivityTemplate) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO activity_templates
                (id, stage_template_id, name, order_index, executor_code, input_schema, output_schema)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            template.id,
            template.stage_template_id,
            template.name,
            template.order_index,
            template.executor_code,
            _dumps(template.input_schema),
            _dumps(template.output_schema),
        )

    async def get_workflow_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, name, description, input_schema FROM workflow_templates WHERE id = ?",
            template_id,
        )
        if not row:
            return None
        return WorkflowTemplate(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            input_schema=_loads(row["input_schema"]),
        )

    async def get_stage_template(self, template_id: str) -> StageTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT id, workflow_template_id, name, order_index FROM stage_templates WHERE id = ?",
            template_id,
        )
        return StageTemplate(**dict(row)) if row else None

    async def list_stage_templates(
        self, workflow_template_id: str
    ) -> list[StageTemplate]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT id, workflow_template_id, name, order_index FROM stage_templates WHERE workflow_template_id = ? ORDER BY order_index",
            workflow_template_id,
        )
        return [StageTemplate(**dict(r)) for r in rows]

    async def get_activity_template(self, template_id: str) -> ActivityTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM activity_templates WHERE id = ?",
            template_id,
        )
        return self._activity_template(row) if row else None

    async def list_activity_templates(
        self, stage_template_id: str
    ) -> list[ActivityTemplate]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM activity_templates WHERE stage_template_id = ? ORDER BY order_index, id",
            stage_template_id,
        )
        return [self._activity_template(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, workflow_template_id, status, context, version, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            workflow.id,
            workflow.workflow_template_id,
            workflow.status,
            json.dumps(workflow.context),
            workflow.version,
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return self._workflow(row) if row else None

    async def update_workflow(
        self, workflow: Workflow, expected_version: int | None = None
    ) -> bool:
        updated_at = utcnow()
        versions: list[int] = []

        def _update(cur: sqlite3.Cursor) -> bool:
            cur.execute("SELECT version FROM workflows WHERE id = ?", (workflow.id,))
            row = cur.fetchone()
            if row is None:
                return False
            if expected_version is not None and row["version"] != expected_version:
                return False
            cur.execute(
                "UPDATE workflows SET status = ?, context = ?, version = ?, updated_at = ? WHERE id = ?",
                (
                    workflow.status,
                    json.dumps(workflow.context),
                    row["version"] + 1,
                    _ts(updated_at),
                    workflow.id,
                ),
            )
            versions.append(row["version"] + 1)
            return True

        ok = await asyncio.to_thread(self._transaction, _update)
        if ok:
            workflow.version = versions[0]
            workflow.updated_at = updated_at
        return ok

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflows ORDER BY created_at"
        )
        return [self._workflow(r) for r in rows]

    # ------------------------------------------------------------------
    # Stages
    @staticmethod
    def _insert_stage(cur: sqlite3.Cursor, stage: Stage) -> None:
        cur.execute(
            """
            INSERT INTO stages (id, workflow_id, stage_template_id, status, created_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                stage.id,
                stage.workflow_id,
                stage.stage_template_id,
                stage.status,
                _ts(stage.created_at),
                _ts(stage.completed_at),
            ),
        )

    async def create_stage(self, stage: Stage) -> None:
        def _create(cur: sqlite3.Cursor) -> bool:
            self._insert_stage(cur, stage)
            return True

        await asyncio.to_thread(self._transaction, _create)

    async def get_stage(self, stage_id: str) -> Stage | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM stages WHERE id = ?", stage_id
        )
        return self._stage(row) if row else None

    async def update_stage(self, stage: Stage, expected_status: str | None = None) -> bool:
        query = "UPDATE stages SET status = ?, completed_at = ? WHERE id = ?"
        params: list[Any] = [stage.status, _ts(stage.completed_at), stage.id]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        rowcount = await asyncio.to_thread(self._execute, query, *params)
        return rowcount == 1

    async def list_stages(self, workflow_id: str) -> list[Stage]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM stages WHERE workflow_id = ? ORDER BY rowid",
            workflow_id,
        )
        return [self._stage(r) for r in rows]

    # ------------------------------------------------------------------
    # Activities
    @staticmethod
    def _insert_activity(cur: sqlite3.Cursor, activity: Activity) -> None:
        cur.execute(
            """
            INSERT INTO activities
                (id, stage_id, activity_template_id, name, status, input_payload, output_payload, created_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity.id,
                activity.stage_id,
                activity.activity_template_id,
                activity.name,
                activity.status,
                activity.input_payload,
                activity.output_payload,
                _ts(activity.created_at),
                _ts(activity.completed_at),
            ),
        )

    async def create_activity(self, activity: Activity) -> None:
        def _create(cur: sqlite3.Cursor) -> bool:
            self._insert_activity(cur, activity)
            return True

        await asyncio.to_thread(self._transaction, _create)

    async def get_activity(self, activity_id: str) -> Activity | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM activities WHERE id = ?", activity_id
        )
        return self._activity(row) if row else None

    async def update_activity(
        self, activity: Activity, expected_status: str | None = None
    ) -> bool:
        query = """
            UPDATE activities
            SET status = ?, input_payload = ?, output_payload = ?, completed_at = ?
            WHERE id = ?
        """
        params: list[Any] = [
            activity.status,
            activity.input_payload,
            activity.output_payload,
            _ts(activity.completed_at),
            activity.id,
        ]
        if expected_status is not None:
            query += " AND status = ?"
            params.append(expected_status)
        rowcount = await asyncio.to_thread(self._execute, query, *params)
        return rowcount == 1

    async def list_activities(self, stage_id: str) -> list[Activity]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM activities WHERE stage_id = ? ORDER BY rowid",
            stage_id,
        )
        return [self._activity(r) for r in rows]

    # ------------------------------------------------------------------
    # Atomic operations
    async def save_continuation(self, workflow: Workflow, activity: Activity) -> bool:
        updated_at = utcnow()

        def _save(cur: sqlite3.Cursor) -> bool:
            cur.execute(
                """
                UPDATE workflows
                SET context = ?, status = ?, version = version + 1, updated_at = ?
                WHERE id = ? AND version = ?
                """,
                (
                    json.dumps(workflow.context),
                    workflow.status,
                    _ts(updated_at),
                    workflow.id,
                    workflow.version,
                ),
            )
            if cur.rowcount != 1:
                return False
            cur.execute(
                """
                UPDATE activities
                SET status = ?, input_payload = ?, output_payload = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    activity.status,
                    activity.input_payload,
                    activity.output_payload,
                    _ts(activity.completed_at),
                    activity.id,
                    ACTIVITY_PENDING,
                ),
            )
            return cur.rowcount == 1

        ok = await asyncio.to_thread(self._transaction, _save)
        if ok:
            workflow.version += 1
            workflow.updated_at = updated_at
        return ok

    async def open_stage(self, stage: Stage, activities: Sequence[Activity]) -> None:
        def _open(cur: sqlite3.Cursor) -> bool:
            self._insert_stage(cur, stage)
            for activity in activities:
                self._insert_activity(cur, activity)
            return True

        await asyncio.to_thread(self._transaction, _open)
