"""PostgreSQL implementation of the engine repository."""

from __future__ import annotations

import json
from typing import Any, Sequence

import asyncpg

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
        input_schema JSONB
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
        input_schema JSONB,
        output_schema JSONB
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        workflow_template_id TEXT NOT NULL,
        status TEXT NOT NULL,
        context JSONB NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stages (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        stage_template_id TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS activities (
        seq BIGSERIAL,
        id TEXT PRIMARY KEY,
        stage_id TEXT NOT NULL,
        activity_template_id TEXT NOT NULL,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        input_payload TEXT,
        output_payload TEXT,
        created_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
    )
    """,
)

_INSERT_STAGE = """
    INSERT INTO stages (id, workflow_id, stage_template_id, status, created_at, completed_at)
    VALUES ($1, $2, $3, $4, $5, $6)
"""

_INSERT_ACTIVITY = """
    INSERT INTO activities
        (id, stage_id, activity_template_id, name, status, input_payload, output_payload, created_at, completed_at)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
"""


def _dumps(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _loads(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


def _rows_affected(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 1"
    return int(status.split()[-1])


def _stage_args(stage: Stage) -> tuple:
    return (
        stage.id,
        stage.workflow_id,
        stage.stage_template_id,
        stage.status,
        stage.created_at,
        stage.completed_at,
    )


def _activity_args(activity: Activity) -> tuple:
    return (
        activity.id,
        activity.stage_id,
        activity.activity_template_id,
        activity.name,
        activity.status,
        activity.input_payload,
        activity.output_payload,
        activity.created_at,
        activity.completed_at,
    )


class PostgresRepository(Repository):
    """Persist templates and workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *args: Any) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(query, *args)
        finally:
            await conn.close()
        return _rows_affected(status)

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *args)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *args: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *args)
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    # Row conversion
    @staticmethod
    def _workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            id=row["id"],
            workflow_template_id=row["workflow_template_id"],
            status=row["status"],
            context=_loads(row["context"]) or {},
            version=row["version"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _stage(row: asyncpg.Record) -> Stage:
        return Stage(
            id=row["id"],
            workflow_id=row["workflow_id"],
            stage_template_id=row["stage_template_id"],
            status=row["status"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _activity(row: asyncpg.Record) -> Activity:
        return Activity(
            id=row["id"],
            stage_id=row["stage_id"],
            activity_template_id=row["activity_template_id"],
            name=row["name"],
            status=row["status"],
            input_payload=row["input_payload"],
            output_payload=row["output_payload"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _activity_template(row: asyncpg.Record) -> ActivityTemplate:
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
        await self._execute(
            """
            INSERT INTO workflow_templates (id, name, description, input_schema)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                input_schema = EXCLUDED.input_schema
            """,
            template.id,
            template.name,
            template.description,
            _dumps(template.input_schema),
        )

    async def create_stage_template(self, template: StageTemplate) -> None:
        await self._execute(
            """
            INSERT INTO stage_templates (id, workflow_template_id, name, order_index)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT (id) DO UPDATE SET
                workflow_template_id = EXCLUDED.workflow_template_id,
                name = EXCLUDED.name,
                order_index = EXCLUDED.order_index
            """,
            template.id,
            template.workflow_template_id,
            template.name,
            template.order_index,
        )

    async def create_activity_template(self, template: ActivityTemplate) -> None:
        await self._execute(
            """
            INSERT INTO activity_templates
                (id, stage_template_id, name, order_index, executor_code, input_schema, output_schema)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (id) DO UPDATE SET
                stage_template_id = EXCLUDED.stage_template_id,
                name = EXCLUDED.name,
                order_index = EXCLUDED.order_index,
                executor_code = EXCLUDED.executor_code,
                input_schema = EXCLUDED.input_schema,
                output_schema = EXCLUDED.output_schema
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
        row = await self._fetchrow(
            "SELECT id, name, description, input_schema FROM workflow_templates WHERE id = $1",
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
        row = await self._fetchrow(
            "SELECT id, workflow_template_id, name, order_index FROM stage_templates WHERE id = $1",
            template_id,
        )
        return StageTemplate(**dict(row)) if row else None

    async def list_stage_templates(
        self, workflow_template_id: str
    ) -> list[StageTemplate]:
        rows = await self._fetch(
            "SELECT id, workflow_template_id, name, order_index FROM stage_templates WHERE workflow_template_id = $1 ORDER BY order_index",
            workflow_template_id,
        )
        return [StageTemplate(**dict(r)) for r in rows]

    async def get_activity_template(self, template_id: str) -> ActivityTemplate | None:
        row = await self._fetchrow(
            "SELECT * FROM activity_templates WHERE id = $1", template_id
        )
        return self._activity_template(row) if row else None

    async def list_activity_templates(
        self, stage_template_id: str
    ) -> list[ActivityTemplate]:
        rows = await self._fetch(
            "SELECT * FROM activity_templates WHERE stage_template_id = $1 ORDER BY order_index, id",
            stage_template_id,
        )
        return [self._activity_template(r) for r in rows]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> None:
        await self._execute(
            """
            INSERT INTO workflows (id, workflow_template_id, status, context, version, created_at, updated_at)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            """,
            workflow.id,
            workflow.workflow_template_id,
            workflow.status,
            json.dumps(workflow.context),
            workflow.version,
            workflow.created_at,
            workflow.updated_at,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        return self._workflow(row) if row else None

    async def update_workflow(
        self, workflow: Workflow, expected_version: int | None = None
    ) -> bool:
        updated_at = utcnow()
        conn = await self._connect()
        try:
            new_version = await conn.fetchval(
                """
                UPDATE workflows
                SET status = $1, context = $2, version = version + 1, updated_at = $3
                WHERE id = $4 AND ($5::INTEGER IS NULL OR version = $5)
                RETURNING version
                """,
                workflow.status,
                json.dumps(workflow.context),
                updated_at,
                workflow.id,
                expected_version,
            )
        finally:
            await conn.close()
        if new_version is None:
            return False
        workflow.version = new_version
        workflow.updated_at = updated_at
        return True

    async def list_workflows(self) -> list[Workflow]:
        rows = await self._fetch("SELECT * FROM workflows ORDER BY created_at")
        return [self._workflow(r) for r in rows]

    # ------------------------------------------------------------------
    # Stages
    async def create_stage(self, stage: Stage) -> None:
        await self._execute(_INSERT_STAGE, *_stage_args(stage))

    async def get_stage(self, stage_id: str) -> Stage | None:
        row = await self._fetchrow("SELECT * FROM stages WHERE id = $1", stage_id)
        return self._stage(row) if row else None

    async def update_stage(self, stage: Stage, expected_status: str | None = None) -> bool:
        affected = await self._execute(
            """
            UPDATE stages SET status = $1, completed_at = $2
            WHERE id = $3 AND ($4::TEXT IS NULL OR status = $4)
            """,
            stage.status,
            stage.completed_at,
            stage.id,
            expected_status,
        )
        return affected == 1

    async def list_stages(self, workflow_id: str) -> list[Stage]:
        rows = await self._fetch(
            "SELECT * FROM stages WHERE workflow_id = $1 ORDER BY seq", workflow_id
        )
        return [self._stage(r) for r in rows]

    # ------------------------------------------------------------------
    # Activities
    async def create_activity(self, activity: Activity) -> None:
        await self._execute(_INSERT_ACTIVITY, *_activity_args(activity))

    async def get_activity(self, activity_id: str) -> Activity | None:
        row = await self._fetchrow("SELECT * FROM activities WHERE id = $1", activity_id)
        return self._activity(row) if row else None

    async def update_activity(
        self, activity: Activity, expected_status: str | None = None
    ) -> bool:
        affected = await self._execute(
            """
            UPDATE activities
            SET status = $1, input_payload = $2, output_payload = $3, completed_at = $4
            WHERE id = $5 AND ($6::TEXT IS NULL OR status = $6)
            """,
            activity.status,
            activity.input_payload,
            activity.output_payload,
            activity.completed_at,
            activity.id,
            expected_status,
        )
        return affected == 1

    async def list_activities(self, stage_id: str) -> list[Activity]:
        rows = await self._fetch(
            "SELECT * FROM activities WHERE stage_id = $1 ORDER BY seq", stage_id
        )
        return [self._activity(r) for r in rows]

    # ------------------------------------------------------------------
    # Atomic operations
    async def save_continuation(self, workflow: Workflow, activity: Activity) -> bool:
        updated_at = utcnow()
        conn = await self._connect()
        try:
            tx = conn.transaction()
            await tx.start()
            try:
                wf_status = await conn.execute(
                    """
                    UPDATE workflows
                    SET context = $1, status = $2, version = version + 1, updated_at = $3
                    WHERE id = $4 AND version = $5
                    """,
                    json.dumps(workflow.context),
                    workflow.status,
                    updated_at,
                    workflow.id,
                    workflow.version,
                )
                activity_status = "UPDATE 0"
                if _rows_affected(wf_status) == 1:
                    activity_status = await conn.execute(
                        """
                        UPDATE activities
                        SET status = $1, input_payload = $2, output_payload = $3, completed_at = $4
                        WHERE id = $5 AND status = $6
                        """,
                        activity.status,
                        activity.input_payload,
                        activity.output_payload,
                        activity.completed_at,
                        activity.id,
                        ACTIVITY_PENDING,
                    )
            except Exception:
                await tx.rollback()
                raise
            ok = _rows_affected(activity_status) == 1
            if ok:
                await tx.commit()
            else:
                await tx.rollback()
        finally:
            await conn.close()
        if ok:
            workflow.version += 1
            workflow.updated_at = updated_at
        return ok

    async def open_stage(self, stage: Stage, activities: Sequence[Activity]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(_INSERT_STAGE, *_stage_args(stage))
                for activity in activities:
                    await conn.execute(_INSERT_ACTIVITY, *_activity_args(activity))
        finally:
            await conn.close()
