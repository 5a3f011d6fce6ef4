"""In-memory implementation of the engine repository."""

from __future__ import annotations

from typing import Dict, Sequence, TypeVar

from pydantic import BaseModel

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

ModelT = TypeVar("ModelT", bound=BaseModel)


def _copy(record: ModelT) -> ModelT:
    return record.model_copy(deep=True)


class InMemoryRepository(Repository):
    """Store templates and workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are copied on the way in and
    out so callers never share state with the store.
    """

    def __init__(self) -> None:
        self._workflow_templates: Dict[str, WorkflowTemplate] = {}
        self._stage_templates: Dict[str, StageTemplate] = {}
        self._activity_templates: Dict[str, ActivityTemplate] = {}
        self._workflows: Dict[str, Workflow] = {}
        self._stages: Dict[str, Stage] = {}
        self._activities: Dict[str, Activity] = {}

    # ------------------------------------------------------------------
    # Templates
    async def create_workflow_template(self, template: WorkflowTemplate) -> None:
        self._workflow_templates[template.id] = _copy(template)

    async def create_stage_template(self, template: StageTemplate) -> None:
        self._stage_templates[template.id] = _copy(template)

    async def create_activity_template(self, template: ActivityTemplate) -> None:
        self._activity_templates[template.id] = _copy(template)

    async def get_workflow_template(self, template_id: str) -> WorkflowTemplate | None:
        template = self._workflow_templates.get(template_id)
        return _copy(template) if template else None

    async def get_stage_template(self, template_id: str) -> StageTemplate | None:
        template = self._stage_templates.get(template_id)
        return _copy(template) if template else None

    async def list_stage_templates(
        self, workflow_template_id: str
    ) -> list[StageTemplate]:
        return [
            _copy(t)
            for t in self._stage_templates.values()
            if t.workflow_template_id == workflow_template_id
        ]

    async def get_activity_template(self, template_id: str) -> ActivityTemplate | None:
        template = self._activity_templates.get(template_id)
        return _copy(template) if template else None

    async def list_activity_templates(
        self, stage_template_id: str
    ) -> list[ActivityTemplate]:
        return [
            _copy(t)
            for t in self._activity_templates.values()
            if t.stage_template_id == stage_template_id
        ]

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = _copy(workflow)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return _copy(wf) if wf else None

    async def update_workflow(
        self, workflow: Workflow, expected_version: int | None = None
    ) -> bool:
        stored = self._workflows.get(workflow.id)
        if stored is None:
            return False
        if expected_version is not None and stored.version != expected_version:
            return False
        workflow.version = stored.version + 1
        workflow.updated_at = utcnow()
        self._workflows[workflow.id] = _copy(workflow)
        return True

    async def list_workflows(self) -> list[Workflow]:
        return [_copy(wf) for wf in self._workflows.values()]

    # ------------------------------------------------------------------
    # Stages
    async def create_stage(self, stage: Stage) -> None:
        self._stages[stage.id] = _copy(stage)

    async def get_stage(self, stage_id: str) -> Stage | None:
        stage = self._stages.get(stage_id)
        return _copy(stage) if stage else None

    async def update_stage(self, stage: Stage, expected_status: str | None = None) -> bool:
        stored = self._stages.get(stage.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._stages[stage.id] = _copy(stage)
        return True

    async def list_stages(self, workflow_id: str) -> list[Stage]:
        return [_copy(s) for s in self._stages.values() if s.workflow_id == workflow_id]

    # ------------------------------------------------------------------
    # Activities
    async def create_activity(self, activity: Activity) -> None:
        self._activities[activity.id] = _copy(activity)

    async def get_activity(self, activity_id: str) -> Activity | None:
        activity = self._activities.get(activity_id)
        return _copy(activity) if activity else None

    async def update_activity(
        self, activity: Activity, expected_status: str | None = None
    ) -> bool:
        stored = self._activities.get(activity.id)
        if stored is None:
            return False
        if expected_status is not None and stored.status != expected_status:
            return False
        self._activities[activity.id] = _copy(activity)
        return True

    async def list_activities(self, stage_id: str) -> list[Activity]:
        return [_copy(a) for a in self._activities.values() if a.stage_id == stage_id]

    # ------------------------------------------------------------------
    # Atomic operations
    async def save_continuation(self, workflow: Workflow, activity: Activity) -> bool:
        stored_wf = self._workflows.get(workflow.id)
        stored_activity = self._activities.get(activity.id)
        if stored_wf is None or stored_activity is None:
            return False
        if stored_wf.version != workflow.version:
            return False
        if stored_activity.status != ACTIVITY_PENDING:
            return False
        workflow.version += 1
        workflow.updated_at = utcnow()
        self._workflows[workflow.id] = _copy(workflow)
        self._activities[activity.id] = _copy(activity)
        return True

    async def open_stage(self, stage: Stage, activities: Sequence[Activity]) -> None:
        self._stages[stage.id] = _copy(stage)
        for activity in activities:
            self._activities[activity.id] = _copy(activity)
