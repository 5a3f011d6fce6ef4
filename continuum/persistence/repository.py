"""Storage collaborators consumed by the continuation engine."""

from __future__ import annotations

from typing import Protocol, Sequence

from ..models import (
    Activity,
    ActivityTemplate,
    Stage,
    StageTemplate,
    Workflow,
    WorkflowTemplate,
)


class TemplateStore(Protocol):
    """Read access to immutable templates, plus creation for importers."""

    async def create_workflow_template(self, template: WorkflowTemplate) -> None:
        """Persist a workflow template."""

    async def create_stage_template(self, template: StageTemplate) -> None:
        """Persist a stage template."""

    async def create_activity_template(self, template: ActivityTemplate) -> None:
        """Persist an activity template."""

    async def get_workflow_template(self, template_id: str) -> WorkflowTemplate | None:
        """Retrieve a workflow template by id."""

    async def get_stage_template(self, template_id: str) -> StageTemplate | None:
        """Retrieve a stage template by id."""

    async def list_stage_templates(
        self, workflow_template_id: str
    ) -> list[StageTemplate]:
        """Return the stage templates of a workflow template."""

    async def get_activity_template(self, template_id: str) -> ActivityTemplate | None:
        """Retrieve an activity template by id."""

    async def list_activity_templates(
        self, stage_template_id: str
    ) -> list[ActivityTemplate]:
        """Return the activity templates of a stage template."""


class WorkflowStore(Protocol):
    async def create_workflow(self, workflow: Workflow) -> None:
        """Persist a new workflow instance."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve the workflow instance by id."""

    async def update_workflow(
        self, workflow: Workflow, expected_version: int | None = None
    ) -> bool:
        """Write status and context, bumping ``version``.

        When ``expected_version`` is given the write only happens if the
        stored version still matches. Returns ``True`` if a row was written.
        """

    async def list_workflows(self) -> list[Workflow]:
        """Return all persisted workflows."""


class StageStore(Protocol):
    async def create_stage(self, stage: Stage) -> None:
        """Persist a new stage instance."""

    async def get_stage(self, stage_id: str) -> Stage | None:
        """Retrieve a stage by id."""

    async def update_stage(self, stage: Stage, expected_status: str | None = None) -> bool:
        """Write the stage, optionally only if its stored status matches."""

    async def list_stages(self, workflow_id: str) -> list[Stage]:
        """Return the stages of a workflow in creation order."""


class ActivityStore(Protocol):
    async def create_activity(self, activity: Activity) -> None:
        """Persist a new activity instance."""

    async def get_activity(self, activity_id: str) -> Activity | None:
        """Retrieve an activity by id."""

    async def update_activity(
        self, activity: Activity, expected_status: str | None = None
    ) -> bool:
        """Write the activity, optionally only if its stored status matches."""

    async def list_activities(self, stage_id: str) -> list[Activity]:
        """Return the activities of a stage in creation order."""


class Repository(TemplateStore, WorkflowStore, StageStore, ActivityStore, Protocol):
    """Protocol for engine persistence backends."""

    async def save_continuation(self, workflow: Workflow, activity: Activity) -> bool:
        """Atomically persist a workflow's context and an activity's outcome.

        The context is written only if the stored workflow version equals
        ``workflow.version`` and the activity only if it is still pending.
        Either both writes happen or neither does. On success
        ``workflow.version`` is incremented.
        """

    async def open_stage(self, stage: Stage, activities: Sequence[Activity]) -> None:
        """Atomically create a stage together with its activities."""
