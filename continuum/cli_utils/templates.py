"""Load workflow template bundles from YAML files."""

from __future__ import annotations

from pathlib import Path
from typing import Any, List, Optional

import yaml
from pydantic import BaseModel, Field

from continuum.models import ActivityTemplate, StageTemplate, WorkflowTemplate
from continuum.persistence import Repository


class ActivityDefinition(BaseModel):
    name: str
    id: Optional[str] = None
    executor_code: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None


class StageDefinition(BaseModel):
    name: str
    id: Optional[str] = None
    order_index: Optional[int] = None
    activities: List[ActivityDefinition] = Field(default_factory=list)


class TemplateBundle(BaseModel):
    """A workflow template together with its ordered stages and activities.

    Stage and activity ids default to ``<workflow>:stage:<n>`` and
    ``<stage>:activity:<n>``; stage ``order_index`` defaults to its position.
    """

    workflow_template: WorkflowTemplate
    stages: List[StageDefinition] = Field(default_factory=list)

    def stage_templates(self) -> list[StageTemplate]:
        return [stage for stage, _ in self._expand()]

    def activity_templates(self) -> list[ActivityTemplate]:
        return [activity for _, activities in self._expand() for activity in activities]

    def _expand(self) -> list[tuple[StageTemplate, list[ActivityTemplate]]]:
        workflow_id = self.workflow_template.id
        expanded = []
        for position, stage_def in enumerate(self.stages):
            stage = StageTemplate(
                id=stage_def.id or f"{workflow_id}:stage:{position}",
                workflow_template_id=workflow_id,
                name=stage_def.name,
                order_index=(
                    stage_def.order_index if stage_def.order_index is not None else position
                ),
            )
            activities = [
                ActivityTemplate(
                    id=activity_def.id or f"{stage.id}:activity:{index}",
                    stage_template_id=stage.id,
                    name=activity_def.name,
                    order_index=index,
                    executor_code=activity_def.executor_code,
                    input_schema=activity_def.input_schema,
                    output_schema=activity_def.output_schema,
                )
                for index, activity_def in enumerate(stage_def.activities)
            ]
            expanded.append((stage, activities))
        return expanded


def load_template_bundle(path: Path) -> TemplateBundle:
    """Parse the YAML bundle at ``path``.

    Raises:
        ValueError: If the file does not hold a mapping or stage order indexes
            are not unique.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"{path} does not contain a template bundle")
    bundle = TemplateBundle(**data)

    indexes = [stage.order_index for stage in bundle.stage_templates()]
    if len(indexes) != len(set(indexes)):
        raise ValueError("stage order_index values must be unique")
    return bundle


async def import_template_bundle(repository: Repository, bundle: TemplateBundle) -> None:
    """Persist every template in ``bundle``."""
    await repository.create_workflow_template(bundle.workflow_template)
    for stage in bundle.stage_templates():
        await repository.create_stage_template(stage)
    for activity in bundle.activity_templates():
        await repository.create_activity_template(activity)
