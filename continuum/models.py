"""Template and instance records handled by the continuation engine."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from .constants import ACTIVITY_PENDING, STAGE_PENDING, WORKFLOW_PENDING


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Templates: immutable definitions authored at design time


class WorkflowTemplate(BaseModel):
    """Reusable workflow definition."""

    id: str
    name: str
    description: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None


class StageTemplate(BaseModel):
    """One stage of a workflow template, ordered by ``order_index``."""

    id: str
    workflow_template_id: str
    name: str
    order_index: int


class ActivityTemplate(BaseModel):
    """Unit of work declared inside a stage template."""

    id: str
    stage_template_id: str
    name: str
    order_index: int = 0
    executor_code: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None


# ---------------------------------------------------------------------------
# Instances: mutable records created when a workflow runs


class Workflow(BaseModel):
    """Running workflow instance and its accumulated context."""

    id: str
    workflow_template_id: str
    status: str = WORKFLOW_PENDING
    context: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Stage(BaseModel):
    """Stage entered by a workflow instance."""

    id: str
    workflow_id: str
    stage_template_id: str
    status: str = STAGE_PENDING
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


class Activity(BaseModel):
    """Unit of work inside a stage instance."""

    id: str
    stage_id: str
    activity_template_id: str
    name: str = ""
    status: str = ACTIVITY_PENDING
    input_payload: Optional[str] = None
    output_payload: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
