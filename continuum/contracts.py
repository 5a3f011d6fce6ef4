"""Request and response contracts for the continuation engine."""

from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator


class ErrorCode(str, Enum):
    """Stable codes carried by failed engine responses."""

    ACTIVITY_NOT_FOUND = "ACTIVITY_NOT_FOUND"
    INVALID_ACTIVITY_STATE = "INVALID_ACTIVITY_STATE"
    TEMPLATE_NOT_FOUND = "TEMPLATE_NOT_FOUND"
    WORKFLOW_NOT_FOUND = "WORKFLOW_NOT_FOUND"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    SCHEMA_RESOLUTION_FAILED = "SCHEMA_RESOLUTION_FAILED"
    EXECUTOR_NOT_FOUND = "EXECUTOR_NOT_FOUND"
    EXECUTION_FAILED = "EXECUTION_FAILED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"


class ContinuationError(Exception):
    """Recoverable failure of an engine step, identified by ``code``."""

    def __init__(self, code: ErrorCode, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message

    def to_error(self) -> "ErrorInfo":
        return ErrorInfo(code=self.code, message=self.message)


class ErrorInfo(BaseModel):
    code: ErrorCode
    message: str


def _require_id(value: str) -> str:
    if not value or not value.strip():
        raise ValueError("must be a non-empty string")
    return value


class ContinueWorkflowRequest(BaseModel):
    """Input submitted to advance a pending activity."""

    workflow_id: str
    activity_id: str
    input_payload: str = ""

    @field_validator("workflow_id", "activity_id")
    @classmethod
    def _ensure_ids(cls, v: str) -> str:
        return _require_id(v)


class ContinueWorkflowResponse(BaseModel):
    """Outcome of a continuation."""

    success: bool
    workflow_advanced: bool = False
    output_payload: Optional[str] = None
    next_pending_activity_id: Optional[str] = None
    error: Optional[ErrorInfo] = None

    @classmethod
    def failure(cls, exc: ContinuationError) -> "ContinueWorkflowResponse":
        return cls(success=False, error=exc.to_error())


class SkipActivityRequest(BaseModel):
    """Request to mark a pending activity as skipped."""

    workflow_id: str
    activity_id: str
    reason: Optional[str] = None

    @field_validator("workflow_id", "activity_id")
    @classmethod
    def _ensure_ids(cls, v: str) -> str:
        return _require_id(v)


class StartWorkflowRequest(BaseModel):
    """Request to launch a workflow instance from a template."""

    workflow_template_id: str
    input_payload: str = ""

    @field_validator("workflow_template_id")
    @classmethod
    def _ensure_template_id(cls, v: str) -> str:
        return _require_id(v)


class StartWorkflowResponse(BaseModel):
    success: bool
    workflow_id: Optional[str] = None
    stage_id: Optional[str] = None
    next_pending_activity_id: Optional[str] = None
    error: Optional[ErrorInfo] = None
