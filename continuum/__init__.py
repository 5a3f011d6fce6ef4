"""Continuum: workflow continuation engine."""

from .cache import TemplateCache, TemplateNotFoundError
from .contracts import (
    ContinuationError,
    ContinueWorkflowRequest,
    ContinueWorkflowResponse,
    ErrorCode,
    ErrorInfo,
    SkipActivityRequest,
    StartWorkflowRequest,
    StartWorkflowResponse,
)
from .engine import ContinuationEngine
from .executors import REGISTRY, ExecutorRegistry, executor, register_executor
from .launch import WorkflowLauncher
from .persistence import get_repository
from .schema import SchemaProcessor

__version__ = "0.1.0"
__all__ = [
    "ContinuationEngine",
    "ContinuationError",
    "ContinueWorkflowRequest",
    "ContinueWorkflowResponse",
    "ErrorCode",
    "ErrorInfo",
    "ExecutorRegistry",
    "REGISTRY",
    "SchemaProcessor",
    "SkipActivityRequest",
    "StartWorkflowRequest",
    "StartWorkflowResponse",
    "TemplateCache",
    "TemplateNotFoundError",
    "WorkflowLauncher",
    "executor",
    "get_repository",
    "register_executor",
]
