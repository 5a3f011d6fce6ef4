"""Continuation engine advancing workflow instances activity by activity."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Tuple

from .cache import TemplateCache, TemplateNotFoundError
from .constants import (
    ACTIVITY_COMPLETED,
    ACTIVITY_DONE_STATES,
    ACTIVITY_PENDING,
    ACTIVITY_SKIPPED,
    DEFAULT_EXECUTOR_TIMEOUT,
    STAGE_COMPLETED,
    STAGE_PENDING,
    WORKFLOW_COMPLETED,
    WORKFLOW_PENDING,
    WORKFLOW_RUNNING,
)
from .contracts import (
    ContinuationError,
    ContinueWorkflowRequest,
    ContinueWorkflowResponse,
    ErrorCode,
    SkipActivityRequest,
)
from .executors import REGISTRY, ExecutorNotFoundError, ExecutorRegistry
from .ids import IdGenerator, UUIDGenerator
from .models import Activity, ActivityTemplate, Stage, StageTemplate, Workflow, utcnow
from .persistence.repository import Repository
from .schema import SchemaProcessor
from .utils import KeyedLock

logger = logging.getLogger(__name__)


def template_not_found(exc: TemplateNotFoundError) -> ContinuationError:
    return ContinuationError(ErrorCode.TEMPLATE_NOT_FOUND, str(exc))


async def next_stage_template(
    cache: TemplateCache, workflow_template_id: str, order_index: int
) -> Optional[StageTemplate]:
    """Return the stage template ordered directly after ``order_index``."""
    for template in await cache.get_stage_templates(workflow_template_id):
        if template.order_index == order_index + 1:
            return template
    return None


async def complete_workflow(repository: Repository, workflow: Workflow) -> None:
    """Mark ``workflow`` completed without discarding concurrent context writes."""
    workflow.status = WORKFLOW_COMPLETED
    if await repository.update_workflow(workflow, expected_version=workflow.version):
        return
    fresh = await repository.get_workflow(workflow.id)
    if fresh is None:
        raise ContinuationError(
            ErrorCode.WORKFLOW_NOT_FOUND, f"workflow '{workflow.id}' not found"
        )
    fresh.status = WORKFLOW_COMPLETED
    await repository.update_workflow(fresh)
    workflow.context = fresh.context
    workflow.version = fresh.version


async def enter_stage(
    repository: Repository,
    cache: TemplateCache,
    ids: IdGenerator,
    workflow: Workflow,
    stage_template: StageTemplate,
) -> Tuple[Stage, Optional[str]]:
    """Open ``stage_template`` for ``workflow`` with one pending activity each.

    A stage template without activity templates is recorded as completed
    straight away and the workflow moves on to its successor, completing the
    workflow when there is none. Returns the last stage opened and the first
    pending activity id, if any.
    """
    current = stage_template
    while True:
        activity_templates = await cache.get_activity_templates_for_stage(current.id)
        stage = Stage(id=ids.new_id(), workflow_id=workflow.id, stage_template_id=current.id)
        activities = [
            Activity(
                id=ids.new_id(),
                stage_id=stage.id,
                activity_template_id=t.id,
                name=t.name,
            )
            for t in activity_templates
        ]
        if not activities:
            stage.status = STAGE_COMPLETED
            stage.completed_at = utcnow()
        await repository.open_stage(stage, activities)
        logger.info(
            f"Workflow {workflow.id} entered stage {current.name} ({stage.id}) "
            f"with {len(activities)} activities"
        )
        if activities:
            return stage, activities[0].id

        successor = await next_stage_template(
            cache, workflow.workflow_template_id, current.order_index
        )
        if successor is None:
            await complete_workflow(repository, workflow)
            logger.info(f"Workflow {workflow.id} completed")
            return stage, None
        current = successor


class ContinuationEngine:
    """Apply submitted input to pending activities and advance workflows.

    Continuations of one workflow are serialized in-process; writes go
    through the repository's conditional operations so that concurrent
    callers in other processes cannot complete the same activity twice or
    open the same stage twice.
    """

    def __init__(
        self,
        repository: Repository,
        registry: ExecutorRegistry | None = None,
        cache: TemplateCache | None = None,
        id_generator: IdGenerator | None = None,
        schema_processor: SchemaProcessor | None = None,
        executor_timeout: Optional[float] = DEFAULT_EXECUTOR_TIMEOUT,
    ) -> None:
        self._repository = repository
        self._registry = registry if registry is not None else REGISTRY
        self._cache = cache or TemplateCache(repository)
        self._ids = id_generator or UUIDGenerator()
        self._schema = schema_processor or SchemaProcessor()
        self._executor_timeout = executor_timeout
        self._locks = KeyedLock()

    @property
    def cache(self) -> TemplateCache:
        return self._cache

    async def continue_workflow(
        self, request: ContinueWorkflowRequest
    ) -> ContinueWorkflowResponse:
        """Validate input for a pending activity, run its executor and advance."""
        async with self._locks.hold(request.workflow_id):
            try:
                return await self._continue(request)
            except ContinuationError as exc:
                logger.warning(
                    f"Continuation of activity {request.activity_id} in workflow "
                    f"{request.workflow_id} rejected: {exc.code.value}: {exc.message}"
                )
                return ContinueWorkflowResponse.failure(exc)

    async def skip_activity(self, request: SkipActivityRequest) -> ContinueWorkflowResponse:
        """Mark a pending activity skipped and advance as if it had completed."""
        async with self._locks.hold(request.workflow_id):
            try:
                return await self._skip(request)
            except ContinuationError as exc:
                logger.warning(
                    f"Skip of activity {request.activity_id} in workflow "
                    f"{request.workflow_id} rejected: {exc.code.value}: {exc.message}"
                )
                return ContinueWorkflowResponse.failure(exc)

    # ------------------------------------------------------------------
    # Steps
    async def _continue(self, request: ContinueWorkflowRequest) -> ContinueWorkflowResponse:
        activity, stage = await self._load_pending_activity(
            request.workflow_id, request.activity_id
        )
        template = await self._activity_template(activity.activity_template_id)
        workflow = await self._load_workflow(request.workflow_id)

        validated = self._schema.validate_input(request.input_payload, template.input_schema)
        context = self._schema.merge(workflow.context, validated)

        output: Optional[Dict[str, Any]] = None
        if template.executor_code:
            output = await self._execute(template, context)
            if template.output_schema:
                resolved = self._schema.resolve(output, template.output_schema)
                context = self._schema.merge(context, resolved)
        output_payload = json.dumps(output) if output is not None else None

        workflow.context = context
        if workflow.status == WORKFLOW_PENDING:
            workflow.status = WORKFLOW_RUNNING
        activity.status = ACTIVITY_COMPLETED
        activity.input_payload = request.input_payload
        activity.output_payload = output_payload
        activity.completed_at = utcnow()
        await self._persist(workflow, activity)
        logger.info(f"Activity {activity.id} completed in workflow {workflow.id}")

        advanced, next_id = await self._advance(workflow, stage, activity.id)
        return ContinueWorkflowResponse(
            success=True,
            workflow_advanced=advanced,
            output_payload=output_payload,
            next_pending_activity_id=next_id,
        )

    async def _skip(self, request: SkipActivityRequest) -> ContinueWorkflowResponse:
        activity, stage = await self._load_pending_activity(
            request.workflow_id, request.activity_id
        )
        workflow = await self._load_workflow(request.workflow_id)

        output_payload = json.dumps({"skipped": True, "reason": request.reason})
        activity.status = ACTIVITY_SKIPPED
        activity.output_payload = output_payload
        activity.completed_at = utcnow()
        await self._persist(workflow, activity)
        logger.info(f"Activity {activity.id} skipped in workflow {workflow.id}")

        advanced, next_id = await self._advance(workflow, stage, activity.id)
        return ContinueWorkflowResponse(
            success=True,
            workflow_advanced=advanced,
            output_payload=output_payload,
            next_pending_activity_id=next_id,
        )

    async def _load_pending_activity(
        self, workflow_id: str, activity_id: str
    ) -> Tuple[Activity, Stage]:
        activity = await self._repository.get_activity(activity_id)
        stage = await self._repository.get_stage(activity.stage_id) if activity else None
        if activity is None or stage is None or stage.workflow_id != workflow_id:
            raise ContinuationError(
                ErrorCode.ACTIVITY_NOT_FOUND,
                f"activity '{activity_id}' not found in workflow '{workflow_id}'",
            )
        if activity.status != ACTIVITY_PENDING:
            raise ContinuationError(
                ErrorCode.INVALID_ACTIVITY_STATE,
                f"activity '{activity_id}' is {activity.status}, expected {ACTIVITY_PENDING}",
            )
        return activity, stage

    async def _activity_template(self, template_id: str) -> ActivityTemplate:
        try:
            return await self._cache.get_activity_template(template_id)
        except TemplateNotFoundError as exc:
            raise template_not_found(exc) from exc

    async def _load_workflow(self, workflow_id: str) -> Workflow:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise ContinuationError(
                ErrorCode.WORKFLOW_NOT_FOUND, f"workflow '{workflow_id}' not found"
            )
        return workflow

    async def _execute(
        self, template: ActivityTemplate, context: Dict[str, Any]
    ) -> Dict[str, Any]:
        code = template.executor_code
        data = self._schema.resolve(context, template.input_schema)
        try:
            impl = self._registry.get_executor(code)
        except ExecutorNotFoundError as exc:
            raise ContinuationError(ErrorCode.EXECUTOR_NOT_FOUND, str(exc)) from exc

        try:
            output = await asyncio.wait_for(
                impl.execute(data), timeout=self._executor_timeout
            )
        except asyncio.TimeoutError as exc:
            logger.error(f"Executor {code} timed out after {self._executor_timeout}s")
            raise ContinuationError(
                ErrorCode.EXECUTION_FAILED,
                f"executor '{code}' timed out after {self._executor_timeout}s",
            ) from exc
        except Exception as exc:
            logger.error(f"Executor {code} failed: {exc}")
            raise ContinuationError(
                ErrorCode.EXECUTION_FAILED, f"executor '{code}' failed: {exc}"
            ) from exc

        if not isinstance(output, dict):
            raise ContinuationError(
                ErrorCode.EXECUTION_FAILED,
                f"executor '{code}' returned {type(output).__name__}, expected an object",
            )
        try:
            json.dumps(output)
        except (TypeError, ValueError) as exc:
            raise ContinuationError(
                ErrorCode.EXECUTION_FAILED,
                f"executor '{code}' returned output that is not JSON serializable: {exc}",
            ) from exc
        return output

    async def _persist(self, workflow: Workflow, activity: Activity) -> None:
        if await self._repository.save_continuation(workflow, activity):
            return
        current = await self._repository.get_activity(activity.id)
        if current is None or current.status != ACTIVITY_PENDING:
            raise ContinuationError(
                ErrorCode.INVALID_ACTIVITY_STATE,
                f"activity '{activity.id}' was completed concurrently",
            )
        raise ContinuationError(
            ErrorCode.CONCURRENT_MODIFICATION,
            f"workflow '{workflow.id}' was modified concurrently; retry the request",
        )

    async def _advance(
        self, workflow: Workflow, stage: Stage, activity_id: str
    ) -> Tuple[bool, Optional[str]]:
        """Complete the stage when all its activities are done.

        Returns whether a stage or workflow transition happened and the id of
        the next pending activity, if one is known.
        """
        activities = await self._repository.list_activities(stage.id)
        if any(a.status not in ACTIVITY_DONE_STATES for a in activities):
            next_id = next(
                (
                    a.id
                    for a in activities
                    if a.status == ACTIVITY_PENDING and a.id != activity_id
                ),
                None,
            )
            return False, next_id

        stage.status = STAGE_COMPLETED
        stage.completed_at = utcnow()
        if not await self._repository.update_stage(stage, expected_status=STAGE_PENDING):
            logger.info(f"Stage {stage.id} was already completed by another caller")
            return False, None
        logger.info(f"Stage {stage.id} of workflow {workflow.id} completed")

        try:
            stage_template = await self._cache.get_stage_template(stage.stage_template_id)
            successor = await next_stage_template(
                self._cache, workflow.workflow_template_id, stage_template.order_index
            )
            if successor is None:
                await complete_workflow(self._repository, workflow)
                logger.info(f"Workflow {workflow.id} completed")
                return True, None
            _, next_id = await enter_stage(
                self._repository, self._cache, self._ids, workflow, successor
            )
        except TemplateNotFoundError as exc:
            raise template_not_found(exc) from exc
        return True, next_id
