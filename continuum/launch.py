"""Workflow launcher creating workflow instances from templates."""

from __future__ import annotations

import logging

from .cache import TemplateCache, TemplateNotFoundError
from .constants import WORKFLOW_RUNNING
from .contracts import (
    ContinuationError,
    ErrorCode,
    StartWorkflowRequest,
    StartWorkflowResponse,
)
from .engine import enter_stage, template_not_found
from .ids import IdGenerator, UUIDGenerator
from .models import Workflow
from .persistence.repository import Repository
from .schema import SchemaProcessor

logger = logging.getLogger(__name__)


class WorkflowLauncher:
    """Service responsible for starting new workflow instances."""

    def __init__(
        self,
        repository: Repository,
        cache: TemplateCache | None = None,
        id_generator: IdGenerator | None = None,
        schema_processor: SchemaProcessor | None = None,
    ) -> None:
        self._repository = repository
        self._cache = cache or TemplateCache(repository)
        self._ids = id_generator or UUIDGenerator()
        self._schema = schema_processor or SchemaProcessor()

    async def start_workflow(self, request: StartWorkflowRequest) -> StartWorkflowResponse:
        """Create a running workflow and open its first stage.

        The validated input becomes the initial workflow context.
        """
        try:
            return await self._start(request)
        except ContinuationError as exc:
            logger.warning(
                f"Start of workflow template {request.workflow_template_id} rejected: "
                f"{exc.code.value}: {exc.message}"
            )
            return StartWorkflowResponse(success=False, error=exc.to_error())

    async def _start(self, request: StartWorkflowRequest) -> StartWorkflowResponse:
        try:
            template = await self._cache.get_workflow_template(request.workflow_template_id)
            stage_templates = await self._cache.get_stage_templates(template.id)
        except TemplateNotFoundError as exc:
            raise template_not_found(exc) from exc
        if not stage_templates:
            raise ContinuationError(
                ErrorCode.TEMPLATE_NOT_FOUND,
                f"workflow template '{template.id}' has no stages",
            )

        context = self._schema.validate_input(request.input_payload, template.input_schema)
        workflow = Workflow(
            id=self._ids.new_id(),
            workflow_template_id=template.id,
            status=WORKFLOW_RUNNING,
            context=context,
        )
        await self._repository.create_workflow(workflow)
        logger.info(f"Started workflow {workflow.id} from template {template.id}")

        try:
            stage, next_id = await enter_stage(
                self._repository, self._cache, self._ids, workflow, stage_templates[0]
            )
        except TemplateNotFoundError as exc:
            raise template_not_found(exc) from exc
        return StartWorkflowResponse(
            success=True,
            workflow_id=workflow.id,
            stage_id=stage.id,
            next_pending_activity_id=next_id,
        )
