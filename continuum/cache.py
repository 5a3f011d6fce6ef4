"""Read-through cache of workflow, stage and activity templates."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from pydantic import BaseModel

from .constants import DEFAULT_CACHE_TTL
from .models import ActivityTemplate, StageTemplate, WorkflowTemplate
from .persistence.repository import TemplateStore

logger = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    """Raised when a template is absent from storage."""

    def __init__(self, kind: str, template_id: str) -> None:
        super().__init__(f"{kind} template '{template_id}' not found")
        self.kind = kind
        self.template_id = template_id


class CacheStats(BaseModel):
    hits: int = 0
    misses: int = 0
    workflow_templates: int = 0
    stage_templates: int = 0
    stage_lists: int = 0
    activity_templates: int = 0
    activity_lists: int = 0


class TemplateCache:
    """Cache immutable templates in front of a :class:`TemplateStore`.

    Every accessor is read-through: a miss fetches from storage and stores the
    result. Entries expire after ``ttl`` seconds; ``ttl=None`` keeps them
    until invalidated. Not-found results are never cached.
    """

    def __init__(
        self,
        store: TemplateStore,
        ttl: Optional[float] = DEFAULT_CACHE_TTL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._ttl = ttl
        self._clock = clock
        self._workflow_templates: Dict[str, Tuple[float, WorkflowTemplate]] = {}
        self._stage_templates: Dict[str, Tuple[float, StageTemplate]] = {}
        self._stage_lists: Dict[str, Tuple[float, list[StageTemplate]]] = {}
        self._activity_templates: Dict[str, Tuple[float, ActivityTemplate]] = {}
        self._activity_lists: Dict[str, Tuple[float, list[ActivityTemplate]]] = {}
        self._hits = 0
        self._misses = 0

    # ------------------------------------------------------------------
    # Entry bookkeeping
    def _lookup(self, table: Dict[str, Tuple[float, Any]], key: str) -> Any:
        entry = table.get(key)
        if entry is None:
            self._misses += 1
            return None
        stored_at, value = entry
        if self._ttl is not None and self._clock() - stored_at >= self._ttl:
            del table[key]
            self._misses += 1
            return None
        self._hits += 1
        return value

    def _store_entry(self, table: Dict[str, Tuple[float, Any]], key: str, value: Any) -> None:
        table[key] = (self._clock(), value)

    # ------------------------------------------------------------------
    # Accessors
    async def get_workflow_template(self, template_id: str) -> WorkflowTemplate:
        cached = self._lookup(self._workflow_templates, template_id)
        if cached is not None:
            return cached
        logger.debug(f"Workflow template cache miss: {template_id}")
        template = await self._store.get_workflow_template(template_id)
        if template is None:
            raise TemplateNotFoundError("workflow", template_id)
        self._store_entry(self._workflow_templates, template_id, template)
        return template

    async def get_stage_templates(self, workflow_template_id: str) -> list[StageTemplate]:
        """Return the stage templates of a workflow ordered by ``order_index``."""
        cached = self._lookup(self._stage_lists, workflow_template_id)
        if cached is not None:
            return list(cached)
        logger.debug(f"Stage template list cache miss: {workflow_template_id}")
        templates = await self._store.list_stage_templates(workflow_template_id)
        templates = sorted(templates, key=lambda t: t.order_index)
        self._store_entry(self._stage_lists, workflow_template_id, templates)
        for template in templates:
            self._store_entry(self._stage_templates, template.id, template)
        return list(templates)

    async def get_stage_template(self, template_id: str) -> StageTemplate:
        cached = self._lookup(self._stage_templates, template_id)
        if cached is not None:
            return cached
        logger.debug(f"Stage template cache miss: {template_id}")
        template = await self._store.get_stage_template(template_id)
        if template is None:
            raise TemplateNotFoundError("stage", template_id)
        self._store_entry(self._stage_templates, template_id, template)
        return template

    async def get_activity_templates_for_stage(
        self, stage_template_id: str
    ) -> list[ActivityTemplate]:
        cached = self._lookup(self._activity_lists, stage_template_id)
        if cached is not None:
            return list(cached)
        logger.debug(f"Activity template list cache miss: {stage_template_id}")
        templates = await self._store.list_activity_templates(stage_template_id)
        templates = sorted(templates, key=lambda t: (t.order_index, t.id))
        self._store_entry(self._activity_lists, stage_template_id, templates)
        for template in templates:
            self._store_entry(self._activity_templates, template.id, template)
        return list(templates)

    async def get_activity_template(self, template_id: str) -> ActivityTemplate:
        cached = self._lookup(self._activity_templates, template_id)
        if cached is not None:
            return cached
        logger.debug(f"Activity template cache miss: {template_id}")
        template = await self._store.get_activity_template(template_id)
        if template is None:
            raise TemplateNotFoundError("activity", template_id)
        self._store_entry(self._activity_templates, template_id, template)
        return template

    # ------------------------------------------------------------------
    # Maintenance
    def invalidate(self, template_id: str) -> None:
        """Drop every entry keyed by ``template_id``."""
        for table in (
            self._workflow_templates,
            self._stage_templates,
            self._stage_lists,
            self._activity_templates,
            self._activity_lists,
        ):
            table.pop(template_id, None)

    def invalidate_workflow_template(self, workflow_template_id: str) -> None:
        """Drop a workflow template together with its stages and activities."""
        self._workflow_templates.pop(workflow_template_id, None)
        entry = self._stage_lists.pop(workflow_template_id, None)
        stage_ids = {t.id for t in entry[1]} if entry else set()
        stage_ids.update(
            key
            for key, (_, t) in self._stage_templates.items()
            if t.workflow_template_id == workflow_template_id
        )
        for stage_id in stage_ids:
            self._stage_templates.pop(stage_id, None)
            self._activity_lists.pop(stage_id, None)
        for key in [
            key
            for key, (_, t) in self._activity_templates.items()
            if t.stage_template_id in stage_ids
        ]:
            del self._activity_templates[key]
        logger.info(f"Invalidated cached templates for workflow {workflow_template_id}")

    def invalidate_all(self) -> None:
        self._workflow_templates.clear()
        self._stage_templates.clear()
        self._stage_lists.clear()
        self._activity_templates.clear()
        self._activity_lists.clear()

    async def preload(self, workflow_template_ids: Iterable[str]) -> None:
        """Warm the cache with the full template tree of each workflow."""
        for workflow_template_id in workflow_template_ids:
            await self.get_workflow_template(workflow_template_id)
            for stage in await self.get_stage_templates(workflow_template_id):
                await self.get_activity_templates_for_stage(stage.id)
        logger.info("Template cache preloaded")

    def stats(self) -> CacheStats:
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            workflow_templates=len(self._workflow_templates),
            stage_templates=len(self._stage_templates),
            stage_lists=len(self._stage_lists),
            activity_templates=len(self._activity_templates),
            activity_lists=len(self._activity_lists),
        )
