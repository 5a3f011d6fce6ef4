import pytest

from continuum.cache import TemplateCache, TemplateNotFoundError
from continuum.models import ActivityTemplate, StageTemplate, WorkflowTemplate
from continuum.persistence import InMemoryRepository


class CountingStore(InMemoryRepository):
    """In-memory store that records template reads."""

    def __init__(self) -> None:
        super().__init__()
        self.reads: list[str] = []

    async def get_workflow_template(self, template_id):
        self.reads.append(f"workflow:{template_id}")
        return await super().get_workflow_template(template_id)

    async def get_stage_template(self, template_id):
        self.reads.append(f"stage:{template_id}")
        return await super().get_stage_template(template_id)

    async def list_stage_templates(self, workflow_template_id):
        self.reads.append(f"stages:{workflow_template_id}")
        return await super().list_stage_templates(workflow_template_id)

    async def get_activity_template(self, template_id):
        self.reads.append(f"activity:{template_id}")
        return await super().get_activity_template(template_id)

    async def list_activity_templates(self, stage_template_id):
        self.reads.append(f"activities:{stage_template_id}")
        return await super().list_activity_templates(stage_template_id)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _seed(store: CountingStore) -> None:
    await store.create_workflow_template(WorkflowTemplate(id="wf", name="Workflow"))
    await store.create_stage_template(
        StageTemplate(id="second", workflow_template_id="wf", name="Second", order_index=1)
    )
    await store.create_stage_template(
        StageTemplate(id="first", workflow_template_id="wf", name="First", order_index=0)
    )
    await store.create_activity_template(
        ActivityTemplate(id="b", stage_template_id="first", name="B", order_index=1)
    )
    await store.create_activity_template(
        ActivityTemplate(id="a", stage_template_id="first", name="A", order_index=1)
    )
    await store.create_activity_template(
        ActivityTemplate(id="c", stage_template_id="first", name="C", order_index=0)
    )


@pytest.mark.asyncio
async def test_read_through_and_hits():
    store = CountingStore()
    await _seed(store)
    cache = TemplateCache(store)

    first = await cache.get_workflow_template("wf")
    second = await cache.get_workflow_template("wf")

    assert first.name == "Workflow"
    assert second is first
    assert store.reads == ["workflow:wf"]
    stats = cache.stats()
    assert stats.hits == 1
    assert stats.misses == 1


@pytest.mark.asyncio
async def test_lists_are_ordered_and_populate_single_entries():
    store = CountingStore()
    await _seed(store)
    cache = TemplateCache(store)

    stages = await cache.get_stage_templates("wf")
    activities = await cache.get_activity_templates_for_stage("first")

    assert [s.id for s in stages] == ["first", "second"]
    assert [a.id for a in activities] == ["c", "a", "b"]

    await cache.get_stage_template("second")
    await cache.get_activity_template("a")
    assert store.reads == ["stages:wf", "activities:first"]


@pytest.mark.asyncio
async def test_not_found_is_raised_and_not_cached():
    store = CountingStore()
    cache = TemplateCache(store)

    with pytest.raises(TemplateNotFoundError) as exc:
        await cache.get_activity_template("missing")
    assert exc.value.template_id == "missing"

    await store.create_activity_template(
        ActivityTemplate(id="missing", stage_template_id="s", name="Late")
    )
    assert (await cache.get_activity_template("missing")).name == "Late"


@pytest.mark.asyncio
async def test_entries_expire_after_ttl():
    store = CountingStore()
    await _seed(store)
    clock = FakeClock()
    cache = TemplateCache(store, ttl=10, clock=clock)

    await cache.get_workflow_template("wf")
    clock.now = 9.5
    await cache.get_workflow_template("wf")
    clock.now = 10.0
    await cache.get_workflow_template("wf")

    assert store.reads == ["workflow:wf", "workflow:wf"]


@pytest.mark.asyncio
async def test_no_ttl_keeps_entries():
    store = CountingStore()
    await _seed(store)
    clock = FakeClock()
    cache = TemplateCache(store, ttl=None, clock=clock)

    await cache.get_workflow_template("wf")
    clock.now = 1e9
    await cache.get_workflow_template("wf")

    assert store.reads == ["workflow:wf"]


@pytest.mark.asyncio
async def test_invalidation():
    store = CountingStore()
    await _seed(store)
    cache = TemplateCache(store)
    await cache.preload(["wf"])
    assert cache.stats().activity_templates == 3
    store.reads.clear()

    cache.invalidate("c")
    await cache.get_activity_template("c")
    assert store.reads == ["activity:c"]

    cache.invalidate_workflow_template("wf")
    stats = cache.stats()
    assert stats.workflow_templates == 0
    assert stats.stage_templates == 0
    assert stats.activity_lists == 0
    assert stats.activity_templates == 0

    await cache.preload(["wf"])
    cache.invalidate_all()
    assert cache.stats().stage_lists == 0
    await cache.get_stage_templates("wf")
    assert store.reads.count("stages:wf") == 2
