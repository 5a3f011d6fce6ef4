"""Continuation engine behaviour over the in-memory repository."""

import asyncio
import json
from datetime import datetime
from pathlib import Path

import pytest

from continuum.cli_utils.templates import import_template_bundle, load_template_bundle
from continuum.constants import (
    ACTIVITY_COMPLETED,
    ACTIVITY_PENDING,
    ACTIVITY_SKIPPED,
    STAGE_COMPLETED,
    STAGE_PENDING,
    WORKFLOW_COMPLETED,
    WORKFLOW_RUNNING,
)
from continuum.contracts import (
    ContinueWorkflowRequest,
    ErrorCode,
    SkipActivityRequest,
    StartWorkflowRequest,
)
from continuum.engine import ContinuationEngine
from continuum.executors import ExecutorRegistry
from continuum.launch import WorkflowLauncher
from continuum.models import Activity, ActivityTemplate, Stage, StageTemplate, Workflow
from continuum.persistence import InMemoryRepository, SQLiteRepository

FIXTURE = Path(__file__).parent / "fixtures" / "onboarding.yaml"


def _score(data):
    amount = data["amount"]
    return {"score": amount // 10, "approved": amount >= 100, "internal": "not merged"}


def _registry(score=_score) -> ExecutorRegistry:
    registry = ExecutorRegistry()
    registry.register("test.score", score)
    return registry


async def _start(repo, registry=None, executor_timeout=30.0):
    await import_template_bundle(repo, load_template_bundle(FIXTURE))
    engine = ContinuationEngine(
        repo, registry=registry if registry is not None else _registry(), executor_timeout=executor_timeout
    )
    launcher = WorkflowLauncher(repo, cache=engine.cache)
    response = await launcher.start_workflow(
        StartWorkflowRequest(
            workflow_template_id="onboarding",
            input_payload=json.dumps({"email": "ada@example.com"}),
        )
    )
    assert response.success, response.error
    return engine, response.workflow_id


async def _activity(repo, workflow_id, template_id) -> Activity:
    for stage in await repo.list_stages(workflow_id):
        for activity in await repo.list_activities(stage.id):
            if activity.activity_template_id == template_id:
                return activity
    raise AssertionError(f"no activity for template {template_id}")


async def _continue(engine, workflow_id, activity_id, payload=None):
    return await engine.continue_workflow(
        ContinueWorkflowRequest(
            workflow_id=workflow_id,
            activity_id=activity_id,
            input_payload=json.dumps(payload) if payload is not None else "",
        )
    )


async def _finish_intake(engine, repo, workflow_id):
    review = await _activity(repo, workflow_id, "review-notes")
    phone = await _activity(repo, workflow_id, "collect-phone")
    await _continue(engine, workflow_id, review.id, {"notes": "ok"})
    return await _continue(engine, workflow_id, phone.id, {"phone": 5551234})


@pytest.mark.asyncio
async def test_continue_without_executor_points_to_next_pending_activity():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")
    phone = await _activity(repo, workflow_id, "collect-phone")

    response = await _continue(engine, workflow_id, review.id, {"notes": "ok"})

    assert response.success
    assert response.error is None
    assert response.output_payload is None
    assert response.workflow_advanced is False
    assert response.next_pending_activity_id == phone.id

    stored = await repo.get_activity(review.id)
    assert stored.status == ACTIVITY_COMPLETED
    assert stored.input_payload == json.dumps({"notes": "ok"})
    assert stored.completed_at is not None
    wf = await repo.get_workflow(workflow_id)
    assert wf.context == {"email": "ada@example.com", "notes": "ok"}
    stage = await repo.get_stage(review.stage_id)
    assert stage.status == STAGE_PENDING


@pytest.mark.asyncio
async def test_completing_stage_opens_next_stage():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)

    response = await _finish_intake(engine, repo, workflow_id)

    assert response.success
    assert response.workflow_advanced is True
    stages = await repo.list_stages(workflow_id)
    assert [s.stage_template_id for s in stages] == ["intake", "scoring"]
    assert stages[0].status == STAGE_COMPLETED
    assert stages[0].completed_at is not None
    assert stages[1].status == STAGE_PENDING
    scoring = await repo.list_activities(stages[1].id)
    assert [a.status for a in scoring] == [ACTIVITY_PENDING]
    assert response.next_pending_activity_id == scoring[0].id

    wf = await repo.get_workflow(workflow_id)
    assert wf.status == WORKFLOW_RUNNING
    assert wf.context["phone"] == "5551234"


@pytest.mark.asyncio
async def test_last_activity_completes_workflow():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")

    response = await _continue(engine, workflow_id, score.id, {"amount": "150"})

    assert response.success
    assert response.workflow_advanced is True
    assert response.next_pending_activity_id is None
    assert json.loads(response.output_payload) == {
        "score": 15,
        "approved": True,
        "internal": "not merged",
    }

    wf = await repo.get_workflow(workflow_id)
    assert wf.status == WORKFLOW_COMPLETED
    assert wf.context["amount"] == 150
    assert wf.context["score"] == 15
    assert wf.context["approved"] is True
    assert "internal" not in wf.context
    # no successor stage was opened
    assert len(await repo.list_stages(workflow_id)) == 2
    stored = await repo.get_activity(score.id)
    assert stored.output_payload == response.output_payload


@pytest.mark.asyncio
async def test_resubmitting_completed_activity_is_rejected_without_writes():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")
    await _continue(engine, workflow_id, review.id, {"notes": "ok"})
    before = await repo.get_workflow(workflow_id)
    activity_before = await repo.get_activity(review.id)

    response = await _continue(engine, workflow_id, review.id, {"notes": "again"})

    assert not response.success
    assert response.error.code == ErrorCode.INVALID_ACTIVITY_STATE
    after = await repo.get_workflow(workflow_id)
    assert after.version == before.version
    assert after.context == before.context
    assert await repo.get_activity(review.id) == activity_before


@pytest.mark.asyncio
async def test_context_keys_survive_every_continuation():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")
    phone = await _activity(repo, workflow_id, "collect-phone")

    steps = [(review.id, {"notes": "first"}), (phone.id, {"phone": "1", "notes": "second"})]
    for activity_id, payload in steps:
        before = (await repo.get_workflow(workflow_id)).context
        response = await _continue(engine, workflow_id, activity_id, payload)
        assert response.success
        after = (await repo.get_workflow(workflow_id)).context
        assert set(before) <= set(after)

    assert (await repo.get_workflow(workflow_id)).context["notes"] == "second"


@pytest.mark.asyncio
async def test_invalid_input_leaves_activity_pending():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")

    missing = await _continue(engine, workflow_id, review.id, {"other": 1})
    assert missing.error.code == ErrorCode.VALIDATION_FAILED
    assert "notes" in missing.error.message

    malformed = await engine.continue_workflow(
        ContinueWorkflowRequest(
            workflow_id=workflow_id, activity_id=review.id, input_payload="{not json"
        )
    )
    assert malformed.error.code == ErrorCode.VALIDATION_FAILED

    assert (await repo.get_activity(review.id)).status == ACTIVITY_PENDING
    assert (await repo.get_workflow(workflow_id)).context == {"email": "ada@example.com"}


@pytest.mark.asyncio
async def test_malformed_json_fails_validation_only_when_schema_declared():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")
    phone = await _activity(repo, workflow_id, "collect-phone")
    await repo.create_activity_template(
        ActivityTemplate(id="free-form", stage_template_id="intake", name="Free form")
    )
    await repo.open_stage(
        Stage(id="extra", workflow_id=workflow_id, stage_template_id="intake"),
        [Activity(id="free", stage_id="extra", activity_template_id="free-form")],
    )

    responses = [
        await engine.continue_workflow(
            ContinueWorkflowRequest(
                workflow_id=workflow_id, activity_id=activity_id, input_payload="{not json"
            )
        )
        for activity_id in (review.id, phone.id, "free")
    ]

    assert [r.error.code for r in responses] == [
        ErrorCode.VALIDATION_FAILED,
        ErrorCode.VALIDATION_FAILED,
        ErrorCode.INVALID_INPUT,
    ]
    assert (await repo.get_activity(review.id)).status == ACTIVITY_PENDING
    assert (await repo.get_activity("free")).status == ACTIVITY_PENDING


@pytest.mark.asyncio
async def test_activity_lookup_errors():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")

    unknown = await _continue(engine, workflow_id, "no-such-activity", {})
    assert unknown.error.code == ErrorCode.ACTIVITY_NOT_FOUND

    foreign = await _continue(engine, "other-workflow", review.id, {"notes": "ok"})
    assert foreign.error.code == ErrorCode.ACTIVITY_NOT_FOUND
    assert (await repo.get_activity(review.id)).status == ACTIVITY_PENDING


@pytest.mark.asyncio
async def test_missing_workflow_and_template():
    repo = InMemoryRepository()
    await import_template_bundle(repo, load_template_bundle(FIXTURE))
    engine = ContinuationEngine(repo, registry=_registry())

    await repo.open_stage(
        Stage(id="ghost-stage", workflow_id="ghost", stage_template_id="intake"),
        [Activity(id="ghost-activity", stage_id="ghost-stage", activity_template_id="review-notes")],
    )
    await repo.open_stage(
        Stage(id="orphan-stage", workflow_id="ghost", stage_template_id="intake"),
        [Activity(id="orphan-activity", stage_id="orphan-stage", activity_template_id="gone")],
    )

    no_workflow = await _continue(engine, "ghost", "ghost-activity", {"notes": "ok"})
    assert no_workflow.error.code == ErrorCode.WORKFLOW_NOT_FOUND

    no_template = await _continue(engine, "ghost", "orphan-activity", {})
    assert no_template.error.code == ErrorCode.TEMPLATE_NOT_FOUND


@pytest.mark.asyncio
async def test_unregistered_executor_changes_nothing():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo, registry=ExecutorRegistry())
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")
    before = await repo.get_workflow(workflow_id)

    response = await _continue(engine, workflow_id, score.id, {"amount": 10})

    assert response.error.code == ErrorCode.EXECUTOR_NOT_FOUND
    assert "test.score" in response.error.message
    assert (await repo.get_activity(score.id)).status == ACTIVITY_PENDING
    assert (await repo.get_workflow(workflow_id)).context == before.context


@pytest.mark.asyncio
async def test_executor_failure_is_reported():
    def _boom(data):
        raise RuntimeError("scoring service unavailable")

    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo, registry=_registry(_boom))
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")

    response = await _continue(engine, workflow_id, score.id, {"amount": 10})

    assert response.error.code == ErrorCode.EXECUTION_FAILED
    assert "scoring service unavailable" in response.error.message
    assert (await repo.get_activity(score.id)).status == ACTIVITY_PENDING
    assert "amount" not in (await repo.get_workflow(workflow_id)).context


@pytest.mark.asyncio
async def test_executor_timeout_is_reported():
    async def _slow(data):
        await asyncio.sleep(5)
        return {"score": 1}

    repo = InMemoryRepository()
    engine, workflow_id = await _start(
        repo, registry=_registry(_slow), executor_timeout=0.05
    )
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")

    response = await _continue(engine, workflow_id, score.id, {"amount": 10})

    assert response.error.code == ErrorCode.EXECUTION_FAILED
    assert "timed out" in response.error.message
    assert (await repo.get_activity(score.id)).status == ACTIVITY_PENDING


@pytest.mark.asyncio
async def test_unresolvable_output_is_not_merged():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo, registry=_registry(lambda data: {"approved": True}))
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")
    before = await repo.get_workflow(workflow_id)

    response = await _continue(engine, workflow_id, score.id, {"amount": 10})

    assert response.error.code == ErrorCode.SCHEMA_RESOLUTION_FAILED
    after = await repo.get_workflow(workflow_id)
    assert after.context == before.context
    assert after.version == before.version


@pytest.mark.asyncio
async def test_concurrent_continuations_within_one_engine():
    calls = []

    async def _counting(data):
        calls.append(data)
        await asyncio.sleep(0.01)
        return {"score": 1}

    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo, registry=_registry(_counting))
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")

    results = await asyncio.gather(
        _continue(engine, workflow_id, score.id, {"amount": 10}),
        _continue(engine, workflow_id, score.id, {"amount": 20}),
    )

    assert sorted(r.success for r in results) == [False, True]
    failed = next(r for r in results if not r.success)
    assert failed.error.code == ErrorCode.INVALID_ACTIVITY_STATE
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_concurrent_continuations_across_engines():
    async def _slow_score(data):
        await asyncio.sleep(0.01)
        return {"score": data["amount"]}

    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo, registry=_registry(_slow_score))
    other = ContinuationEngine(repo, registry=_registry(_slow_score))
    await _finish_intake(engine, repo, workflow_id)
    score = await _activity(repo, workflow_id, "score-client")

    results = await asyncio.gather(
        _continue(engine, workflow_id, score.id, {"amount": 10}),
        _continue(other, workflow_id, score.id, {"amount": 20}),
    )

    winners = [r for r in results if r.success]
    losers = [r for r in results if not r.success]
    assert len(winners) == 1 and len(losers) == 1
    assert losers[0].error.code == ErrorCode.INVALID_ACTIVITY_STATE
    wf = await repo.get_workflow(workflow_id)
    assert wf.status == WORKFLOW_COMPLETED
    assert wf.context["score"] == json.loads(winners[0].output_payload)["score"]


@pytest.mark.asyncio
async def test_skip_activity_counts_towards_stage_completion():
    repo = InMemoryRepository()
    engine, workflow_id = await _start(repo)
    review = await _activity(repo, workflow_id, "review-notes")
    phone = await _activity(repo, workflow_id, "collect-phone")
    await _continue(engine, workflow_id, review.id, {"notes": "ok"})
    context_before = (await repo.get_workflow(workflow_id)).context

    response = await engine.skip_activity(
        SkipActivityRequest(workflow_id=workflow_id, activity_id=phone.id, reason="no phone")
    )

    assert response.success
    assert response.workflow_advanced is True
    assert json.loads(response.output_payload) == {"skipped": True, "reason": "no phone"}
    assert (await repo.get_activity(phone.id)).status == ACTIVITY_SKIPPED
    assert (await repo.get_workflow(workflow_id)).context == context_before
    assert len(await repo.list_stages(workflow_id)) == 2

    again = await engine.skip_activity(
        SkipActivityRequest(workflow_id=workflow_id, activity_id=phone.id)
    )
    assert again.error.code == ErrorCode.INVALID_ACTIVITY_STATE


@pytest.mark.asyncio
async def test_executor_output_without_output_schema_is_not_merged():
    repo = InMemoryRepository()
    await repo.create_stage_template(
        StageTemplate(id="only", workflow_template_id="wf", name="Only", order_index=0)
    )
    await repo.create_activity_template(
        ActivityTemplate(
            id="echo",
            stage_template_id="only",
            name="Echo",
            executor_code="core.echo",
            input_schema={"value": {"type": "int"}},
        )
    )
    await repo.create_workflow(Workflow(id="w1", workflow_template_id="wf", context={"a": 1}))
    await repo.open_stage(
        Stage(id="s1", workflow_id="w1", stage_template_id="only"),
        [Activity(id="a1", stage_id="s1", activity_template_id="echo")],
    )
    engine = ContinuationEngine(repo)

    response = await _continue(engine, "w1", "a1", {"value": "3"})

    assert response.success
    assert json.loads(response.output_payload) == {"value": 3}
    wf = await repo.get_workflow("w1")
    assert wf.context == {"a": 1, "value": 3}
    assert wf.status == WORKFLOW_COMPLETED


@pytest.mark.asyncio
async def test_full_run_on_sqlite(tmp_path):
    repo = SQLiteRepository(tmp_path / "engine.db")
    try:
        engine, workflow_id = await _start(repo)
        await _finish_intake(engine, repo, workflow_id)
        score = await _activity(repo, workflow_id, "score-client")

        response = await _continue(engine, workflow_id, score.id, {"amount": 90})
        duplicate = await _continue(engine, workflow_id, score.id, {"amount": 90})
    finally:
        repo.close()

    assert response.success and response.workflow_advanced
    assert duplicate.error.code == ErrorCode.INVALID_ACTIVITY_STATE
    reopened = SQLiteRepository(tmp_path / "engine.db")
    try:
        wf = await reopened.get_workflow(workflow_id)
    finally:
        reopened.close()
    assert wf.status == WORKFLOW_COMPLETED
    assert wf.context["score"] == 9
    assert wf.context["approved"] is False


@pytest.mark.asyncio
async def test_unserializable_executor_output_fails_on_sqlite(tmp_path):
    registry = ExecutorRegistry()
    registry.register("test.clock", lambda data: {"when": datetime(2024, 1, 1)})
    repo = SQLiteRepository(tmp_path / "engine.db")
    try:
        await repo.create_stage_template(
            StageTemplate(id="only", workflow_template_id="wf", name="Only", order_index=0)
        )
        await repo.create_activity_template(
            ActivityTemplate(
                id="clock",
                stage_template_id="only",
                name="Clock",
                executor_code="test.clock",
                output_schema={"when": {}},
            )
        )
        await repo.create_workflow(
            Workflow(id="w1", workflow_template_id="wf", context={"a": 1})
        )
        await repo.open_stage(
            Stage(id="s1", workflow_id="w1", stage_template_id="only"),
            [Activity(id="a1", stage_id="s1", activity_template_id="clock")],
        )
        engine = ContinuationEngine(repo, registry=registry)

        response = await _continue(engine, "w1", "a1")

        activity = await repo.get_activity("a1")
        wf = await repo.get_workflow("w1")
    finally:
        repo.close()

    assert not response.success
    assert response.error.code == ErrorCode.EXECUTION_FAILED
    assert "JSON serializable" in response.error.message
    assert activity.status == ACTIVITY_PENDING
    assert wf.context == {"a": 1}
    assert wf.version == 0
