"""Command line interface for operating the continuation engine."""

from __future__ import annotations

import asyncio
import importlib
import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from continuum.cache import TemplateCache
from continuum.cli_utils.templates import import_template_bundle, load_template_bundle
from continuum.config import ContinuumConfig, load_config
from continuum.contracts import (
    ContinueWorkflowRequest,
    ContinueWorkflowResponse,
    ErrorInfo,
    SkipActivityRequest,
    StartWorkflowRequest,
)
from continuum.engine import ContinuationEngine
from continuum.executors import REGISTRY
from continuum.launch import WorkflowLauncher
from continuum.persistence import Repository, get_repository

app = typer.Typer(help="CLI for continuum workflows")

# Command groups
template_app = typer.Typer(help="Commands for managing templates")
workflow_app = typer.Typer(help="Commands for running workflows")
executor_app = typer.Typer(help="Commands for inspecting executors")

app.add_typer(template_app, name="template")
app.add_typer(workflow_app, name="workflow")
app.add_typer(executor_app, name="executor")


@app.callback()
def main() -> None:
    """Continuum CLI entry point."""
    pass


def _import_executor_modules(config: ContinuumConfig) -> None:
    for module in config.engine.executor_modules:
        importlib.import_module(module)


def _services(
    repo: Repository, config: ContinuumConfig
) -> tuple[ContinuationEngine, WorkflowLauncher]:
    _import_executor_modules(config)
    cache = TemplateCache(repo, ttl=config.cache.ttl_seconds)
    engine = ContinuationEngine(
        repo, cache=cache, executor_timeout=config.engine.executor_timeout
    )
    return engine, WorkflowLauncher(repo, cache=cache)


def _fail(error: Optional[ErrorInfo]) -> None:
    if error is not None:
        typer.secho(f"{error.code.value}: {error.message}", fg=typer.colors.RED)
    raise typer.Exit(code=1)


def _echo_continuation(activity_id: str, verb: str, response: ContinueWorkflowResponse) -> None:
    typer.echo(f"Activity {activity_id} {verb}")
    if response.output_payload:
        typer.echo(f"Output: {response.output_payload}")
    if response.workflow_advanced:
        typer.echo("Workflow advanced")
    if response.next_pending_activity_id:
        typer.echo(f"Next pending activity: {response.next_pending_activity_id}")


@template_app.command("import")
def template_import(path: Path) -> None:
    """
    Import a YAML template bundle into the configured repository.

    The bundle holds a ``workflow_template`` mapping and an ordered list of
    ``stages``, each with its ``activities``.

    Example:
        continuum template import onboarding.yaml
    """
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        bundle = load_template_bundle(path)
    except (ValidationError, ValueError) as exc:
        typer.secho(f"Invalid template bundle: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    repo = get_repository()
    asyncio.run(import_template_bundle(repo, bundle))
    typer.echo(
        f"Imported workflow template {bundle.workflow_template.id} "
        f"with {len(bundle.stages)} stages"
    )


@workflow_app.command("start")
def workflow_start(
    template_id: str,
    input_payload: str = typer.Option("", "--input", help="JSON input payload"),
) -> None:
    """
    Start a workflow instance from a workflow template.

    Example:
        continuum workflow start onboarding --input '{"email": "a@b.c"}'
    """
    repo = get_repository()
    _, launcher = _services(repo, load_config())
    response = asyncio.run(
        launcher.start_workflow(
            StartWorkflowRequest(workflow_template_id=template_id, input_payload=input_payload)
        )
    )
    if not response.success:
        _fail(response.error)
    typer.echo(f"Started workflow {response.workflow_id}")
    if response.next_pending_activity_id:
        typer.echo(f"Next pending activity: {response.next_pending_activity_id}")


@workflow_app.command("continue")
def workflow_continue(
    workflow_id: str,
    activity_id: str,
    input_payload: str = typer.Option("", "--input", help="JSON input payload"),
) -> None:
    """
    Submit input for a pending activity and advance the workflow.

    Example:
        continuum workflow continue <workflow-id> <activity-id> --input '{"notes": "ok"}'
    """
    repo = get_repository()
    engine, _ = _services(repo, load_config())
    response = asyncio.run(
        engine.continue_workflow(
            ContinueWorkflowRequest(
                workflow_id=workflow_id,
                activity_id=activity_id,
                input_payload=input_payload,
            )
        )
    )
    if not response.success:
        _fail(response.error)
    _echo_continuation(activity_id, "completed", response)


@workflow_app.command("skip")
def workflow_skip(
    workflow_id: str,
    activity_id: str,
    reason: Optional[str] = typer.Option(None, help="Why the activity is skipped"),
) -> None:
    """Mark a pending activity as skipped and advance the workflow."""
    repo = get_repository()
    engine, _ = _services(repo, load_config())
    response = asyncio.run(
        engine.skip_activity(
            SkipActivityRequest(workflow_id=workflow_id, activity_id=activity_id, reason=reason)
        )
    )
    if not response.success:
        _fail(response.error)
    _echo_continuation(activity_id, "skipped", response)


@workflow_app.command("list")
def workflow_list() -> None:
    """List all workflows with their template and current status."""
    repo = get_repository()
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.workflow_template_id}\t{wf.status}")


async def _load_stages(repo: Repository, workflow_id: str) -> list[tuple]:
    stages = await repo.list_stages(workflow_id)
    return [(stage, await repo.list_activities(stage.id)) for stage in stages]


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """
    Show a workflow's context and the state of its stages and activities.

    Example:
        continuum workflow show <workflow-id>
        # Output: Workflow <id> (onboarding): running
        #         Context: {"email": "a@b.c"}
        #         Stage <stage-id>: pending
        #           - <activity-id> Collect details: pending
    """
    repo = get_repository()
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id} ({wf.workflow_template_id}): {wf.status}")
    if wf.context:
        typer.echo(f"Context: {json.dumps(wf.context, default=str)}")
    for stage, activities in asyncio.run(_load_stages(repo, workflow_id)):
        typer.echo(f"Stage {stage.id}: {stage.status}")
        for activity in activities:
            typer.echo(f"  - {activity.id} {activity.name}: {activity.status}")


@executor_app.command("list")
def executor_list() -> None:
    """List registered executor codes, including configured executor modules."""
    _import_executor_modules(load_config())
    codes = REGISTRY.codes()
    if not codes:
        typer.echo("No executors registered")
        return
    for code in codes:
        typer.echo(code)


if __name__ == "__main__":  # pragma: no cover - manual execution
    app()
