"""Command line interface for nurture workflows and workers."""

from __future__ import annotations

import asyncio
import importlib
import json
import logging
from pathlib import Path
from typing import Any, Optional

import typer
import yaml
from pydantic import ValidationError

from .collaborators import Collaborators, DryRunDelivery, HttpxWebhookCaller, InMemoryContactStore
from .config import load_config
from .contracts import EnrollmentStatus, TriggerType, Workflow, WorkflowStatus
from .exceptions import NurtureError
from .runtime import NurtureRuntime
from .validation import ValidationResult, validate_workflow

app = typer.Typer(help="CLI for nurture marketing workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflows")
enrollment_app = typer.Typer(help="Commands for inspecting and exiting enrollments")
scheduler_app = typer.Typer(help="Commands for pausing workers and inspecting finished work")

app.add_typer(workflow_app, name="workflow")
app.add_typer(enrollment_app, name="enrollment")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    log_level: Optional[str] = typer.Option(None, help="Logging level (default from config)"),
) -> None:
    """nurture CLI entry point."""
    level = (log_level or load_config().log_level).upper()
    logging.basicConfig(
        level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


def load_collaborators(spec: Optional[str]) -> Collaborators:
    """Build collaborators from a ``module:factory`` reference.

    Without a reference, emails are logged instead of sent and contacts live
    in memory.
    """
    if not spec:
        return Collaborators(
            delivery=DryRunDelivery(),
            contacts=InMemoryContactStore(),
            webhooks=HttpxWebhookCaller(),
        )
    module_name, _, attr = spec.partition(":")
    if not attr:
        raise typer.BadParameter(f"Expected 'module:factory', got '{spec}'")
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as exc:
        raise typer.BadParameter(f"Cannot load collaborators from '{spec}': {exc}") from exc
    collaborators = factory() if callable(factory) else factory
    if not isinstance(collaborators, Collaborators):
        raise typer.BadParameter(f"'{spec}' did not produce a Collaborators instance")
    return collaborators


def _runtime(collaborators: Optional[str] = None) -> NurtureRuntime:
    return NurtureRuntime.from_config(load_config(), load_collaborators(collaborators))


def _read_definition(path: Path) -> Any:
    if not path.exists():
        typer.secho(f"File not found: {path}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    try:
        return yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        typer.secho(f"Could not parse {path}: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_result(result: ValidationResult) -> None:
    for issue in result.errors:
        where = f" [{issue.step_id}]" if issue.step_id else ""
        typer.secho(f"ERROR {issue.code}{where}: {issue.message}", fg=typer.colors.RED)
    for issue in result.warnings:
        where = f" [{issue.step_id}]" if issue.step_id else ""
        typer.secho(f"WARNING {issue.code}{where}: {issue.message}", fg=typer.colors.YELLOW)


@app.command("validate")
def validate(path: Path) -> None:
    """
    Validate a workflow definition file.

    Accepts YAML or JSON holding either a list of steps or a workflow with a
    ``steps`` key. Exits with code 1 when blocking errors are found.

    Example:
        nurture validate ./workflows/welcome.yaml
    """
    data = _read_definition(path)
    steps = data.get("steps") if isinstance(data, dict) else data
    result = validate_workflow(steps or [])
    _echo_result(result)
    if not result.is_valid:
        typer.secho("Workflow is invalid", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.secho("Workflow is valid", fg=typer.colors.GREEN)


@workflow_app.command("import")
def workflow_import(
    path: Path,
    activate: bool = typer.Option(False, help="Activate the workflow after saving"),
) -> None:
    """Save a workflow definition file to the configured repository."""
    data = _read_definition(path)
    try:
        workflow = Workflow.model_validate(data)
    except ValidationError as exc:
        typer.secho(f"Invalid workflow file: {exc}", fg=typer.colors.RED)
        raise typer.Exit(code=1)

    runtime = _runtime()

    async def _save() -> ValidationResult:
        result = await runtime.service.save_workflow(workflow)
        if activate and result.is_valid:
            result = await runtime.service.activate(workflow.id)
        return result

    result = asyncio.run(_save())
    _echo_result(result)
    typer.echo(f"Saved workflow {workflow.id}")
    if activate and not result.is_valid:
        typer.secho("Workflow saved as draft: validation failed", fg=typer.colors.RED)
        raise typer.Exit(code=1)


@workflow_app.command("list")
def workflow_list(
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show workflows in this status"),
) -> None:
    """List workflows with their trigger and status."""
    runtime = _runtime()
    workflows = asyncio.run(runtime.service.list_workflows(status=status))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.status.value}\t{wf.trigger_type.value}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str) -> None:
    """Show a workflow's steps and enrollment analytics."""
    runtime = _runtime()

    async def _load():
        workflow = await runtime.service.get_workflow(workflow_id)
        analytics = await runtime.service.get_workflow_analytics(workflow_id)
        return workflow, analytics

    try:
        workflow, analytics = asyncio.run(_load())
    except NurtureError as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=1)

    typer.echo(f"Workflow {workflow.id}: {workflow.name} ({workflow.status.value})")
    typer.echo(f"Trigger: {workflow.trigger_type.value}")
    for step in workflow.steps:
        typer.echo(f"- {step.id} [{step.type}] -> {step.next or '-'}")
    typer.echo(
        f"Enrolled: {analytics.total_enrolled}  active: {analytics.active}  "
        f"completed: {analytics.completed}  exited: {analytics.exited}  "
        f"failed: {analytics.failed}  completion: {analytics.completion_rate}%"
    )


@workflow_app.command("activate")
def workflow_activate(workflow_id: str) -> None:
    """Activate a workflow. Refused while it has validation errors."""
    runtime = _runtime()
    try:
        result = asyncio.run(runtime.service.activate(workflow_id))
    except NurtureError as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=1)
    _echo_result(result)
    if not result.is_valid:
        typer.secho("Activation refused", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} is active")


@workflow_app.command("pause")
def workflow_pause(workflow_id: str) -> None:
    """Pause a workflow. Active enrollments wait until it is resumed."""
    runtime = _runtime()
    try:
        asyncio.run(runtime.service.pause(workflow_id))
    except NurtureError as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {workflow_id} is paused")


@enrollment_app.command("list")
def enrollment_list(
    workflow_id: str,
    status: Optional[EnrollmentStatus] = typer.Option(None, help="Only show enrollments in this status"),
) -> None:
    """List a workflow's enrollments, newest first."""
    runtime = _runtime()
    enrollments = asyncio.run(runtime.service.list_enrollments(workflow_id, status=status))
    if not enrollments:
        typer.echo("No enrollments found")
        return
    for e in enrollments:
        typer.echo(f"{e.id}\t{e.contact_id}\t{e.status.value}\t{e.current_step_id}")


@enrollment_app.command("show")
def enrollment_show(enrollment_id: str) -> None:
    """Show an enrollment's state and pending work item."""
    runtime = _runtime()

    async def _load():
        enrollment = await runtime.repository.get_enrollment(enrollment_id)
        item = await runtime.queue.get(enrollment_id)
        return enrollment, item

    enrollment, item = asyncio.run(_load())
    if enrollment is None:
        typer.echo("Enrollment not found")
        raise typer.Exit(code=1)
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")
    typer.echo(f"Workflow: {enrollment.workflow_id}  contact: {enrollment.contact_id}")
    typer.echo(f"Current step: {enrollment.current_step_id}")
    if enrollment.context:
        typer.echo(f"Context: {json.dumps(enrollment.context)}")
    if enrollment.failure_reason:
        typer.echo(f"Failure: {enrollment.failure_reason}")
    if item is not None:
        typer.echo(f"Next run: {item.step_id} at {item.due_at.isoformat()} (attempts {item.attempts})")


@enrollment_app.command("exit")
def enrollment_exit(enrollment_id: str) -> None:
    """Exit an active enrollment and cancel its pending work."""
    runtime = _runtime()
    try:
        enrollment = asyncio.run(runtime.engine.exit_workflow(enrollment_id))
    except NurtureError as exc:
        typer.echo(exc.message)
        raise typer.Exit(code=1)
    typer.echo(f"Enrollment {enrollment.id}: {enrollment.status.value}")


@app.command("trigger")
def trigger(
    trigger_type: TriggerType,
    contact_id: str,
    data: Optional[str] = typer.Option(None, help="Trigger data as a JSON object"),
) -> None:
    """
    Fire a trigger and enroll the contact in every matching active workflow.

    Example:
        nurture trigger abandoned_cart contact-42 --data '{"cart_total": 80}'
    """
    try:
        trigger_data = json.loads(data) if data else {}
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--data is not valid JSON: {exc}") from exc
    runtime = _runtime()
    enrollments = asyncio.run(
        runtime.dispatcher.trigger_workflows(trigger_type, contact_id, trigger_data)
    )
    if not enrollments:
        typer.echo("No workflows matched")
        return
    for e in enrollments:
        typer.echo(f"{e.id}\t{e.workflow_id}\t{e.status.value}")


@app.command("stats")
def stats() -> None:
    """Show work queue counts."""
    runtime = _runtime()
    queue_stats = asyncio.run(runtime.scheduler.stats())
    for name, value in queue_stats.model_dump().items():
        typer.echo(f"{name}\t{value}")


@scheduler_app.command("pause")
def scheduler_pause() -> None:
    """Stop every worker sharing the queue from claiming due steps."""
    runtime = _runtime()
    asyncio.run(runtime.scheduler.pause())
    typer.echo("Scheduler paused")


@scheduler_app.command("resume")
def scheduler_resume() -> None:
    """Let workers claim due steps again."""
    runtime = _runtime()
    asyncio.run(runtime.scheduler.resume())
    typer.echo("Scheduler resumed")


@scheduler_app.command("recent")
def scheduler_recent(limit: int = typer.Option(20, help="How many items to show")) -> None:
    """List the most recently finished work items."""
    runtime = _runtime()
    records = asyncio.run(runtime.scheduler.recent(limit))
    if not records:
        typer.echo("No finished work items")
        return
    for r in records:
        outcome = "failed" if r.failed else "completed"
        typer.echo(
            f"{r.finished_at.isoformat()}\t{outcome}\t{r.enrollment_id}\t{r.step_id}\t{r.attempts}"
        )


@scheduler_app.command("clean")
def scheduler_clean() -> None:
    """Forget completed items older than a day and failed items older than a week."""
    runtime = _runtime()
    removed = asyncio.run(runtime.scheduler.clean())
    typer.echo(f"Removed {removed} finished work items")


@app.command("worker")
def worker(
    collaborators: Optional[str] = typer.Option(
        None, help="'module:factory' returning the Collaborators to use"
    ),
    lifespan: Optional[float] = typer.Option(None, help="Stop after this many seconds"),
) -> None:
    """
    Run the scheduler loop, dispatching due steps until interrupted.

    Example:
        nurture worker --collaborators myapp.nurture:build_collaborators
    """
    runtime = _runtime(collaborators)

    async def _run() -> None:
        runtime.install_signal_handlers()
        try:
            await runtime.run(lifespan=lifespan)
        finally:
            await runtime.shutdown()

    typer.echo("Starting worker")
    asyncio.run(_run())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
