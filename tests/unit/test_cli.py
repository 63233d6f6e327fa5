import asyncio

import pytest
import typer
import yaml
from typer.testing import CliRunner

import nurture.cli as cli
from nurture.cli import app, load_collaborators
from nurture.collaborators import Collaborators, DryRunDelivery
from nurture.contracts import WorkflowStatus
from tests.fixtures.fakes import (
    CountingDelivery,
    email_step,
    make_collaborators,
    make_runtime,
    make_workflow,
    welcome_series,
)

runner = CliRunner()


@pytest.fixture
def runtime(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NURTURE_CONFIG", str(tmp_path / "config.yaml"))
    shared = make_runtime(poll_interval_seconds=0.01)
    monkeypatch.setattr(cli, "_runtime", lambda collaborators=None: shared)
    return shared


def _write(tmp_path, name, data):
    path = tmp_path / name
    path.write_text(yaml.safe_dump(data))
    return path


def test_validate_reports_errors_and_exit_code(runtime, tmp_path):
    good = _write(tmp_path, "good.yaml", {"steps": welcome_series()})
    result = runner.invoke(app, ["validate", str(good)])
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "Workflow is valid" in result.output

    bad = _write(tmp_path, "bad.yaml", [email_step("email1")])
    result = runner.invoke(app, ["validate", str(bad)])
    assert result.exit_code == 1
    assert "ERROR NO_TRIGGER" in result.output
    assert "Workflow is invalid" in result.output

    result = runner.invoke(app, ["validate", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "File not found" in result.output


def test_import_list_and_show(runtime, tmp_path):
    path = _write(
        tmp_path,
        "welcome.yaml",
        {"name": "Welcome series", "trigger_type": "welcome", "steps": welcome_series()},
    )
    result = runner.invoke(app, ["workflow", "import", str(path), "--activate"])
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "Saved workflow" in result.output

    [workflow] = asyncio.run(runtime.service.list_workflows())
    assert workflow.status == WorkflowStatus.ACTIVE

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert f"{workflow.id}\tactive\twelcome\tWelcome series" in result.output

    result = runner.invoke(app, ["workflow", "show", workflow.id])
    assert result.exit_code == 0
    assert "- wait [delay] -> email2" in result.output
    assert "Enrolled: 0" in result.output

    result = runner.invoke(app, ["workflow", "show", "missing"])
    assert result.exit_code == 1
    assert "Workflow missing not found" in result.output


def test_activate_refused_and_pause(runtime):
    broken = make_workflow([email_step("email1")], status=WorkflowStatus.DRAFT)
    good = make_workflow(welcome_series())
    asyncio.run(runtime.repository.save_workflow(broken))
    asyncio.run(runtime.repository.save_workflow(good))

    result = runner.invoke(app, ["workflow", "activate", broken.id])
    assert result.exit_code == 1
    assert "Activation refused" in result.output

    result = runner.invoke(app, ["workflow", "pause", good.id])
    assert result.exit_code == 0
    assert "is paused" in result.output
    result = runner.invoke(app, ["workflow", "list", "--status", "paused"])
    assert good.id in result.output
    assert broken.id not in result.output


def test_trigger_show_and_exit_enrollment(runtime):
    workflow = make_workflow(welcome_series())
    asyncio.run(runtime.repository.save_workflow(workflow))

    result = runner.invoke(app, ["trigger", "welcome", "c1", "--data", '{"plan": "pro"}'])
    assert result.exit_code == 0, f"Output: {result.output}"
    [line] = result.output.strip().splitlines()
    enrollment_id, workflow_id, status = line.split("\t")
    assert workflow_id == workflow.id
    assert status == "active"

    result = runner.invoke(app, ["enrollment", "show", enrollment_id])
    assert result.exit_code == 0
    assert "Current step: start" in result.output
    assert '"plan": "pro"' in result.output
    assert "Next run: start" in result.output

    result = runner.invoke(app, ["enrollment", "list", workflow.id])
    assert enrollment_id in result.output

    result = runner.invoke(app, ["stats"])
    assert "waiting\t1" in result.output

    result = runner.invoke(app, ["enrollment", "exit", enrollment_id])
    assert result.exit_code == 0
    assert f"Enrollment {enrollment_id}: exited" in result.output

    result = runner.invoke(app, ["enrollment", "show", "missing"])
    assert result.exit_code == 1
    assert "Enrollment not found" in result.output


def test_trigger_without_matches_and_bad_data(runtime):
    result = runner.invoke(app, ["trigger", "shipping", "c1"])
    assert result.exit_code == 0
    assert "No workflows matched" in result.output

    result = runner.invoke(app, ["trigger", "welcome", "c1", "--data", "{not json"])
    assert result.exit_code != 0


def test_worker_runs_due_steps_until_lifespan_ends(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NURTURE_CONFIG", str(tmp_path / "config.yaml"))
    delivery = CountingDelivery()
    shared = make_runtime(make_collaborators(delivery=delivery), poll_interval_seconds=0.01)
    monkeypatch.setattr(cli, "_runtime", lambda collaborators=None: shared)

    workflow = make_workflow(welcome_series())
    asyncio.run(shared.repository.save_workflow(workflow))
    asyncio.run(shared.dispatcher.trigger_workflows("welcome", "c1"))

    result = runner.invoke(app, ["worker", "--lifespan", "0.3"])
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "Starting worker" in result.output
    assert len(delivery.sent) == 1


def test_load_collaborators():
    default = load_collaborators(None)
    assert isinstance(default.delivery, DryRunDelivery)

    loaded = load_collaborators("tests.fixtures.fakes:make_collaborators")
    assert isinstance(loaded, Collaborators)

    with pytest.raises(typer.BadParameter):
        load_collaborators("tests.fixtures.fakes")
    with pytest.raises(typer.BadParameter):
        load_collaborators("tests.fixtures.fakes:does_not_exist")
    with pytest.raises(typer.BadParameter):
        load_collaborators("tests.fixtures.fakes:T0")


def test_scheduler_pause_resume_recent_and_clean(runtime):
    result = runner.invoke(app, ["scheduler", "recent"])
    assert result.exit_code == 0
    assert "No finished work items" in result.output

    workflow = make_workflow(welcome_series())
    asyncio.run(runtime.repository.save_workflow(workflow))
    [enrollment] = asyncio.run(runtime.dispatcher.trigger_workflows("welcome", "c1"))

    result = runner.invoke(app, ["scheduler", "pause"])
    assert result.exit_code == 0, f"Output: {result.output}"
    assert "Scheduler paused" in result.output
    assert asyncio.run(runtime.scheduler.drain()) == []

    result = runner.invoke(app, ["scheduler", "resume"])
    assert "Scheduler resumed" in result.output
    asyncio.run(runtime.scheduler.drain())

    result = runner.invoke(app, ["scheduler", "recent", "--limit", "1"])
    assert result.exit_code == 0
    [line] = result.output.strip().splitlines()
    assert line.split("\t")[1:4] == ["completed", enrollment.id, "email1"]

    result = runner.invoke(app, ["scheduler", "clean"])
    assert result.exit_code == 0
    assert "Removed 0 finished work items" in result.output
