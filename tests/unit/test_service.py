import pytest

from nurture.contracts import EnrollmentStatus, WorkflowStatus
from nurture.exceptions import WorkflowNotFoundError
from tests.fixtures.fakes import T0, email_step, make_runtime, make_workflow, trigger_step, welcome_series


@pytest.mark.asyncio
async def test_save_active_workflow_with_errors_drops_to_draft():
    runtime = make_runtime()
    broken = make_workflow([{"id": "start", "type": "trigger", "config": {}, "next": "missing"}])

    result = await runtime.service.save_workflow(broken)
    assert not result.is_valid
    assert [e.code for e in result.errors] == ["MISSING_TRIGGER_EVENT"]
    assert [w.code for w in result.warnings] == ["UNKNOWN_STEP_REFERENCE"]
    stored = await runtime.service.get_workflow(broken.id)
    assert stored.status == WorkflowStatus.DRAFT


@pytest.mark.asyncio
async def test_dangling_reference_does_not_block_activation():
    runtime = make_runtime()
    workflow = make_workflow([trigger_step("missing")])

    result = await runtime.service.save_workflow(workflow)
    assert result.is_valid
    assert "UNKNOWN_STEP_REFERENCE" in result.codes()
    assert (await runtime.service.get_workflow(workflow.id)).status == WorkflowStatus.ACTIVE


@pytest.mark.asyncio
async def test_save_keeps_status_and_reports_issues():
    runtime = make_runtime()
    steps = welcome_series() + [email_step("orphan")]
    workflow = make_workflow(steps, status=WorkflowStatus.DRAFT)

    result = await runtime.service.save_workflow(workflow)
    assert "DISCONNECTED_STEP" in result.codes()

    fine = make_workflow(welcome_series())
    result = await runtime.service.save_workflow(fine)
    assert result.is_valid
    assert (await runtime.service.get_workflow(fine.id)).status == WorkflowStatus.ACTIVE


@pytest.mark.asyncio
async def test_activate_refuses_invalid_workflows():
    runtime = make_runtime()
    draft = make_workflow([email_step("email1")], status=WorkflowStatus.DRAFT)
    await runtime.service.save_workflow(draft)

    result = await runtime.service.activate(draft.id)
    assert not result.is_valid
    assert "NO_TRIGGER" in result.codes()
    assert (await runtime.service.get_workflow(draft.id)).status == WorkflowStatus.DRAFT

    good = make_workflow(welcome_series(), status=WorkflowStatus.DRAFT)
    await runtime.service.save_workflow(good)
    assert (await runtime.service.activate(good.id)).is_valid
    assert (await runtime.service.get_workflow(good.id)).status == WorkflowStatus.ACTIVE

    paused = await runtime.service.pause(good.id)
    assert paused.status == WorkflowStatus.PAUSED
    assert [w.id for w in await runtime.service.list_workflows(status=WorkflowStatus.PAUSED)] == [good.id]


@pytest.mark.asyncio
async def test_unknown_workflow_raises():
    runtime = make_runtime()
    with pytest.raises(WorkflowNotFoundError):
        await runtime.service.get_workflow("missing")
    with pytest.raises(WorkflowNotFoundError):
        await runtime.service.activate("missing")
    with pytest.raises(WorkflowNotFoundError):
        await runtime.service.get_workflow_analytics("missing")


@pytest.mark.asyncio
async def test_analytics_counts_enrollments_by_status():
    runtime = make_runtime()
    workflow = make_workflow([trigger_step("email1"), email_step("email1")])
    await runtime.service.save_workflow(workflow)

    analytics = await runtime.service.get_workflow_analytics(workflow.id)
    assert analytics.total_enrolled == 0
    assert analytics.completion_rate == 0.0

    first = await runtime.engine.enroll(workflow, "c1", now=T0)
    await runtime.engine.enroll(workflow, "c2", now=T0)
    await runtime.engine.enroll(workflow, "c3", now=T0)
    await runtime.engine.exit_workflow(first.id, now=T0)
    await runtime.scheduler.drain(T0)

    analytics = await runtime.service.get_workflow_analytics(workflow.id)
    assert analytics.total_enrolled == 3
    assert analytics.exited == 1
    # c2 and c3 have no contact record, so their email step fails
    assert analytics.failed == 2
    assert analytics.completed == 0
    assert analytics.active == 0

    enrollments = await runtime.service.list_enrollments(workflow.id, status=EnrollmentStatus.EXITED)
    assert [e.id for e in enrollments] == [first.id]


@pytest.mark.asyncio
async def test_completion_rate_is_a_percentage():
    runtime = make_runtime()
    workflow = make_workflow([trigger_step("email1"), email_step("email1")])
    await runtime.service.save_workflow(workflow)
    for contact in ("c1", "c2", "c3"):
        await runtime.engine.enroll(workflow, contact, now=T0)
    await runtime.scheduler.drain(T0)

    analytics = await runtime.service.get_workflow_analytics(workflow.id)
    assert analytics.completed == 1
    assert analytics.completion_rate == 33.33
