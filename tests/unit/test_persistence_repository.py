from datetime import timedelta

import pytest

from nurture.contracts import Enrollment, EnrollmentStatus, TriggerType, WorkflowStatus
from nurture.persistence import InMemoryEnrollmentRepository, SQLiteEnrollmentRepository
from tests.fixtures.fakes import T0, make_workflow, welcome_series


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteEnrollmentRepository(tmp_path / "nurture.db")
    return InMemoryEnrollmentRepository()


def _enrollment(workflow_id: str = "wf-1", contact_id: str = "c1", **kwargs) -> Enrollment:
    return Enrollment(
        workflow_id=workflow_id,
        contact_id=contact_id,
        current_step_id="start",
        steps=make_workflow(welcome_series()).steps,
        context={"cart": {"total": 80}},
        enrolled_at=kwargs.pop("enrolled_at", T0),
        **kwargs,
    )


@pytest.mark.asyncio
async def test_workflow_crud_and_filters(repo):
    welcome = make_workflow(welcome_series(), organization_id="org-1")
    cart = make_workflow(welcome_series(), trigger_type=TriggerType.ABANDONED_CART, status=WorkflowStatus.DRAFT)
    await repo.save_workflow(welcome)
    await repo.save_workflow(cart)

    loaded = await repo.get_workflow(welcome.id)
    assert loaded is not None
    assert loaded.name == welcome.name
    assert [s.id for s in loaded.steps] == ["start", "email1", "wait", "email2"]
    assert loaded.steps[2].config.duration == 1
    assert loaded.created_at.tzinfo is not None

    active = await repo.list_workflows(trigger_type=TriggerType.WELCOME, status=WorkflowStatus.ACTIVE)
    assert [w.id for w in active] == [welcome.id]
    assert [w.id for w in await repo.list_workflows(organization_id="org-1")] == [welcome.id]
    assert len(await repo.list_workflows()) == 2

    await repo.save_workflow(welcome.model_copy(update={"status": WorkflowStatus.PAUSED}))
    assert (await repo.get_workflow(welcome.id)).status == WorkflowStatus.PAUSED
    assert await repo.get_workflow("missing") is None


@pytest.mark.asyncio
async def test_exclusive_enrollment_returns_existing(repo):
    first, created = await repo.create_enrollment(_enrollment())
    assert created
    second, created = await repo.create_enrollment(_enrollment())
    assert not created
    assert second.id == first.id
    assert second.context == {"cart": {"total": 80}}

    _, created = await repo.create_enrollment(_enrollment(), exclusive=False)
    assert created
    assert len(await repo.list_enrollments(workflow_id="wf-1")) == 2


@pytest.mark.asyncio
async def test_list_enrollments_newest_first(repo):
    older, _ = await repo.create_enrollment(_enrollment(contact_id="c1"))
    newer, _ = await repo.create_enrollment(
        _enrollment(contact_id="c2", enrolled_at=T0 + timedelta(minutes=5))
    )
    listed = await repo.list_enrollments(workflow_id="wf-1")
    assert [e.id for e in listed] == [newer.id, older.id]
    assert await repo.list_enrollments(status=EnrollmentStatus.COMPLETED) == []


@pytest.mark.asyncio
async def test_acquire_step_is_exclusive_until_lease_expires(repo):
    enrollment, _ = await repo.create_enrollment(_enrollment())
    lease = T0 + timedelta(minutes=5)

    claimed = await repo.acquire_step(enrollment.id, "start", token="a", lease_expires_at=lease, now=T0)
    assert claimed is not None
    assert claimed.lease_token == "a"

    assert await repo.acquire_step(enrollment.id, "start", token="b", lease_expires_at=lease, now=T0) is None
    assert await repo.acquire_step(enrollment.id, "email1", token="c", lease_expires_at=lease, now=T0) is None

    later = lease + timedelta(seconds=1)
    reclaimed = await repo.acquire_step(
        enrollment.id, "start", token="b", lease_expires_at=later + timedelta(minutes=5), now=later
    )
    assert reclaimed is not None
    assert reclaimed.lease_token == "b"


@pytest.mark.asyncio
async def test_transition_is_compare_and_swap(repo):
    enrollment, _ = await repo.create_enrollment(_enrollment())
    await repo.acquire_step(
        enrollment.id, "start", token="tok", lease_expires_at=T0 + timedelta(minutes=5), now=T0
    )

    assert await repo.transition(enrollment.id, {"current_step_id": "email1"}, token="other") is None
    assert (
        await repo.transition(enrollment.id, {"current_step_id": "email1"}, expected_step_id="wait")
        is None
    )

    moved = await repo.transition(
        enrollment.id,
        {"current_step_id": "email1", "next_action_at": T0},
        expected_step_id="start",
        token="tok",
    )
    assert moved.current_step_id == "email1"
    assert moved.next_action_at == T0
    assert moved.lease_token is None

    done = await repo.transition(
        enrollment.id, {"status": EnrollmentStatus.COMPLETED, "finished_at": T0}
    )
    assert done.status == EnrollmentStatus.COMPLETED

    # terminal states are final
    assert await repo.transition(enrollment.id, {"status": EnrollmentStatus.ACTIVE}) is None
    assert (await repo.get_enrollment(enrollment.id)).status == EnrollmentStatus.COMPLETED


@pytest.mark.asyncio
async def test_transition_rejects_unknown_fields(repo):
    enrollment, _ = await repo.create_enrollment(_enrollment())
    with pytest.raises(ValueError):
        await repo.transition(enrollment.id, {"contact_id": "someone-else"})


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "nurture.db"
    repo = SQLiteEnrollmentRepository(path)
    enrollment, _ = await repo.create_enrollment(_enrollment())
    await repo.transition(enrollment.id, {"current_step_id": "wait", "next_action_at": T0})
    await repo.close()

    reopened = SQLiteEnrollmentRepository(path)
    loaded = await reopened.get_enrollment(enrollment.id)
    assert loaded.current_step_id == "wait"
    assert loaded.next_action_at == T0
    assert loaded.graph().get("wait").config.unit == "hours"
