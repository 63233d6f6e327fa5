import asyncio
import sqlite3

import pytest

from nurture.config import NurtureConfig, SchedulerConfig
from nurture.persistence import SQLiteEnrollmentRepository
from nurture.queues import InMemoryWorkQueue
from nurture.runtime import NurtureRuntime
from tests.fixtures.fakes import CountingDelivery, make_collaborators, make_runtime, make_workflow, welcome_series


def test_from_config_requires_collaborators():
    with pytest.raises(ValueError):
        NurtureRuntime.from_config(NurtureConfig())


def test_from_config_selects_backends(tmp_path):
    config = NurtureConfig(
        database_url=f"sqlite://{tmp_path / 'nurture.db'}",
        scheduler=SchedulerConfig(max_attempts=4, paused_recheck_seconds=60),
    )
    runtime = NurtureRuntime.from_config(config, make_collaborators())
    assert isinstance(runtime.repository, SQLiteEnrollmentRepository)
    assert isinstance(runtime.queue, InMemoryWorkQueue)
    assert runtime.scheduler.max_attempts == 4
    assert runtime.engine.repository is runtime.repository
    assert runtime.engine.queue is runtime.queue


@pytest.mark.asyncio
async def test_run_until_lifespan_and_shutdown():
    delivery = CountingDelivery()
    runtime = make_runtime(make_collaborators(delivery=delivery), poll_interval_seconds=0.01)
    workflow = make_workflow(welcome_series())
    await runtime.repository.save_workflow(workflow)
    await runtime.dispatcher.trigger_workflows("welcome", "c1")

    async with runtime:
        await asyncio.wait_for(runtime.run(lifespan=0.2), timeout=5)

    assert len(delivery.sent) == 1


@pytest.mark.asyncio
async def test_request_shutdown_stops_the_loop():
    runtime = make_runtime(poll_interval_seconds=0.01)
    runtime.install_signal_handlers()
    task = asyncio.create_task(runtime.run())
    await asyncio.sleep(0.05)
    runtime.request_shutdown()
    await asyncio.wait_for(task, timeout=5)
    await runtime.shutdown()
    assert task.done()


@pytest.mark.asyncio
async def test_shutdown_closes_the_repository(tmp_path):
    runtime = NurtureRuntime(
        repository=SQLiteEnrollmentRepository(tmp_path / "nurture.db"),
        queue=InMemoryWorkQueue(),
        collaborators=make_collaborators(),
    )
    async with runtime:
        await runtime.repository.save_workflow(make_workflow(welcome_series()))

    with pytest.raises(sqlite3.ProgrammingError):
        await runtime.repository.list_workflows()
