"""Worker loop tests using the in-memory queue."""

import asyncio

import pytest

from conduit.contracts import ActionResult, ExecutionStatus
from conduit.dispatch import WorkflowDispatcher
from conduit.queue import InMemoryJobQueue
from conduit.worker import Worker
from tests.fixtures.workflows import definition, step


@pytest.fixture
def queue():
    return InMemoryJobQueue(max_retries=2, max_backoff_seconds=0)


@pytest.fixture
def dispatcher(queue, repository, registry):
    return WorkflowDispatcher(queue, repository, registry)


def make_worker(queue, engine, **options):
    options.setdefault("poll_interval", 0.01)
    return Worker(queue, engine, **options)


async def wait_for(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_worker_completes_jobs(queue, engine, dispatcher, repository):
    await dispatcher.register_workflow(
        "wf", definition(step("s1", "echo", [{"source": "$.n", "target": "$.n"}]))
    )
    for n in range(3):
        await dispatcher.enqueue_workflow("wf", "org", {"n": n})

    worker = make_worker(queue, engine)
    await worker.run(lifespan=0.3)

    assert worker.completed == 3
    assert worker.failed == 0
    stats = await queue.stats()
    assert stats.ready == stats.in_flight == 0
    executions = await repository.list_executions(workflow_id="wf")
    assert len(executions) == 3
    assert all(e.status is ExecutionStatus.SUCCESS for e in executions)


@pytest.mark.asyncio
async def test_failed_execution_is_retried_then_dead_lettered(queue, engine, dispatcher):
    await dispatcher.register_workflow("wf", definition(step("s1", "fail")))
    job_id = await dispatcher.enqueue_workflow("wf", "org")

    worker = make_worker(queue, engine)
    await worker.run(lifespan=0.3)

    assert worker.failed == 2
    [dead] = await queue.dead_letters()
    assert dead.id == job_id
    assert dead.retry_count == 2
    assert dead.error["code"] == "BOOM"
    assert dead.error["step_number"] == 1


@pytest.mark.asyncio
async def test_unrecoverable_job_is_dead_lettered_immediately(queue, engine, repository):
    await repository.save_definition("broken", {"version": "1.0", "steps": 5})
    job_id = await queue.enqueue("broken", "org")

    worker = make_worker(queue, engine)
    await worker.run(lifespan=0.2)

    assert worker.failed == 1
    [dead] = await queue.dead_letters()
    assert dead.id == job_id
    assert dead.retry_count == 1
    assert dead.error["code"] == "UNRECOVERABLE"


@pytest.mark.asyncio
async def test_missing_workflow_is_retried(queue, engine):
    await queue.enqueue("ghost", "org")
    worker = make_worker(queue, engine)
    await worker.run(lifespan=0.3)

    [dead] = await queue.dead_letters()
    assert dead.retry_count == 2
    assert dead.error["code"] == "WORKFLOW_NOT_FOUND"


@pytest.mark.asyncio
async def test_unknown_job_type_is_not_retried(queue, engine):
    await queue.enqueue("wf", "org")
    job = await queue.dequeue()
    job.type = "report_generation"

    await make_worker(queue, engine).process_job(job)

    [dead] = await queue.dead_letters()
    assert dead.error["code"] == "UNKNOWN_JOB_TYPE"


@pytest.mark.asyncio
async def test_concurrency_is_capped_and_stop_drains(queue, engine, dispatcher, registry):
    gate = asyncio.Event()
    running = 0
    peak = 0

    @registry.get("core").action("slow")
    async def slow(input, credentials, context):
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await gate.wait()
        running -= 1
        return ActionResult.ok(input)

    await dispatcher.register_workflow("wf", definition(step("s1", "slow")))
    for _ in range(5):
        await dispatcher.enqueue_workflow("wf", "org")

    worker = make_worker(queue, engine, concurrency=2)
    task = asyncio.create_task(worker.run())
    await wait_for(lambda: worker.active_jobs == 2)
    await asyncio.sleep(0.05)

    assert peak == 2
    assert (await queue.stats()).ready == 3

    gate.set()
    await wait_for(lambda: worker.completed == 5)
    await worker.stop()
    await task
    assert peak == 2
    assert worker.active_jobs == 0


@pytest.mark.asyncio
async def test_leases_are_renewed_while_running(engine, registry, repository):
    queue = InMemoryJobQueue(max_retries=2)
    dispatcher = WorkflowDispatcher(queue, repository, registry)
    gate = asyncio.Event()

    @registry.get("core").action("slow")
    async def slow(input, credentials, context):
        await gate.wait()
        return ActionResult.ok(input)

    await dispatcher.register_workflow("wf", definition(step("s1", "slow")))
    await dispatcher.enqueue_workflow("wf", "org")

    worker = make_worker(queue, engine, lease_seconds=0.06, reclaim_interval=60)
    task = asyncio.create_task(worker.run())
    await wait_for(lambda: worker.active_jobs == 1)
    await asyncio.sleep(0.2)

    assert await queue.reclaim_expired() == []

    gate.set()
    await wait_for(lambda: worker.completed == 1)
    await worker.stop()
    await task


@pytest.mark.asyncio
async def test_failure_reporting_errors_are_logged(queue, engine, caplog):
    await queue.enqueue("ghost", "org")
    job = await queue.dequeue()

    async def broken_fail(*args, **kwargs):
        raise ConnectionError("queue unavailable")

    queue.fail = broken_fail
    await make_worker(queue, engine).process_job(job)
    assert "lease will expire" in caplog.text


def test_concurrency_must_be_positive(queue, engine):
    with pytest.raises(ValueError):
        Worker(queue, engine, concurrency=0)


@pytest.mark.asyncio
async def test_stop_requested_before_run_is_honoured(queue, engine, dispatcher):
    await dispatcher.register_workflow("wf", definition(step("s1", "echo")))
    await dispatcher.enqueue_workflow("wf", "org")

    worker = make_worker(queue, engine)
    worker.request_stop()
    await asyncio.wait_for(worker.run(), timeout=1)

    assert worker.completed == 0
    assert (await queue.stats()).ready == 1


@pytest.mark.asyncio
async def test_lease_renewal_ends_with_the_job(queue, engine, dispatcher):
    await dispatcher.register_workflow("wf", definition(step("s1", "echo")))
    await dispatcher.enqueue_workflow("wf", "org")
    job = await queue.dequeue()

    await make_worker(queue, engine).process_job(job)

    leftover = [
        task
        for task in asyncio.all_tasks()
        if task is not asyncio.current_task() and "_renew_lease" in repr(task.get_coro())
    ]
    assert leftover == []
