import pytest

from conduit.contracts import ExecutionStatus, StepStatus
from conduit.errors import InvalidStatusTransitionError, NotFoundError
from conduit.persistence import (
    ExecutionRecord,
    InMemoryExecutionRepository,
    SQLiteExecutionRepository,
)


@pytest.fixture(params=["inmemory", "sqlite"])
def repo(request, tmp_path):
    if request.param == "inmemory":
        yield InMemoryExecutionRepository()
    else:
        repository = SQLiteExecutionRepository(tmp_path / "exec.db")
        yield repository
        repository.close()


@pytest.mark.asyncio
async def test_definition_round_trip(repo):
    assert await repo.get_definition("wf-1") is None
    await repo.save_definition("wf-1", {"version": "1", "steps": []})
    await repo.save_definition("wf-1", {"version": "2", "steps": []})
    assert await repo.get_definition("wf-1") == {"version": "2", "steps": []}


@pytest.mark.asyncio
async def test_execution_with_steps(repo):
    execution = ExecutionRecord(
        workflow_id="wf-1", organization_id="org-1", input_payload={"a": 1}
    )
    await repo.create_execution(execution)

    first = await repo.mark_step_started(execution.id, 1, "first", "core", "echo")
    await repo.record_step_input(first, {"a": 1})
    await repo.mark_step_completed(first, StepStatus.SUCCESS, output={"b": 2})

    second = await repo.mark_step_started(execution.id, 2, "second", "core", "fail")
    await repo.mark_step_completed(
        second, StepStatus.FAILED, error={"code": "BOOM", "message": "no"}, attempts=3
    )

    finished = await repo.finish_execution(
        execution.id, ExecutionStatus.FAILED, error={"code": "BOOM"}
    )
    assert finished.status is ExecutionStatus.FAILED
    assert finished.finished_at is not None
    assert finished.duration_ms >= 0

    loaded = await repo.get_execution(execution.id)
    assert loaded.status is ExecutionStatus.FAILED
    assert loaded.input_payload == {"a": 1}
    assert loaded.error == {"code": "BOOM"}
    assert [s.step_number for s in loaded.steps] == [1, 2]
    assert loaded.steps[0].input == {"a": 1}
    assert loaded.steps[0].output == {"b": 2}
    assert loaded.steps[0].status is StepStatus.SUCCESS
    assert loaded.steps[0].integration == "core"
    assert loaded.steps[1].attempts == 3
    assert loaded.steps[1].error["code"] == "BOOM"
    assert loaded.steps[1].duration_ms is not None


@pytest.mark.asyncio
async def test_terminal_status_is_final(repo):
    execution = ExecutionRecord(workflow_id="wf", organization_id="org")
    await repo.create_execution(execution)
    await repo.finish_execution(execution.id, ExecutionStatus.SUCCESS, output={"ok": True})

    with pytest.raises(InvalidStatusTransitionError):
        await repo.finish_execution(execution.id, ExecutionStatus.FAILED)
    loaded = await repo.get_execution(execution.id)
    assert loaded.status is ExecutionStatus.SUCCESS
    assert loaded.output_payload == {"ok": True}


@pytest.mark.asyncio
async def test_finish_unknown_execution(repo):
    with pytest.raises(NotFoundError):
        await repo.finish_execution("missing", ExecutionStatus.SUCCESS)
    assert await repo.get_execution("missing") is None


@pytest.mark.asyncio
async def test_list_executions_filters(repo):
    for workflow_id in ("wf-a", "wf-a", "wf-b"):
        await repo.create_execution(
            ExecutionRecord(workflow_id=workflow_id, organization_id="org")
        )
    done = ExecutionRecord(workflow_id="wf-b", organization_id="org")
    await repo.create_execution(done)
    await repo.finish_execution(done.id, ExecutionStatus.SUCCESS)

    assert len(await repo.list_executions()) == 4
    assert len(await repo.list_executions(workflow_id="wf-a")) == 2
    succeeded = await repo.list_executions(status=ExecutionStatus.SUCCESS)
    assert [e.id for e in succeeded] == [done.id]
    assert len(await repo.list_executions(limit=1)) == 1


@pytest.mark.asyncio
async def test_sqlite_survives_reopen(tmp_path):
    path = tmp_path / "exec.db"
    repo = SQLiteExecutionRepository(path)
    execution = ExecutionRecord(workflow_id="wf", organization_id="org")
    await repo.create_execution(execution)
    await repo.save_definition("wf", {"version": "1"})
    repo.close()

    reopened = SQLiteExecutionRepository(path)
    assert (await reopened.get_execution(execution.id)).workflow_id == "wf"
    assert await reopened.get_definition("wf") == {"version": "1"}
    reopened.close()
