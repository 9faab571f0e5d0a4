"""Workflow engine tests."""

import logging

import pytest

from conduit.contracts import ExecutionStatus, StepStatus
from conduit.errors import (
    TransientInfraError,
    UnrecoverableError,
    WorkflowNotFoundError,
)
from tests.fixtures.workflows import FlakyAction, definition, step


@pytest.mark.asyncio
async def test_steps_run_in_order_and_are_logged(engine, repository):
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "echo", [{"source": "$.name", "target": "$.first"}]),
            step("s2", "echo", [{"source": "$.first", "target": "$.second"}]),
            step("s3", "echo", [{"source": "$.second", "target": "$.third"}], {"tag": "x"}),
        ),
    )

    result = await engine.execute_workflow("wf", "org", {"name": "Ada"})

    assert result.succeeded
    assert result.total_steps == 3
    assert result.output == {"tag": "x", "third": "Ada"}
    record = await repository.get_execution(result.execution_id)
    assert record.status is ExecutionStatus.SUCCESS
    assert record.input_payload == {"name": "Ada"}
    assert record.output_payload == result.output
    assert [s.step_number for s in record.steps] == [1, 2, 3]
    assert all(s.status is StepStatus.SUCCESS for s in record.steps)
    assert record.steps[1].input == {"second": "Ada"}


@pytest.mark.asyncio
async def test_empty_workflow_succeeds_with_trigger_payload(engine, repository):
    await repository.save_definition("wf", definition())
    result = await engine.execute_workflow("wf", "org", {"a": 1})
    assert result.succeeded
    assert result.output == {"a": 1}


@pytest.mark.asyncio
async def test_continue_on_error_carries_data_over(engine, repository):
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "echo", [{"source": "$.v", "target": "$.v"}]),
            step("s2", "fail", continueOnError=True),
            step("s3", "echo", [{"source": "$.v", "target": "$.v"}]),
        ),
    )

    result = await engine.execute_workflow("wf", "org", {"v": 7, "noise": True})

    assert result.succeeded
    record = await repository.get_execution(result.execution_id)
    first, failed, last = record.steps
    assert failed.status is StepStatus.FAILED
    assert failed.error["code"] == "BOOM"
    assert last.input == first.output == {"v": 7}


@pytest.mark.asyncio
async def test_error_strategy_continue_applies_when_step_is_silent(engine, repository):
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "fail"),
            step("s2", "echo", static={"done": True}),
            settings={"errorHandling": {"strategy": "continue"}},
        ),
    )
    result = await engine.execute_workflow("wf", "org")
    assert result.succeeded
    assert result.output == {"done": True}


@pytest.mark.asyncio
async def test_step_flag_overrides_continue_strategy(engine, repository):
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "fail", continueOnError=False),
            step("s2", "echo"),
            settings={"errorHandling": {"strategy": "continue"}},
        ),
    )
    result = await engine.execute_workflow("wf", "org")
    assert result.status is ExecutionStatus.FAILED


@pytest.mark.asyncio
async def test_failing_step_aborts_the_run(engine, repository):
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "echo"),
            step("s2", "fail", name="Charge card"),
            step("s3", "echo"),
        ),
    )

    result = await engine.execute_workflow("wf", "org", {"amount": 3})

    assert result.status is ExecutionStatus.FAILED
    assert result.error.code == "BOOM"
    assert result.error.step_number == 2
    assert result.error.step_name == "Charge card"
    assert result.error.retry_count == 0
    record = await repository.get_execution(result.execution_id)
    assert record.status is ExecutionStatus.FAILED
    assert record.error["step_number"] == 2
    assert len(record.steps) == 2


@pytest.mark.asyncio
async def test_unknown_workflow_marks_execution_failed(engine, repository):
    with pytest.raises(WorkflowNotFoundError):
        await engine.execute_workflow("missing", "org")

    [record] = await repository.list_executions(workflow_id="missing")
    assert record.status is ExecutionStatus.FAILED
    assert record.error["code"] == "WORKFLOW_NOT_FOUND"


@pytest.mark.asyncio
async def test_malformed_definition_is_unrecoverable(engine, repository):
    await repository.save_definition("wf", {"version": "1.0", "steps": "nope"})
    with pytest.raises(UnrecoverableError) as excinfo:
        await engine.execute_workflow("wf", "org")
    assert excinfo.value.details

    [record] = await repository.list_executions(workflow_id="wf")
    assert record.error["code"] == "UNRECOVERABLE"


@pytest.mark.asyncio
async def test_step_without_action_is_unrecoverable(engine, repository):
    await repository.save_definition(
        "wf", definition({"id": "s1", "integration": "core"})
    )
    with pytest.raises(UnrecoverableError):
        await engine.execute_workflow("wf", "org")


@pytest.mark.asyncio
async def test_step_retry_with_fixed_delay(engine, registry, repository, sleeps):
    flaky = FlakyAction(failures=2)
    registry.get("core").add_action("flaky", flaky)
    await repository.save_definition(
        "wf",
        definition(step("s1", "flaky", retry={"maxAttempts": 3, "delay": 250})),
    )

    result = await engine.execute_workflow("wf", "org")

    assert result.succeeded
    assert result.output == {"calls": 3}
    assert sleeps == [0.25, 0.25]
    record = await repository.get_execution(result.execution_id)
    assert record.steps[0].attempts == 3


@pytest.mark.asyncio
async def test_step_retry_with_exponential_delay(engine, registry, repository, sleeps):
    registry.get("core").add_action("flaky", FlakyAction(failures=3))
    await repository.save_definition(
        "wf",
        definition(
            step(
                "s1",
                "flaky",
                retry={"maxAttempts": 4, "delay": "exponential", "backoffMultiplier": 3},
            )
        ),
    )

    result = await engine.execute_workflow("wf", "org")

    assert result.succeeded
    assert sleeps == [1.0, 3.0, 9.0]


@pytest.mark.asyncio
async def test_exhausted_step_retries_report_retry_count(engine, registry, repository, sleeps):
    registry.get("core").add_action("flaky", FlakyAction(failures=5))
    await repository.save_definition(
        "wf", definition(step("s1", "flaky", retry={"maxAttempts": 2}))
    )

    result = await engine.execute_workflow("wf", "org")

    assert result.status is ExecutionStatus.FAILED
    assert result.error.code == "TEMPORARY"
    assert result.error.retry_count == 1
    assert sleeps == [0.0]


@pytest.mark.asyncio
async def test_infrastructure_errors_propagate(engine, registry, repository):
    @registry.get("core").action("outage")
    async def outage(input, credentials, context):
        raise TransientInfraError("database went away")

    await repository.save_definition("wf", definition(step("s1", "outage")))

    with pytest.raises(TransientInfraError):
        await engine.execute_workflow("wf", "org")

    [record] = await repository.list_executions(workflow_id="wf")
    assert record.status is ExecutionStatus.FAILED
    assert record.error["code"] == "TRANSIENT_INFRA_ERROR"
    record = await repository.get_execution(record.id)
    assert record.steps[0].status is StepStatus.FAILED


@pytest.mark.asyncio
async def test_credentials_are_resolved_for_connected_steps(engine, repository):
    await repository.save_definition(
        "wf",
        definition(step("s1", "whoami", integration="crm", connectionId="conn-1")),
    )
    result = await engine.execute_workflow("wf", "org")
    assert result.output == {"token": "t-123"}


@pytest.mark.asyncio
async def test_expired_connection_aborts_the_run(engine, credentials, repository):
    credentials.add("conn-old", {"type": "api_key", "expires_at": "2020-01-01T00:00:00"})
    await repository.save_definition(
        "wf",
        definition(
            step("s1", "whoami", integration="crm", connectionId="conn-old"),
            step("s2", "echo"),
        ),
    )

    result = await engine.execute_workflow("wf", "org")

    assert result.status is ExecutionStatus.FAILED
    assert result.error.code == "CONNECTION_EXPIRED"
    assert result.error.step_number == 1
    record = await repository.get_execution(result.execution_id)
    assert len(record.steps) == 1
    assert record.steps[0].status is StepStatus.FAILED


@pytest.mark.asyncio
async def test_steps_log_with_execution_prefix(engine, repository, caplog):
    await repository.save_definition("wf", definition(step("s1", "echo")))
    with caplog.at_level(logging.INFO, logger="conduit.step"):
        result = await engine.execute_workflow("wf", "org")
    assert f"[{result.execution_id}:1] Starting core.echo" in caplog.messages
