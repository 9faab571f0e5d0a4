"""Sequential workflow execution engine."""

from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import ValidationError

from .contracts import (
    ExecutionError,
    ExecutionResult,
    ExecutionStatus,
    WorkflowDefinition,
)
from .credentials import CredentialResolver
from .errors import ConduitError, UnrecoverableError, WorkflowNotFoundError
from .execute import StepExecutor
from .persistence import ExecutionRecord, ExecutionRepository
from .registry import CapabilityRegistry

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Load a workflow definition and run its steps in order.

    The output of each successful step becomes the mapping source of the
    next. A failing step aborts the run unless ``continueOnError`` applies,
    in which case the data is carried over unchanged.
    """

    def __init__(
        self,
        repository: ExecutionRepository,
        registry: CapabilityRegistry,
        credentials: CredentialResolver,
        executor: Optional[StepExecutor] = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.executor = executor or StepExecutor(registry, credentials, repository)

    async def _load_definition(self, workflow_id: str) -> WorkflowDefinition:
        document = await self.repository.get_definition(workflow_id)
        if document is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        try:
            definition = WorkflowDefinition.model_validate(document)
        except ValidationError as exc:
            raise UnrecoverableError(
                f"Workflow {workflow_id} has a malformed definition",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc
        for number, step in enumerate(definition.steps, start=1):
            if not step.integration or not step.action:
                raise UnrecoverableError(
                    f"Step {number} of workflow {workflow_id} is missing integration or action"
                )
        return definition

    async def _mark_failed(self, execution: ExecutionRecord, error: dict) -> ExecutionRecord:
        return await self.repository.finish_execution(
            execution.id, ExecutionStatus.FAILED, error=error
        )

    async def execute_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any = None,
        trigger_source: str = "manual",
    ) -> ExecutionResult:
        execution = ExecutionRecord(
            workflow_id=workflow_id,
            organization_id=organization_id,
            trigger_source=trigger_source,
            input_payload=trigger_payload,
        )
        await self.repository.create_execution(execution)
        logger.info(
            "Execution %s started for workflow %s (org %s)",
            execution.id,
            workflow_id,
            organization_id,
        )

        try:
            definition = await self._load_definition(workflow_id)
        except ConduitError as exc:
            logger.error("Execution %s aborted: %s", execution.id, exc)
            await self._mark_failed(
                execution,
                ExecutionError(code=exc.code, message=exc.message, details=exc.details).model_dump(
                    mode="json"
                ),
            )
            raise

        try:
            return await self._run_steps(execution, definition, trigger_payload)
        except Exception as exc:
            logger.exception("Execution %s crashed", execution.id)
            code = exc.code if isinstance(exc, ConduitError) else "INTERNAL_ERROR"
            try:
                await self._mark_failed(execution, {"code": code, "message": str(exc)})
            except Exception:
                logger.exception("Could not mark execution %s as failed", execution.id)
            raise

    def _continue_on_error(self, step, definition: WorkflowDefinition) -> bool:
        if step.continue_on_error is not None:
            return step.continue_on_error
        settings = definition.settings
        return bool(
            settings
            and settings.error_handling
            and settings.error_handling.strategy == "continue"
        )

    async def _run_steps(
        self,
        execution: ExecutionRecord,
        definition: WorkflowDefinition,
        trigger_payload: Any,
    ) -> ExecutionResult:
        data = trigger_payload
        total_steps = len(definition.steps)

        for step_number, step in enumerate(definition.steps, start=1):
            result = await self.executor.execute_step(
                step,
                step_number,
                data,
                execution_id=execution.id,
                workflow_id=execution.workflow_id,
                organization_id=execution.organization_id,
            )
            if result.success:
                data = result.data
                continue

            error_info = result.error
            if self._continue_on_error(step, definition):
                logger.warning(
                    "Execution %s: step %d (%s) failed, continuing: %s",
                    execution.id,
                    step_number,
                    step.display_name,
                    error_info.message if error_info else "unknown error",
                )
                continue

            attempts = (result.metadata or {}).get("attempts", 1)
            error = ExecutionError(
                code=error_info.code if error_info else "EXECUTION_ERROR",
                message=error_info.message if error_info else "Step failed",
                step_number=step_number,
                step_name=step.display_name,
                details=error_info.details if error_info else None,
                retry_count=max(attempts - 1, 0),
            )
            record = await self._mark_failed(execution, error.model_dump(mode="json"))
            logger.error(
                "Execution %s failed at step %d (%s): %s",
                execution.id,
                step_number,
                step.display_name,
                error.message,
            )
            return ExecutionResult(
                execution_id=record.id,
                workflow_id=record.workflow_id,
                status=record.status,
                started_at=record.started_at,
                finished_at=record.finished_at,
                duration_ms=record.duration_ms,
                total_steps=total_steps,
                error=error,
            )

        record = await self.repository.finish_execution(
            execution.id, ExecutionStatus.SUCCESS, output=data
        )
        logger.info(
            "Execution %s succeeded in %sms (%d steps)",
            execution.id,
            record.duration_ms,
            total_steps,
        )
        return ExecutionResult(
            execution_id=record.id,
            workflow_id=record.workflow_id,
            status=record.status,
            started_at=record.started_at,
            finished_at=record.finished_at,
            duration_ms=record.duration_ms,
            total_steps=total_steps,
            output=data,
        )
