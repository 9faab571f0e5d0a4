"""In-memory implementation of the execution repository."""

from __future__ import annotations

import copy
from typing import Any, Dict, Optional

from ..contracts import ExecutionStatus, StepStatus, utc_now
from ..errors import NotFoundError
from .models import ExecutionRecord, StepLog, duration_ms
from .repository import ExecutionRepository, check_transition


class InMemoryExecutionRepository(ExecutionRepository):
    """Store execution state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, dict] = {}
        self._executions: Dict[str, ExecutionRecord] = {}
        self._step_logs: Dict[str, StepLog] = {}

    # ------------------------------------------------------------------
    async def save_definition(self, workflow_id: str, definition: dict) -> None:
        self._definitions[workflow_id] = copy.deepcopy(definition)

    async def get_definition(self, workflow_id: str) -> dict | None:
        definition = self._definitions.get(workflow_id)
        return copy.deepcopy(definition) if definition is not None else None

    async def create_execution(self, execution: ExecutionRecord) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
    ) -> ExecutionRecord:
        execution = self._executions.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        check_transition(execution_id, execution.status, status)
        finished_at = utc_now()
        execution.status = status
        execution.output_payload = copy.deepcopy(output)
        execution.error = copy.deepcopy(error)
        execution.finished_at = finished_at
        execution.duration_ms = duration_ms(execution.started_at, finished_at)
        return execution.model_copy(deep=True)

    async def mark_step_started(
        self,
        execution_id: str,
        step_number: int,
        step_name: str,
        integration: Optional[str] = None,
        action: Optional[str] = None,
    ) -> str:
        log = StepLog(
            execution_id=execution_id,
            step_number=step_number,
            step_name=step_name,
            integration=integration,
            action=action,
        )
        self._step_logs[log.id] = log
        return log.id

    async def record_step_input(self, step_log_id: str, input: Any) -> None:
        log = self._step_logs.get(step_log_id)
        if log:
            log.input = copy.deepcopy(input)

    async def mark_step_completed(
        self,
        step_log_id: str,
        status: StepStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
        attempts: int = 1,
    ) -> None:
        log = self._step_logs.get(step_log_id)
        if not log:
            return
        finished_at = utc_now()
        log.status = status
        log.output = copy.deepcopy(output)
        log.error = copy.deepcopy(error)
        log.attempts = attempts
        log.finished_at = finished_at
        log.duration_ms = duration_ms(log.started_at, finished_at)

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        record = execution.model_copy(deep=True)
        record.steps = sorted(
            (
                log.model_copy(deep=True)
                for log in self._step_logs.values()
                if log.execution_id == execution_id
            ),
            key=lambda log: (log.step_number, log.started_at),
        )
        return record

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        records = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        records.sort(key=lambda e: e.started_at, reverse=True)
        return records[:limit]
