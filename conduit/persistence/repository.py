"""Repository abstraction for execution state persistence."""

from __future__ import annotations

from typing import Any, Optional, Protocol

from ..contracts import ExecutionStatus, StepStatus
from ..errors import InvalidStatusTransitionError
from .models import ExecutionRecord


class ExecutionRepository(Protocol):
    """Protocol for execution state persistence backends."""

    async def save_definition(self, workflow_id: str, definition: dict) -> None:
        """Store (or replace) the definition for ``workflow_id``."""

    async def get_definition(self, workflow_id: str) -> dict | None:
        """Return the stored definition document or ``None``."""

    async def create_execution(self, execution: ExecutionRecord) -> None:
        """Persist a new execution record."""

    async def finish_execution(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
    ) -> ExecutionRecord:
        """Move an execution to a terminal status."""

    async def mark_step_started(
        self,
        execution_id: str,
        step_number: int,
        step_name: str,
        integration: Optional[str] = None,
        action: Optional[str] = None,
    ) -> str:
        """Create a running step log and return its id."""

    async def record_step_input(self, step_log_id: str, input: Any) -> None:
        """Attach the mapped input to a step log."""

    async def mark_step_completed(
        self,
        step_log_id: str,
        status: StepStatus,
        *,
        output: Any = None,
        error: Optional[dict] = None,
        attempts: int = 1,
    ) -> None:
        """Finalize a step log."""

    async def get_execution(self, execution_id: str) -> ExecutionRecord | None:
        """Return the execution with its step logs."""

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[ExecutionStatus] = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        """Return executions, newest first, without step logs."""


def check_transition(
    execution_id: str, current: ExecutionStatus, new: ExecutionStatus
) -> None:
    if not current.can_transition_to(new):
        raise InvalidStatusTransitionError(
            f"Execution {execution_id} cannot move from {current.value} to {new.value}"
        )
