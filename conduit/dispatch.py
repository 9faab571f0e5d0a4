"""Workflow dispatcher: validated entry point for scheduling executions."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Mapping, Optional, Union

from .contracts import WorkflowDefinition
from .errors import WorkflowNotFoundError, WorkflowValidationError
from .persistence import ExecutionRepository
from .queue import BaseJobQueue
from .registry import CapabilityRegistry
from .validator import ValidationResult, format_validation_result, validate_workflow

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for registering and dispatching workflows.

    A definition is validated before it is stored and again before every
    enqueue, so nothing that fails validation ever reaches the queue.
    """

    def __init__(
        self,
        queue: BaseJobQueue,
        repository: ExecutionRepository,
        registry: CapabilityRegistry,
    ) -> None:
        self.queue = queue
        self.repository = repository
        self.registry = registry

    def _check(self, workflow_id: str, definition: Any) -> ValidationResult:
        result = validate_workflow(definition, self.registry)
        for warning in result.warnings:
            logger.warning(
                "Workflow %s: %s: %s (%s)",
                workflow_id,
                warning.path,
                warning.message,
                warning.code,
            )
        if not result.valid:
            logger.error(
                "Workflow %s failed validation:\n%s",
                workflow_id,
                format_validation_result(result),
            )
            raise WorkflowValidationError(
                f"Workflow {workflow_id} failed validation", result
            )
        return result

    async def register_workflow(
        self,
        workflow_id: str,
        definition: Union[WorkflowDefinition, Mapping[str, Any]],
    ) -> ValidationResult:
        """Validate and store ``definition`` under ``workflow_id``."""
        result = self._check(workflow_id, definition)
        if isinstance(definition, WorkflowDefinition):
            document = definition.to_dict()
        else:
            document = dict(definition)
        await self.repository.save_definition(workflow_id, document)
        logger.info("Registered workflow %s", workflow_id)
        return result

    async def enqueue_workflow(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any = None,
        trigger_source: str = "manual",
        *,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """Validate the stored definition and enqueue an execution job."""
        definition = await self.repository.get_definition(workflow_id)
        if definition is None:
            raise WorkflowNotFoundError(f"Workflow {workflow_id} not found")
        self._check(workflow_id, definition)

        job_id = await self.queue.enqueue(
            workflow_id,
            organization_id,
            trigger_payload,
            trigger_source,
            priority=priority,
            scheduled_for=scheduled_for,
        )
        logger.info(
            "Enqueued workflow %s for org %s (job %s, priority %d)",
            workflow_id,
            organization_id,
            job_id,
            priority,
        )
        return job_id
