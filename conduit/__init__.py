"""conduit: queue-driven workflow execution for third-party integrations."""

from .contracts import (
    ActionResult,
    ExecutionContext,
    ExecutionResult,
    ExecutionStatus,
    FieldMapping,
    QueueJob,
    Step,
    WorkflowDefinition,
)
from .credentials import ConnectionCredentials, InMemoryCredentialStore
from .dispatch import WorkflowDispatcher
from .engine import WorkflowEngine
from .execute import StepExecutor
from .mapping import apply_field_mappings
from .persistence import get_repository
from .queue import get_queue
from .registry import CapabilityRegistry, Integration, IntegrationMetadata
from .services import Services
from .validator import validate_workflow
from .worker import Worker

__version__ = "0.1.0"
__all__ = [
    "ActionResult",
    "CapabilityRegistry",
    "ConnectionCredentials",
    "ExecutionContext",
    "ExecutionResult",
    "ExecutionStatus",
    "FieldMapping",
    "InMemoryCredentialStore",
    "Integration",
    "IntegrationMetadata",
    "QueueJob",
    "Services",
    "Step",
    "StepExecutor",
    "Worker",
    "WorkflowDefinition",
    "WorkflowDispatcher",
    "WorkflowEngine",
    "apply_field_mappings",
    "get_queue",
    "get_repository",
    "validate_workflow",
]
