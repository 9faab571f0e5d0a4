"""Core contracts for the conduit workflow pipeline."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DefinitionModel(BaseModel):
    """Base for models parsed from the camelCase workflow JSON DSL."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class TransformType(str, Enum):
    STATIC = "static"
    TEMPLATE = "template"
    FUNCTION = "function"
    CONDITIONAL = "conditional"
    FORMAT_DATE = "format-date"
    FORMAT_NUMBER = "format-number"
    PARSE_JSON = "parse-json"
    TO_UPPERCASE = "to-uppercase"
    TO_LOWERCASE = "to-lowercase"
    TRIM = "trim"
    SPLIT = "split"
    JOIN = "join"
    REPLACE = "replace"
    REGEX = "regex"


class Transform(DefinitionModel):
    """Named, parameterized function applied to a mapped value.

    ``type`` is kept as a plain string so that unknown transform types can be
    passed through at execution time instead of failing the parse.
    """

    type: str
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("config", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return {} if v is None else v


class FieldMapping(DefinitionModel):
    """Projects a source path onto a target path."""

    source: str
    target: str
    transform: Optional[Transform] = None


class StepInput(DefinitionModel):
    mappings: List[FieldMapping] = Field(default_factory=list)
    static: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("mappings", "static", mode="before")
    @classmethod
    def _none_to_default(cls, v: Any, info) -> Any:
        if v is None:
            return [] if info.field_name == "mappings" else {}
        return v


class RetryConfig(DefinitionModel):
    max_attempts: int = 1
    delay: Union[float, Literal["exponential"]] = 0
    backoff_multiplier: float = 2.0


class Step(DefinitionModel):
    """One unit of work bound to a single integration action."""

    id: Optional[str] = None
    name: Optional[str] = None
    integration: Optional[str] = None
    action: Optional[str] = None
    connection_id: Optional[str] = None
    input: Optional[StepInput] = None
    continue_on_error: Optional[bool] = None
    retry: Optional[RetryConfig] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id or f"{self.integration}.{self.action}"


class WorkflowTrigger(DefinitionModel):
    integration: Optional[str] = None
    trigger: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)
    connection_id: Optional[str] = None


class RateLimitConfig(DefinitionModel):
    max_requests: int
    window_ms: int
    retry_after_ms: Optional[int] = None


class ErrorHandling(DefinitionModel):
    strategy: Literal["stop", "continue", "retry"] = "stop"
    notify_on: List[Literal["error", "warning", "success"]] = Field(
        default_factory=list
    )


class WorkflowSettings(DefinitionModel):
    timeout: Optional[float] = None
    concurrency: Optional[int] = None
    rate_limit: Optional[RateLimitConfig] = None
    error_handling: Optional[ErrorHandling] = None


class WorkflowDefinition(DefinitionModel):
    """Declarative trigger plus ordered steps.

    Most fields are optional so that malformed definitions still parse and can
    be reported by the validator rather than by pydantic.
    """

    version: Optional[str] = None
    trigger: Optional[WorkflowTrigger] = None
    steps: List[Step] = Field(default_factory=list)
    settings: Optional[WorkflowSettings] = None

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, v: Any) -> Any:
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("steps", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# ----------------------------------------------------------------------
# Action invocation


class ActionErrorInfo(BaseModel):
    code: str
    message: str
    details: Any = None


class ActionResult(BaseModel):
    """Outcome returned by an integration handler."""

    success: bool
    data: Any = None
    error: Optional[ActionErrorInfo] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def ok(cls, data: Any = None, **metadata: Any) -> "ActionResult":
        return cls(success=True, data=data, metadata=metadata or None)

    @classmethod
    def failure(
        cls, code: str, message: str, details: Any = None
    ) -> "ActionResult":
        return cls(
            success=False,
            error=ActionErrorInfo(code=code, message=message, details=details),
        )


@dataclass
class ExecutionContext:
    """Context handed to every action handler."""

    organization_id: str
    workflow_id: str
    execution_id: str
    step_number: int
    logger: logging.LoggerAdapter


# ----------------------------------------------------------------------
# Executions


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (
            ExecutionStatus.SUCCESS,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        )

    def can_transition_to(self, new: "ExecutionStatus") -> bool:
        """Statuses only move forward: pending -> running -> terminal."""
        if self.is_terminal:
            return False
        if self is ExecutionStatus.RUNNING:
            return new.is_terminal
        return new is not ExecutionStatus.PENDING


class StepStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class ExecutionError(BaseModel):
    """Structured error stored on a failed execution."""

    code: str
    message: str
    step_number: Optional[int] = None
    step_name: Optional[str] = None
    details: Any = None
    retry_count: int = 0


class ExecutionResult(BaseModel):
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    total_steps: int = 0
    output: Any = None
    error: Optional[ExecutionError] = None

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.SUCCESS


# ----------------------------------------------------------------------
# Queue


class JobPayload(BaseModel):
    workflow_id: str
    organization_id: str
    trigger_payload: Any = None
    trigger_source: str = "manual"


class QueueJob(BaseModel):
    """Queued unit representing "run this workflow with this trigger payload"."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    type: str = "workflow_execution"
    payload: JobPayload
    priority: int = 0
    retry_count: int = 0
    max_retries: int = 3
    scheduled_for: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    sequence: int = 0
    lease_expires_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str | bytes) -> "QueueJob":
        return cls.model_validate_json(data)


class QueueStats(BaseModel):
    ready: int = 0
    delayed: int = 0
    in_flight: int = 0
    dead_letter: int = 0
