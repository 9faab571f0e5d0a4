"""Data models for persisted execution state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..contracts import ExecutionStatus, StepStatus, utc_now


def new_id() -> str:
    return uuid.uuid4().hex


def duration_ms(started_at: datetime, finished_at: datetime) -> int:
    return int((finished_at - started_at).total_seconds() * 1000)


class StepLog(BaseModel):
    """Audit record of one attempted step within an execution."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    step_number: int
    step_name: str
    integration: Optional[str] = None
    action: Optional[str] = None
    status: StepStatus = StepStatus.RUNNING
    input: Any = None
    output: Any = None
    error: Optional[dict[str, Any]] = None
    attempts: int = 0
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None


class ExecutionRecord(BaseModel):
    """One run of a workflow definition."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    organization_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    trigger_source: str = "manual"
    input_payload: Any = None
    output_payload: Any = None
    error: Optional[dict[str, Any]] = None
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    steps: list[StepLog] = Field(default_factory=list)
