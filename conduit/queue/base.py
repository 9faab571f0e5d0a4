"""Base interface for the priority job queue."""

from __future__ import annotations

import abc
import logging
from datetime import datetime, timezone
from typing import Any, List, Optional

from ..contracts import JobPayload, QueueJob, QueueStats
from ..utils.retry import compute_backoff

logger = logging.getLogger(__name__)

MAX_PRIORITY = 1_000_000_000
MIN_PRIORITY = -MAX_PRIORITY


def check_priority(priority: int) -> int:
    if not isinstance(priority, int) or isinstance(priority, bool):
        raise ValueError(f"Priority must be an integer, got {priority!r}")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValueError(
            f"Priority {priority} outside [{MIN_PRIORITY}, {MAX_PRIORITY}]"
        )
    return priority


def to_timestamp(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class BaseJobQueue(metaclass=abc.ABCMeta):
    """Abstract durable priority queue of workflow execution jobs.

    A job is always in exactly one of four places: the ready set, the
    delayed set, the in-flight registry or the dead-letter store.
    """

    def __init__(
        self,
        max_retries: int = 3,
        max_backoff_seconds: float = 300.0,
        lease_seconds: float = 300.0,
    ) -> None:
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.lease_seconds = lease_seconds

    async def connect(self) -> None:
        """Open connection to the backing store (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Close connection to the backing store (no-op by default)."""
        pass

    def _new_job(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any,
        trigger_source: str,
        priority: int,
        scheduled_for: Optional[datetime],
    ) -> QueueJob:
        return QueueJob(
            payload=JobPayload(
                workflow_id=workflow_id,
                organization_id=organization_id,
                trigger_payload=trigger_payload,
                trigger_source=trigger_source,
            ),
            priority=check_priority(priority),
            max_retries=self.max_retries,
            scheduled_for=scheduled_for,
        )

    def retry_delay(self, retry_count: int) -> float:
        """Seconds to wait before the next attempt of a failed job."""
        return compute_backoff(retry_count, max_delay=self.max_backoff_seconds)

    @abc.abstractmethod
    async def enqueue(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any = None,
        trigger_source: str = "manual",
        *,
        priority: int = 0,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        """Store a new job and return its id."""
        raise NotImplementedError

    @abc.abstractmethod
    async def dequeue(self, lease_seconds: Optional[float] = None) -> Optional[QueueJob]:
        """Promote due delayed jobs, then lease the highest-priority ready job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def complete(self, job_id: str) -> None:
        """Remove a finished job from the in-flight registry."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fail(
        self, job_id: str, error: Any, *, retryable: bool = True
    ) -> Optional[QueueJob]:
        """Reschedule a failed job with backoff or move it to the dead letters."""
        raise NotImplementedError

    @abc.abstractmethod
    async def extend_lease(self, job_id: str, lease_seconds: Optional[float] = None) -> bool:
        """Push back the lease deadline of an in-flight job."""
        raise NotImplementedError

    @abc.abstractmethod
    async def reclaim_expired(self) -> List[str]:
        """Fail every in-flight job whose lease has run out."""
        raise NotImplementedError

    @abc.abstractmethod
    async def stats(self) -> QueueStats:
        raise NotImplementedError

    @abc.abstractmethod
    async def dead_letters(self, limit: int = 100) -> List[QueueJob]:
        raise NotImplementedError

    @abc.abstractmethod
    async def clear(self) -> None:
        raise NotImplementedError

    async def __aenter__(self) -> "BaseJobQueue":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()


def error_to_dict(error: Any) -> dict:
    """Normalize the error handed to ``fail`` into a JSON-able mapping."""
    if error is None:
        return {"code": "UNKNOWN", "message": "Job failed"}
    if isinstance(error, dict):
        return dict(error)
    to_dict = getattr(error, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if hasattr(error, "model_dump"):
        return error.model_dump(mode="json")
    if isinstance(error, BaseException):
        return {"code": type(error).__name__, "message": str(error)}
    return {"code": "ERROR", "message": str(error)}
