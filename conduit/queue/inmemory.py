"""In-memory job queue for tests and single-process deployments."""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..contracts import QueueJob, QueueStats
from .base import BaseJobQueue, error_to_dict, from_timestamp, to_timestamp

logger = logging.getLogger(__name__)


class InMemoryJobQueue(BaseJobQueue):
    """Heap-backed queue guarded by a single asyncio lock.

    ``clock`` returns the current epoch time in seconds and can be replaced
    in tests to move time forward without sleeping.
    """

    def __init__(
        self,
        max_retries: int = 3,
        max_backoff_seconds: float = 300.0,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        super().__init__(max_retries, max_backoff_seconds, lease_seconds)
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._jobs: Dict[str, QueueJob] = {}
        self._ready: List[Tuple[int, int, str]] = []
        self._delayed: List[Tuple[float, int, str]] = []
        self._inflight: Dict[str, QueueJob] = {}
        self._dead: Dict[str, QueueJob] = {}

    def _push_ready(self, job: QueueJob) -> None:
        job.sequence = next(self._sequence)
        job.lease_expires_at = None
        self._jobs[job.id] = job
        heapq.heappush(self._ready, (-job.priority, job.sequence, job.id))

    def _push_delayed(self, job: QueueJob, run_at: float) -> None:
        job.scheduled_for = from_timestamp(run_at)
        job.lease_expires_at = None
        self._jobs[job.id] = job
        heapq.heappush(self._delayed, (run_at, next(self._sequence), job.id))

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, job_id = heapq.heappop(self._delayed)
            job = self._jobs.get(job_id)
            if job is not None:
                self._push_ready(job)

    def _fail_locked(
        self, job_id: str, error: Any, retryable: bool, now: float
    ) -> Optional[QueueJob]:
        job = self._inflight.pop(job_id, None)
        if job is None:
            logger.warning("Ignoring failure for unknown job %s", job_id)
            return None

        job.retry_count += 1
        job.error = error_to_dict(error)
        job.lease_expires_at = None
        if retryable and job.retry_count < job.max_retries:
            delay = self.retry_delay(job.retry_count)
            self._push_delayed(job, now + delay)
            logger.info(
                "Job %s failed (attempt %d/%d), retrying in %.1fs",
                job_id,
                job.retry_count,
                job.max_retries,
                delay,
            )
        else:
            self._dead[job_id] = job
            logger.error(
                "Job %s moved to dead letters after %d attempt(s): %s",
                job_id,
                job.retry_count,
                job.error.get("message"),
            )
        return job.model_copy(deep=True)

    # ------------------------------------------------------------------
    async def enqueue(
        self,
        workflow_id: str,
        organization_id: str,
        trigger_payload: Any = None,
        trigger_source: str = "manual",
        *,
        priority: int = 0,
        scheduled_for=None,
    ) -> str:
        job = self._new_job(
            workflow_id,
            organization_id,
            trigger_payload,
            trigger_source,
            priority,
            scheduled_for,
        )
        run_at = to_timestamp(scheduled_for)
        async with self._lock:
            if run_at is not None and run_at > self._clock():
                self._push_delayed(job, run_at)
            else:
                self._push_ready(job)
        logger.debug("Enqueued job %s for workflow %s", job.id, workflow_id)
        return job.id

    async def dequeue(self, lease_seconds: Optional[float] = None) -> Optional[QueueJob]:
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        async with self._lock:
            now = self._clock()
            self._promote_due(now)
            while self._ready:
                _, _, job_id = heapq.heappop(self._ready)
                job = self._jobs.pop(job_id, None)
                if job is None:
                    continue
                job.lease_expires_at = from_timestamp(now + lease)
                self._inflight[job_id] = job
                return job.model_copy(deep=True)
        return None

    async def complete(self, job_id: str) -> None:
        async with self._lock:
            self._inflight.pop(job_id, None)

    async def fail(
        self, job_id: str, error: Any, *, retryable: bool = True
    ) -> Optional[QueueJob]:
        async with self._lock:
            return self._fail_locked(job_id, error, retryable, self._clock())

    async def extend_lease(self, job_id: str, lease_seconds: Optional[float] = None) -> bool:
        lease = self.lease_seconds if lease_seconds is None else lease_seconds
        async with self._lock:
            job = self._inflight.get(job_id)
            if job is None:
                return False
            job.lease_expires_at = from_timestamp(self._clock() + lease)
            return True

    async def reclaim_expired(self) -> List[str]:
        reclaimed: List[str] = []
        async with self._lock:
            now = self._clock()
            expired = [
                job_id
                for job_id, job in self._inflight.items()
                if job.lease_expires_at is not None
                and to_timestamp(job.lease_expires_at) <= now
            ]
            for job_id in expired:
                logger.warning("Lease expired for job %s", job_id)
                self._fail_locked(
                    job_id,
                    {"code": "LEASE_EXPIRED", "message": "Job lease expired"},
                    True,
                    now,
                )
                reclaimed.append(job_id)
        return reclaimed

    async def stats(self) -> QueueStats:
        async with self._lock:
            delayed = sum(
                1 for _, _, job_id in self._delayed if job_id in self._jobs
            )
            return QueueStats(
                ready=len(self._jobs) - delayed,
                delayed=delayed,
                in_flight=len(self._inflight),
                dead_letter=len(self._dead),
            )

    async def dead_letters(self, limit: int = 100) -> List[QueueJob]:
        async with self._lock:
            jobs = list(self._dead.values())[:limit]
            return [job.model_copy(deep=True) for job in jobs]

    async def clear(self) -> None:
        async with self._lock:
            self._jobs.clear()
            self._ready.clear()
            self._delayed.clear()
            self._inflight.clear()
            self._dead.clear()
