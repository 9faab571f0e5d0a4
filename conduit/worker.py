"""Worker loop pulling jobs from the queue and running them through the engine."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Dict, Optional

from .contracts import QueueJob
from .engine import WorkflowEngine
from .errors import UnrecoverableError
from .queue import BaseJobQueue
from .queue.base import error_to_dict

logger = logging.getLogger(__name__)

WORKFLOW_EXECUTION = "workflow_execution"


class Worker:
    """Process queued workflow executions with bounded concurrency."""

    def __init__(
        self,
        queue: BaseJobQueue,
        engine: WorkflowEngine,
        concurrency: int = 5,
        poll_interval: float = 1.0,
        lease_seconds: float = 300.0,
        reclaim_interval: float = 30.0,
        stats_interval: float = 30.0,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.engine = engine
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self.lease_seconds = lease_seconds
        self.reclaim_interval = reclaim_interval
        self.stats_interval = stats_interval
        self.completed = 0
        self.failed = 0
        self._active: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    def request_stop(self) -> None:
        """Stop pulling new jobs; in-flight jobs keep running."""
        if not self._stopping.is_set():
            logger.info("Worker stop requested (%d job(s) in flight)", len(self._active))
        self._stopping.set()

    async def stop(self) -> None:
        """Stop pulling and wait for every in-flight job to finish."""
        self.request_stop()
        await self._drain()

    async def _drain(self) -> None:
        while self._active:
            await asyncio.gather(*list(self._active.values()), return_exceptions=True)

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Poll the queue until stopped or ``lifespan`` seconds have passed."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        last_reclaim = last_stats = started
        logger.info(
            "Worker started (concurrency=%d, poll_interval=%.2fs)",
            self.concurrency,
            self.poll_interval,
        )

        while not self._stopping.is_set():
            now = loop.time()
            if lifespan is not None and now - started >= lifespan:
                break
            if now - last_reclaim >= self.reclaim_interval:
                last_reclaim = now
                await self._reclaim()
            if now - last_stats >= self.stats_interval:
                last_stats = now
                await self._log_stats()

            if len(self._active) >= self.concurrency:
                await self._idle()
                continue

            try:
                job = await self.queue.dequeue(self.lease_seconds)
            except Exception:
                logger.exception("Error polling queue")
                await self._idle()
                continue

            if job is None:
                await self._idle()
                continue

            task = asyncio.create_task(self.process_job(job))
            self._active[job.id] = task
            task.add_done_callback(lambda _t, job_id=job.id: self._active.pop(job_id, None))

        await self._drain()
        logger.info(
            "Worker stopped (%d completed, %d failed)", self.completed, self.failed
        )

    async def process_job(self, job: QueueJob) -> None:
        """Run one job and report the outcome back to the queue."""
        if job.type != WORKFLOW_EXECUTION:
            logger.error("Job %s has unknown type %s", job.id, job.type)
            await self._fail(
                job,
                {"code": "UNKNOWN_JOB_TYPE", "message": f"Unknown job type: {job.type}"},
                retryable=False,
            )
            return

        payload = job.payload
        heartbeat = asyncio.create_task(self._renew_lease(job.id))
        try:
            result = await self.engine.execute_workflow(
                payload.workflow_id,
                payload.organization_id,
                payload.trigger_payload,
                payload.trigger_source,
            )
        except UnrecoverableError as exc:
            logger.error("Job %s is unrecoverable: %s", job.id, exc)
            await self._fail(job, exc, retryable=False)
        except Exception as exc:
            logger.exception("Job %s raised during execution", job.id)
            await self._fail(job, exc, retryable=True)
        else:
            if result.succeeded:
                await self.queue.complete(job.id)
                self.completed += 1
                logger.info(
                    "Job %s completed (execution %s, %sms)",
                    job.id,
                    result.execution_id,
                    result.duration_ms,
                )
            else:
                error = (
                    result.error.model_dump(mode="json")
                    if result.error
                    else {"code": "EXECUTION_FAILED", "message": "Execution failed"}
                )
                await self._fail(job, error, retryable=True)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat

    async def _fail(self, job: QueueJob, error, retryable: bool) -> None:
        self.failed += 1
        try:
            await self.queue.fail(job.id, error_to_dict(error), retryable=retryable)
        except Exception:
            logger.exception(
                "Could not report failure of job %s; its lease will expire", job.id
            )

    async def _renew_lease(self, job_id: str) -> None:
        interval = max(self.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                if not await self.queue.extend_lease(job_id, self.lease_seconds):
                    logger.warning("Lost lease on job %s", job_id)
                    return
            except Exception:
                logger.exception("Error renewing lease for job %s", job_id)

    async def _reclaim(self) -> None:
        try:
            reclaimed = await self.queue.reclaim_expired()
        except Exception:
            logger.exception("Error reclaiming expired leases")
            return
        if reclaimed:
            logger.warning("Reclaimed %d job(s) with expired leases", len(reclaimed))

    async def _log_stats(self) -> None:
        try:
            stats = await self.queue.stats()
        except Exception:
            logger.exception("Error reading queue stats")
            return
        logger.info(
            "Queue stats: ready=%d delayed=%d in_flight=%d dead_letter=%d active=%d",
            stats.ready,
            stats.delayed,
            stats.in_flight,
            stats.dead_letter,
            len(self._active),
        )
