"""Explicit service handles shared by the worker, dispatcher and CLI."""

from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from .config import ConduitConfig, load_config
from .credentials import CredentialResolver, InMemoryCredentialStore
from .dispatch import WorkflowDispatcher
from .engine import WorkflowEngine
from .persistence import ExecutionRepository, get_repository
from .queue import BaseJobQueue, get_queue
from .registry import CapabilityRegistry
from .worker import Worker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Bundle of the collaborators one process needs.

    Built once at start-up and passed around explicitly; ``close`` is the
    shutdown hook releasing queue and database connections.
    """

    config: ConduitConfig
    queue: BaseJobQueue
    repository: ExecutionRepository
    registry: CapabilityRegistry = field(default_factory=CapabilityRegistry)
    credentials: CredentialResolver = field(default_factory=InMemoryCredentialStore)

    @classmethod
    def create(
        cls,
        config: Optional[ConduitConfig] = None,
        *,
        registry: Optional[CapabilityRegistry] = None,
        credentials: Optional[CredentialResolver] = None,
        queue: Optional[BaseJobQueue] = None,
        repository: Optional[ExecutionRepository] = None,
    ) -> "Services":
        config = config or load_config()
        return cls(
            config=config,
            queue=queue or get_queue(config=config),
            repository=repository or get_repository(config=config),
            registry=registry or CapabilityRegistry(),
            credentials=credentials or InMemoryCredentialStore(),
        )

    def engine(self) -> WorkflowEngine:
        return WorkflowEngine(self.repository, self.registry, self.credentials)

    def dispatcher(self) -> WorkflowDispatcher:
        return WorkflowDispatcher(self.queue, self.repository, self.registry)

    def worker(self, **overrides: Any) -> Worker:
        worker_conf = self.config.worker
        options = {
            "concurrency": worker_conf.concurrency,
            "poll_interval": worker_conf.poll_interval,
            "lease_seconds": self.config.queue.lease_seconds,
            "reclaim_interval": worker_conf.reclaim_interval,
            "stats_interval": worker_conf.stats_interval,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return Worker(self.queue, self.engine(), **options)

    async def close(self) -> None:
        await self.queue.disconnect()
        close = getattr(self.repository, "close", None)
        if close is not None:
            outcome = close()
            if inspect.isawaitable(outcome):
                await outcome
        logger.debug("Services closed")

    async def __aenter__(self) -> "Services":
        await self.queue.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
