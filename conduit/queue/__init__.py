"""Job queue factory and initialization."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ConduitConfig, load_config
from .base import MAX_PRIORITY, MIN_PRIORITY, BaseJobQueue
from .inmemory import InMemoryJobQueue


def get_queue(
    backend: Optional[str] = None, config: Optional[ConduitConfig] = None
) -> BaseJobQueue:
    """Factory function to get the configured job queue."""

    config = config or load_config()
    queue_conf = config.queue
    backend = (
        backend
        or os.getenv("CONDUIT_QUEUE_BACKEND")
        or queue_conf.backend
    ).lower()

    if backend == "inmemory":
        return InMemoryJobQueue(
            max_retries=queue_conf.max_retries,
            max_backoff_seconds=queue_conf.max_backoff_seconds,
            lease_seconds=queue_conf.lease_seconds,
        )
    elif backend == "redis":
        from .redis import RedisJobQueue

        redis_conf = queue_conf.redis
        return RedisJobQueue(
            host=redis_conf.host,
            port=redis_conf.port,
            db=redis_conf.db,
            password=redis_conf.password,
            key_prefix=redis_conf.key_prefix,
            max_retries=queue_conf.max_retries,
            max_backoff_seconds=queue_conf.max_backoff_seconds,
            lease_seconds=queue_conf.lease_seconds,
        )
    else:
        raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = [
    "BaseJobQueue",
    "InMemoryJobQueue",
    "MAX_PRIORITY",
    "MIN_PRIORITY",
    "get_queue",
]
