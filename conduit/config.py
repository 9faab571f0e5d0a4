from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel


class RedisConfig(BaseModel):
    """Configuration for the Redis queue backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "conduit"


class QueueConfig(BaseModel):
    """Job queue settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    max_retries: int = 3
    max_backoff_seconds: float = 300.0
    lease_seconds: float = 300.0


class WorkerConfig(BaseModel):
    """Worker loop settings."""

    concurrency: int = 5
    poll_interval: float = 1.0
    reclaim_interval: float = 30.0
    stats_interval: float = 30.0


class ConduitConfig(BaseModel):
    """Top-level configuration model."""

    queue: QueueConfig = QueueConfig()
    worker: WorkerConfig = WorkerConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ConduitConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CONDUIT_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CONDUIT_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ConduitConfig(**data)
    else:
        config = ConduitConfig()

    env_db_url = os.getenv("CONDUIT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
