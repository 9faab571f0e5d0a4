"""Persistence layer for conduit executions."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ConduitConfig, load_config
from .inmemory import InMemoryExecutionRepository
from .models import ExecutionRecord, StepLog
from .repository import ExecutionRepository
from .sqlite import SQLiteExecutionRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresExecutionRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresExecutionRepository = None  # type: ignore


def get_repository(
    database_url: Optional[str] = None, config: Optional[ConduitConfig] = None
) -> ExecutionRepository:
    """Factory function to obtain an execution repository.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``CONDUIT_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("CONDUIT_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        return InMemoryExecutionRepository()

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        return SQLiteExecutionRepository(path)
    if database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresExecutionRepository is None:
            raise RuntimeError("Postgres support not available (install asyncpg)")
        return PostgresExecutionRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


__all__ = [
    "ExecutionRecord",
    "ExecutionRepository",
    "InMemoryExecutionRepository",
    "PostgresExecutionRepository",
    "SQLiteExecutionRepository",
    "StepLog",
    "get_repository",
]
